from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, List, Optional

from .models import Customer, PendingCustomer, PendingStatus
from .util.dates import to_local_date
from .util.money import round_money


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def compute_pending_status(
    opening_date: date,
    installment_amount: Decimal,
    amount_paid: Decimal,
    total_amount: Decimal,
    today: date,
) -> Optional[PendingStatus]:
    """
    Daily accrual model: one installment falls due per calendar day since the opening date
    (inclusive). Returns None when the customer is not pending.

    Example (opening 2024-01-01, installment 100, paid 250, today 2024-01-05):
        2 installments fully paid -> next due 2024-01-03, 2 days overdue
        5 installments due by today -> 500 due, 250 overdue, 50 left on the current one
    """
    if installment_amount <= 0:
        return None

    remaining = max(_ZERO, total_amount - amount_paid)

    paid_count = int((amount_paid / installment_amount).to_integral_value(rounding=ROUND_FLOOR))
    next_due = opening_date + timedelta(days=paid_count)
    if next_due > today:
        return None

    days_since_opening = (today - opening_date).days
    total_due_count = days_since_opening + 1 if days_since_opening >= 0 else 0
    cumulative_due = total_due_count * installment_amount

    unclamped_overdue = max(_ZERO, cumulative_due - amount_paid)
    amount_overdue = min(unclamped_overdue, remaining)
    if round_money(amount_overdue) == 0:
        return None

    partial_made = amount_paid - paid_count * installment_amount
    partial_left = installment_amount - partial_made if partial_made > 0 else installment_amount
    partial_left = min(partial_left, remaining)

    return PendingStatus(
        next_due_date=next_due,
        days_overdue=(today - next_due).days,
        paid_installments_count=paid_count,
        total_installments_due_count=total_due_count,
        cumulative_amount_due=round_money(cumulative_due),
        unclamped_amount_overdue=round_money(unclamped_overdue),
        amount_overdue=round_money(amount_overdue),
        partial_payment_left=round_money(partial_left),
    )


def customer_pending_status(customer: Customer, today: date) -> Optional[PendingStatus]:
    if customer.installment_amount <= 0 or customer.opening_date is None:
        logger.info(
            "Skipping customer %s for pending view (installment=%s opening_date=%s)",
            customer.account_number,
            customer.installment_amount,
            customer.opening_date,
        )
        return None
    return compute_pending_status(
        opening_date=to_local_date(customer.opening_date),
        installment_amount=customer.installment_amount,
        amount_paid=customer.amount_paid,
        total_amount=customer.total_amount,
        today=today,
    )


def pending_customers(customers: Iterable[Customer], today: date) -> List[PendingCustomer]:
    """
    Customers with overdue installments, most days overdue first.
    """
    out: List[PendingCustomer] = []
    for c in customers:
        try:
            status = customer_pending_status(c, today)
        except (ArithmeticError, ValueError, OverflowError):
            logger.warning("Failed to compute pending status for customer %s", c.account_number, exc_info=True)
            continue
        if status is not None:
            out.append(PendingCustomer(customer=c, status=status))

    out.sort(key=lambda p: p.status.days_overdue, reverse=True)
    return out


def payment_progress(customer: Customer) -> float:
    if customer.total_amount <= 0:
        return 0.0
    ratio = float(customer.amount_paid / customer.total_amount)
    return min(1.0, max(0.0, ratio))


def is_payment_complete(customer: Customer) -> bool:
    return customer.remaining_amount <= 0


def filter_customers(customers: Iterable[Customer], query: str) -> List[Customer]:
    """
    Case-insensitive substring match on name or account number; a blank query keeps everyone.
    """
    q = (query or "").strip().lower()
    if not q:
        return list(customers)
    return [c for c in customers if q in c.name.lower() or q in c.account_number.lower()]
