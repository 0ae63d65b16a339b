from __future__ import annotations

import random
from datetime import date, datetime
from decimal import Decimal

from installment_ledger.accrual import (
    compute_pending_status,
    filter_customers,
    customer_pending_status,
    is_payment_complete,
    payment_progress,
    pending_customers,
)
from installment_ledger.models import Customer


def _customer(acc: str, *, opening: date, installment: str, paid: str, total: str) -> Customer:
    # Local noon keeps the local calendar day stable whatever the test machine's timezone.
    return Customer(
        account_number=acc,
        name=f"Customer {acc}",
        opening_date=datetime(opening.year, opening.month, opening.day, 12).astimezone(),
        installment_amount=Decimal(installment),
        amount_paid=Decimal(paid),
        total_amount=Decimal(total),
    )


def test_worked_example() -> None:
    s = compute_pending_status(
        opening_date=date(2024, 1, 1),
        installment_amount=Decimal("100"),
        amount_paid=Decimal("250"),
        total_amount=Decimal("10000"),
        today=date(2024, 1, 5),
    )
    assert s is not None
    assert s.paid_installments_count == 2
    assert s.next_due_date == date(2024, 1, 3)
    assert s.days_overdue == 2
    assert s.total_installments_due_count == 5
    assert s.cumulative_amount_due == Decimal("500.00")
    assert s.unclamped_amount_overdue == Decimal("250.00")
    assert s.amount_overdue == Decimal("250.00")
    assert s.partial_payment_left == Decimal("50.00")


def test_non_positive_installment_is_never_pending() -> None:
    for installment in ("0", "-5"):
        assert (
            compute_pending_status(
                opening_date=date(2024, 1, 1),
                installment_amount=Decimal(installment),
                amount_paid=Decimal("0"),
                total_amount=Decimal("1000"),
                today=date(2024, 3, 1),
            )
            is None
        )


def test_fully_paid_is_never_pending() -> None:
    # Paid off early; the accrual keeps running but nothing is left to collect.
    assert (
        compute_pending_status(
            opening_date=date(2024, 1, 1),
            installment_amount=Decimal("100"),
            amount_paid=Decimal("200"),
            total_amount=Decimal("200"),
            today=date(2024, 2, 1),
        )
        is None
    )
    assert (
        compute_pending_status(
            opening_date=date(2024, 1, 1),
            installment_amount=Decimal("100"),
            amount_paid=Decimal("300"),
            total_amount=Decimal("200"),
            today=date(2024, 2, 1),
        )
        is None
    )


def test_not_pending_when_paid_ahead_or_not_started() -> None:
    ahead = compute_pending_status(
        opening_date=date(2024, 1, 1),
        installment_amount=Decimal("100"),
        amount_paid=Decimal("500"),
        total_amount=Decimal("10000"),
        today=date(2024, 1, 5),
    )
    assert ahead is None

    not_started = compute_pending_status(
        opening_date=date(2024, 1, 10),
        installment_amount=Decimal("100"),
        amount_paid=Decimal("0"),
        total_amount=Decimal("10000"),
        today=date(2024, 1, 5),
    )
    assert not_started is None


def test_due_today_counts_as_pending_with_zero_days() -> None:
    s = compute_pending_status(
        opening_date=date(2024, 1, 1),
        installment_amount=Decimal("100"),
        amount_paid=Decimal("0"),
        total_amount=Decimal("10000"),
        today=date(2024, 1, 1),
    )
    assert s is not None
    assert s.days_overdue == 0
    assert s.total_installments_due_count == 1
    assert s.amount_overdue == Decimal("100.00")
    assert s.partial_payment_left == Decimal("100.00")


def test_overdue_is_clamped_to_remaining_balance() -> None:
    s = compute_pending_status(
        opening_date=date(2024, 1, 1),
        installment_amount=Decimal("100"),
        amount_paid=Decimal("900"),
        total_amount=Decimal("1000"),
        today=date(2024, 2, 1),
    )
    assert s is not None
    assert s.unclamped_amount_overdue == Decimal("2300.00")
    assert s.amount_overdue == Decimal("100.00")
    assert s.partial_payment_left == Decimal("100.00")


def test_randomized_overdue_never_exceeds_remaining() -> None:
    rng = random.Random(1234)
    opening = date(2023, 6, 1)
    for _ in range(500):
        installment = Decimal(rng.randint(1, 50000)) / 100
        total = Decimal(rng.randint(0, 5_000_000)) / 100
        paid = Decimal(rng.randint(0, 5_000_000)) / 100
        today = date.fromordinal(opening.toordinal() + rng.randint(-10, 400))

        s = compute_pending_status(
            opening_date=opening,
            installment_amount=installment,
            amount_paid=paid,
            total_amount=total,
            today=today,
        )
        if s is None:
            continue
        remaining = max(Decimal("0"), total - paid)
        assert Decimal("0") < s.amount_overdue <= remaining
        assert s.partial_payment_left <= remaining
        assert s.days_overdue >= 0
        assert s.next_due_date <= today


def test_pending_customers_sorted_and_filtered() -> None:
    customers = [
        _customer("A1", opening=date(2024, 1, 1), installment="100", paid="250", total="10000"),  # 2 days
        _customer("A2", opening=date(2024, 1, 1), installment="100", paid="0", total="10000"),  # 4 days
        _customer("A3", opening=date(2024, 1, 1), installment="100", paid="500", total="10000"),  # paid ahead
        _customer("A4", opening=date(2024, 1, 1), installment="0", paid="0", total="10000"),  # no installment
        Customer(account_number="A5", installment_amount=Decimal("100"), total_amount=Decimal("1000")),  # no opening date
    ]
    rows = pending_customers(customers, date(2024, 1, 5))
    assert [r.customer.account_number for r in rows] == ["A2", "A1"]
    assert [r.status.days_overdue for r in rows] == [4, 2]


def test_customer_pending_status_uses_local_opening_day() -> None:
    c = _customer("A1", opening=date(2024, 1, 1), installment="100", paid="250", total="10000")
    s = customer_pending_status(c, date(2024, 1, 5))
    assert s is not None
    assert s.next_due_date == date(2024, 1, 3)


def test_progress_helpers() -> None:
    c = _customer("A1", opening=date(2024, 1, 1), installment="100", paid="250", total="1000")
    assert c.remaining_amount == Decimal("750")
    assert payment_progress(c) == 0.25
    assert not is_payment_complete(c)

    done = _customer("A2", opening=date(2024, 1, 1), installment="100", paid="1200", total="1000")
    assert done.remaining_amount == Decimal("0")
    assert payment_progress(done) == 1.0
    assert is_payment_complete(done)

    assert payment_progress(Customer(account_number="A3")) == 0.0


def test_filter_customers_matches_name_or_account() -> None:
    customers = [
        Customer(account_number="KA-101", name="Ravi Kumar"),
        Customer(account_number="KA-202", name="Sunita Devi"),
        Customer(account_number="TN-7", name="Arun"),
    ]
    assert [c.account_number for c in filter_customers(customers, "ravi")] == ["KA-101"]
    assert [c.account_number for c in filter_customers(customers, "ka-")] == ["KA-101", "KA-202"]
    assert [c.account_number for c in filter_customers(customers, " ARUN ")] == ["TN-7"]
    assert filter_customers(customers, "zzz") == []
    assert len(filter_customers(customers, "")) == 3
