from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class Customer(BaseModel):
    account_number: str
    name: str = ""
    phone: str = ""
    vehicle_number: str = ""

    # Installments start accruing on this day; None when the stored value is blank/unparseable.
    opening_date: Optional[datetime] = None
    closing_date: Optional[datetime] = None

    installment_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    amount_paid: Decimal = Decimal("0")

    @property
    def remaining_amount(self) -> Decimal:
        return max(Decimal("0"), self.total_amount - self.amount_paid)


class Transaction(BaseModel):
    id: str = ""
    amount: Decimal
    balance: Decimal = Decimal("0")
    fine: Decimal = Decimal("0")
    date: Optional[datetime] = None
    transaction_type: str = "payment"
    description: str = ""
    bank_reference: Optional[str] = None
    # Not derived from the amount; manual and imported payments both record 1.
    installments_covered: int = 1


class UpiIdentifier(BaseModel):
    id: str = ""
    handle: str
    account_number: str
    is_active: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ParsedStatementRow:
    upi_handle: str
    bank_reference: str
    amount: Decimal


@dataclass(frozen=True)
class PendingStatus:
    next_due_date: date
    days_overdue: int
    paid_installments_count: int
    total_installments_due_count: int
    cumulative_amount_due: Decimal

    # Overdue before/after clamping to the remaining balance.
    unclamped_amount_overdue: Decimal
    amount_overdue: Decimal

    partial_payment_left: Decimal


@dataclass(frozen=True)
class PendingCustomer:
    customer: Customer
    status: PendingStatus


class NewCustomer(BaseModel):
    """Operator input for the add-customer flow."""

    account_number: str = Field(min_length=1)
    name: str = Field(min_length=1)
    phone: str = ""
    vehicle_number: str = ""
    installment_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    opening_date: Optional[datetime] = None
    closing_date: Optional[date] = None
    upi_handle: str = ""
