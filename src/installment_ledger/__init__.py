"""Installment ledger: daily-installment accrual and UPI bank statement reconciliation."""

__version__ = "0.1.0"
