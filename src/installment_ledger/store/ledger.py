from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from ..models import Customer, NewCustomer, Transaction, UpiIdentifier
from ..util.dates import parse_timestamp
from ..util.money import format_rupees, round_money, to_decimal
from .firestore import Document, FirestoreClient, FirestoreError, Write


logger = logging.getLogger(__name__)

CUSTOMERS = "customer"
TRANSACTIONS = "transactions"
UPI_IDS = "upiIds"
UNIQUE_UPI_IDS = "uniqueUpiIds"
PROCESSED_REFS = "processedBankRefs"

# Customer fields kept in the store under the names the desktop app has always used.
CUSTOMER_FIELD_NAMES = {
    "account_number": "Accno",
    "name": "Name",
    "phone": "PhoneNo",
    "vehicle_number": "VehicleNo",
    "opening_date": "OpeningDate",
    "closing_date": "ClosingDate",
    "installment_amount": "installmentAmount",
    "total_amount": "Amount",
    "amount_paid": "amountPaid",
}


class CustomerExistsError(ValueError):
    pass


class CustomerNotFoundError(LookupError):
    pass


class DuplicateUpiIdError(ValueError):
    pass


def _optional_timestamp(value: object) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(str(value))
    except (ValueError, OverflowError):
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None


def customer_from_document(doc: Document) -> Customer:
    f = doc.fields
    return Customer(
        account_number=str(f.get("Accno") or doc.id),
        name=str(f.get("Name") or ""),
        phone=str(f.get("PhoneNo") or ""),
        vehicle_number=str(f.get("VehicleNo") or ""),
        opening_date=_optional_timestamp(f.get("OpeningDate")),
        closing_date=_optional_timestamp(f.get("ClosingDate")),
        installment_amount=to_decimal(f.get("installmentAmount")),
        total_amount=to_decimal(f.get("Amount")),
        amount_paid=to_decimal(f.get("amountPaid")),
    )


def customer_to_fields(c: Customer) -> Dict[str, object]:
    return {
        "Accno": c.account_number,
        "Name": c.name,
        "PhoneNo": c.phone,
        "VehicleNo": c.vehicle_number,
        "OpeningDate": c.opening_date or "",
        "ClosingDate": c.closing_date or "",
        "installmentAmount": c.installment_amount,
        "Amount": c.total_amount,
        "amountPaid": c.amount_paid,
    }


def transaction_from_document(doc: Document) -> Transaction:
    f = doc.fields
    ref = str(f.get("bankReference") or "").strip()
    return Transaction(
        id=doc.id,
        amount=to_decimal(f.get("amount")),
        balance=to_decimal(f.get("Balance")),
        fine=to_decimal(f.get("Fine")),
        date=_optional_timestamp(f.get("date")),
        transaction_type=str(f.get("transactionType") or "payment"),
        description=str(f.get("description") or ""),
        bank_reference=ref or None,
        installments_covered=int(f.get("installmentsCovered") or 1),
    )


def transaction_to_fields(t: Transaction) -> Dict[str, object]:
    fields: Dict[str, object] = {
        "amount": t.amount,
        "Balance": t.balance,
        "date": t.date or datetime.now(timezone.utc),
        "Fine": t.fine,
        "transactionType": t.transaction_type,
        "description": t.description,
        "installmentsCovered": int(t.installments_covered),
    }
    if t.bank_reference:
        fields["bankReference"] = t.bank_reference
    return fields


def upi_from_document(doc: Document) -> UpiIdentifier:
    f = doc.fields
    return UpiIdentifier(
        id=doc.id,
        handle=str(f.get("upiId") or ""),
        account_number=str(f.get("customerId") or ""),
        is_active=bool(f.get("isActive", True)),
        created_at=_optional_timestamp(f.get("createdAt")),
    )


def normalize_upi_handle(handle: str) -> str:
    return (handle or "").strip().lower()


@dataclass(frozen=True)
class PostedPayment:
    account_number: str
    transaction_id: str
    amount: Decimal
    balance: Decimal
    amount_paid: Decimal


class LedgerStore:
    """
    Everything the ledger keeps for one operator account (`users/{user_id}`), on top of a
    document store client.
    """

    def __init__(self, store: FirestoreClient, *, user_id: str) -> None:
        if not user_id:
            raise ValueError("LedgerStore requires a user_id")
        self._store = store
        self.user_id = user_id

    # --- paths ------------------------------------------------------------------------

    @property
    def user_path(self) -> str:
        return f"users/{self.user_id}"

    def customer_path(self, account_number: str) -> str:
        return f"{self.user_path}/{CUSTOMERS}/{account_number}"

    def transactions_path(self, account_number: str) -> str:
        return f"{self.customer_path(account_number)}/{TRANSACTIONS}"

    def processed_ref_path(self, reference: str) -> str:
        return f"{self.user_path}/{PROCESSED_REFS}/{reference}"

    def unique_upi_path(self, handle: str) -> str:
        return f"{self.user_path}/{UNIQUE_UPI_IDS}/{handle}"

    # --- user ---------------------------------------------------------------------------

    async def touch_user(self) -> None:
        """
        Make sure the user document exists and refresh its lastActive stamp.
        """
        now = datetime.now(timezone.utc)
        doc = await self._store.get_document(self.user_path)
        if doc is None:
            logger.info("Creating user document for %s", self.user_id)
            await self._store.patch_document(
                self.user_path,
                {"userId": self.user_id, "createdAt": now, "lastActive": now},
            )
            return
        await self._store.patch_document(self.user_path, {"lastActive": now}, update_mask=["lastActive"])

    # --- customers ----------------------------------------------------------------------

    async def list_customers(self) -> List[Customer]:
        docs = await self._store.list_documents(f"{self.user_path}/{CUSTOMERS}")
        return [customer_from_document(d) for d in docs]

    async def get_customer(self, account_number: str) -> Optional[Customer]:
        doc = await self._store.get_document(self.customer_path(account_number))
        return customer_from_document(doc) if doc else None

    async def add_customer(self, new: NewCustomer) -> Customer:
        account_number = new.account_number.strip()
        if not account_number or "/" in account_number:
            raise ValueError("Account number cannot be blank or contain '/' characters.")
        if await self.get_customer(account_number) is not None:
            raise CustomerExistsError(f"Customer with account number {account_number} already exists")

        customer = Customer(
            account_number=account_number,
            name=new.name.strip(),
            phone=new.phone.strip(),
            vehicle_number=new.vehicle_number.strip(),
            opening_date=new.opening_date or datetime.now(timezone.utc),
            closing_date=(
                datetime(new.closing_date.year, new.closing_date.month, new.closing_date.day, tzinfo=timezone.utc)
                if new.closing_date
                else None
            ),
            installment_amount=round_money(new.installment_amount),
            total_amount=round_money(new.total_amount),
            amount_paid=Decimal("0"),
        )
        await self._store.commit(
            [Write(path=self.customer_path(account_number), fields=customer_to_fields(customer), exists=False)]
        )
        logger.info("Added customer %s (%s)", account_number, customer.name)

        if new.upi_handle.strip():
            await self.add_upi_id(account_number, new.upi_handle)
        return customer

    async def update_customer(self, account_number: str, changes: Dict[str, Any]) -> None:
        """
        Patch selected customer attributes (model attribute names, e.g. {"phone": "..."}).
        The account number is immutable.
        """
        if "account_number" in changes:
            raise ValueError("The account number of a customer cannot be changed.")
        unknown = set(changes) - set(CUSTOMER_FIELD_NAMES)
        if unknown:
            raise ValueError(f"Unknown customer fields: {', '.join(sorted(unknown))}")

        fields = {CUSTOMER_FIELD_NAMES[k]: v for k, v in changes.items()}
        await self._store.commit(
            [
                Write(
                    path=self.customer_path(account_number),
                    fields=fields,
                    update_mask=list(fields),
                    exists=True,
                )
            ]
        )

    async def delete_customer(self, account_number: str) -> None:
        # Transactions and UPI links are left behind as orphans.
        await self._store.delete_document(self.customer_path(account_number))
        logger.info("Deleted customer %s", account_number)

    # --- transactions -------------------------------------------------------------------

    async def list_transactions(self, account_number: str) -> List[Transaction]:
        docs = await self._store.list_documents(self.transactions_path(account_number))
        txns = [transaction_from_document(d) for d in docs]
        txns.sort(key=lambda t: t.date or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return txns

    def _payment_writes(
        self,
        customer: Customer,
        *,
        amount: Decimal,
        fine: Decimal,
        description: str,
        bank_reference: Optional[str],
        posted_at: datetime,
    ) -> tuple[List[Write], PostedPayment]:
        amount = round_money(amount)
        transaction_id = uuid.uuid4().hex
        balance = round_money(customer.total_amount - customer.amount_paid - amount)
        new_paid = round_money(customer.amount_paid + amount)

        txn = Transaction(
            id=transaction_id,
            amount=amount,
            balance=balance,
            fine=round_money(fine),
            date=posted_at,
            description=description,
            bank_reference=bank_reference,
        )
        writes = [
            Write(
                path=f"{self.transactions_path(customer.account_number)}/{transaction_id}",
                fields=transaction_to_fields(txn),
                exists=False,
            ),
            Write(
                path=self.customer_path(customer.account_number),
                fields={"amountPaid": new_paid},
                update_mask=["amountPaid"],
                exists=True,
            ),
        ]
        posted = PostedPayment(
            account_number=customer.account_number,
            transaction_id=transaction_id,
            amount=amount,
            balance=balance,
            amount_paid=new_paid,
        )
        return writes, posted

    async def _require_customer(self, account_number: str) -> Customer:
        customer = await self.get_customer(account_number)
        if customer is None:
            raise CustomerNotFoundError(f"Customer with account number {account_number} not found")
        return customer

    async def add_payment(
        self,
        account_number: str,
        amount: Decimal,
        *,
        fine: Decimal = Decimal("0"),
        description: str = "",
    ) -> PostedPayment:
        """
        Record a manually entered payment and bump the customer's amountPaid in one commit.
        """
        if amount <= 0:
            raise ValueError("Payment amount must be positive.")
        customer = await self._require_customer(account_number)
        writes, posted = self._payment_writes(
            customer,
            amount=amount,
            fine=fine,
            description=description,
            bank_reference=None,
            posted_at=datetime.now(timezone.utc),
        )
        await self._store.commit(writes)
        logger.info(
            "Recorded payment account=%s amount=%s fine=%s",
            account_number,
            format_rupees(posted.amount),
            format_rupees(fine),
        )
        return posted

    async def post_statement_payment(
        self,
        customer: Customer,
        *,
        amount: Decimal,
        bank_reference: str,
        description: str = "",
    ) -> PostedPayment:
        """
        Post one reconciled statement credit: transaction + processed-reference marker +
        amountPaid update, committed atomically. The marker write fails the whole commit if
        the reference was already applied.
        """
        now = datetime.now(timezone.utc)
        writes, posted = self._payment_writes(
            customer,
            amount=amount,
            fine=Decimal("0"),
            description=description,
            bank_reference=bank_reference,
            posted_at=now,
        )
        marker = Write(
            path=self.processed_ref_path(bank_reference),
            fields={
                "customerId": customer.account_number,
                "amount": posted.amount,
                "transactionId": posted.transaction_id,
                "processedAt": now,
            },
            exists=False,
        )
        await self._store.commit([writes[0], marker, writes[1]])
        return posted

    async def update_transaction_fine(self, account_number: str, transaction_id: str, fine: Decimal) -> None:
        if fine < 0:
            raise ValueError("Fine cannot be negative.")
        await self._store.commit(
            [
                Write(
                    path=f"{self.transactions_path(account_number)}/{transaction_id}",
                    fields={"Fine": round_money(fine)},
                    update_mask=["Fine"],
                    exists=True,
                )
            ]
        )

    async def delete_transaction(self, account_number: str, transaction_id: str) -> Decimal:
        """
        Delete a transaction and take its amount back off amountPaid (never below zero).
        Returns the customer's new amountPaid.
        """
        customer = await self._require_customer(account_number)
        txn_path = f"{self.transactions_path(account_number)}/{transaction_id}"
        doc = await self._store.get_document(txn_path)
        if doc is None:
            raise LookupError(f"Transaction {transaction_id} not found for customer {account_number}")
        txn = transaction_from_document(doc)

        new_paid = max(Decimal("0"), round_money(customer.amount_paid - txn.amount))
        await self._store.commit(
            [
                Write(
                    path=self.customer_path(account_number),
                    fields={"amountPaid": new_paid},
                    update_mask=["amountPaid"],
                    exists=True,
                ),
                Write(path=txn_path, fields=None, exists=True),
            ]
        )
        logger.info(
            "Deleted transaction %s for %s; amountPaid %s -> %s",
            transaction_id,
            account_number,
            format_rupees(customer.amount_paid),
            format_rupees(new_paid),
        )
        return new_paid

    # --- UPI handles --------------------------------------------------------------------

    async def add_upi_id(self, account_number: str, handle: str) -> UpiIdentifier:
        upi = normalize_upi_handle(handle)
        if not upi or "/" in upi:
            raise ValueError("UPI ID cannot be blank or contain '/' characters.")

        doc_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        writes: Sequence[Write] = [
            Write(
                path=f"{self.user_path}/{UPI_IDS}/{doc_id}",
                fields={"upiId": upi, "customerId": account_number, "isActive": True, "createdAt": now},
                exists=False,
            ),
            Write(path=self.unique_upi_path(upi), fields={"customerId": account_number}, exists=False),
        ]
        try:
            await self._store.commit(writes)
        except FirestoreError as e:
            if e.is_precondition_failure and not e.is_auth_error:
                raise DuplicateUpiIdError(f"UPI ID {upi} already exists. Please choose another one.") from e
            raise
        logger.info("Linked UPI ID %s to customer %s", upi, account_number)
        return UpiIdentifier(id=doc_id, handle=upi, account_number=account_number, is_active=True, created_at=now)

    async def list_upi_ids(self, account_number: str) -> List[UpiIdentifier]:
        docs = await self._store.run_query(
            self.user_path,
            UPI_IDS,
            [("customerId", "EQUAL", account_number), ("isActive", "EQUAL", True)],
        )
        return [upi_from_document(d) for d in docs]

    async def lookup_upi_handle(self, handle: str) -> Optional[str]:
        doc = await self._store.get_document(self.unique_upi_path(normalize_upi_handle(handle)))
        if doc is None:
            return None
        account = str(doc.fields.get("customerId") or "").strip()
        return account or None

    # --- processed bank references -------------------------------------------------------

    async def has_processed_reference(self, reference: str) -> bool:
        return await self._store.get_document(self.processed_ref_path(reference)) is not None
