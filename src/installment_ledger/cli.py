from __future__ import annotations

import argparse
import asyncio
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx
from dotenv import load_dotenv

from .accrual import filter_customers, is_payment_complete, payment_progress, pending_customers
from .config import AppConfig, load_config
from .importer import ImportSession, ImportState, StatementImporter
from .logging_config import configure_logging
from .models import NewCustomer
from .store.firestore import FirestoreClient, FirestoreError, describe_store_error
from .store.ledger import CustomerExistsError, CustomerNotFoundError, DuplicateUpiIdError, LedgerStore
from .util.dates import parse_loose_date
from .util.money import format_rupees, parse_amount


logger = logging.getLogger("installment_ledger")
T = TypeVar("T")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="installment-ledger")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    imp = sub.add_parser("import-statement", help="Reconcile a bank statement (.xlsx) against the ledger")
    imp.add_argument("file", help="Path to the statement workbook")
    imp.add_argument("--sheet", default="", help="Worksheet name (default: statement.sheet_name or the first sheet)")

    pending = sub.add_parser("pending", help="List customers with overdue installments, most overdue first")
    pending.add_argument("--today", default="", help="Evaluate as of this date (YYYY-MM-DD or DD/MM/YYYY). Default: today.")

    list_cust = sub.add_parser("list-customers", help="List customers with payment progress")
    list_cust.add_argument("--search", default="", help="Only customers whose name or account number contains this text")

    add_cust = sub.add_parser("add-customer", help="Create a customer (optionally linking a UPI handle)")
    add_cust.add_argument("--account", required=True, help="Account number (document id; cannot be changed later)")
    add_cust.add_argument("--name", required=True)
    add_cust.add_argument("--phone", default="")
    add_cust.add_argument("--vehicle", default="")
    add_cust.add_argument("--installment", required=True, help="Daily installment amount")
    add_cust.add_argument("--total", required=True, help="Total amount to be repaid")
    add_cust.add_argument("--opening-date", default="", help="First installment day (default: today)")
    add_cust.add_argument("--closing-date", default="", help="Expected closing date (optional)")
    add_cust.add_argument("--upi", default="", help="UPI handle to link to this customer (optional)")

    del_cust = sub.add_parser("delete-customer", help="Delete a customer document")
    del_cust.add_argument("account")
    del_cust.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    add_upi = sub.add_parser("add-upi", help="Link a UPI handle to a customer")
    add_upi.add_argument("account")
    add_upi.add_argument("handle")

    list_upi = sub.add_parser("list-upi", help="List the active UPI handles of a customer")
    list_upi.add_argument("account")

    pay = sub.add_parser("add-payment", help="Record a manual payment")
    pay.add_argument("account")
    pay.add_argument("amount")
    pay.add_argument("--fine", default="0", help="Fine charged with this payment (default: 0)")
    pay.add_argument("--description", default="")

    txns = sub.add_parser("list-transactions", help="List a customer's transactions, newest first")
    txns.add_argument("account")

    fine = sub.add_parser("set-fine", help="Set the fine on an existing transaction")
    fine.add_argument("account")
    fine.add_argument("transaction_id")
    fine.add_argument("fine")

    del_txn = sub.add_parser("delete-transaction", help="Delete a transaction and reverse its amount")
    del_txn.add_argument("account")
    del_txn.add_argument("transaction_id")

    sub.add_parser("preflight", help="Validate configuration and Firestore access (no writes besides lastActive)")
    return p


def _require_token(cfg: AppConfig) -> None:
    if cfg.firestore.token:
        return
    raise SystemExit("Missing Firestore auth. Set FIRESTORE_TOKEN (an OAuth2 access token) in your .env.")


def _build_client(cfg: AppConfig) -> FirestoreClient:
    return FirestoreClient(
        project_id=cfg.firestore.project_id,
        token=cfg.firestore.token,
        base_url=cfg.firestore.base_url,
        timeout_s=cfg.firestore.timeout_s,
    )


async def _with_ledger(cfg: AppConfig, fn: Callable[[LedgerStore], Awaitable[T]]) -> T:
    async with _build_client(cfg) as client:
        ledger = LedgerStore(client, user_id=cfg.firestore.user_id)
        await ledger.touch_user()
        return await fn(ledger)


def _parse_money_arg(raw: str, what: str) -> Decimal:
    try:
        return parse_amount(raw)
    except ValueError:
        raise SystemExit(f"Invalid {what}: {raw!r}")


def _parse_date_arg(raw: str, what: str) -> Optional[date]:
    if not raw.strip():
        return None
    try:
        return parse_loose_date(raw)
    except (ValueError, OverflowError):
        raise SystemExit(f"Invalid {what}: {raw!r}")


async def _import_statement(cfg: AppConfig, path: Path, sheet: str) -> int:
    async def _run(ledger: LedgerStore) -> int:
        importer = StatementImporter(
            ledger,
            blank_row_limit=cfg.statement.blank_row_limit,
            sheet_name=sheet or cfg.statement.sheet_name,
        )
        session = ImportSession(importer, unknown_preview_limit=cfg.statement.unknown_preview_limit)
        with path.open("rb") as fh:
            message = await session.run(fh)
        print(message)
        return 0 if session.state is ImportState.SUCCESS else 1

    return await _with_ledger(cfg, _run)


async def _pending(cfg: AppConfig, today: date) -> int:
    async def _run(ledger: LedgerStore) -> int:
        customers = await ledger.list_customers()
        rows = pending_customers(customers, today)
        if not rows:
            print(f"No pending customers as of {today.isoformat()}.")
            return 0
        for row in rows:
            c, s = row.customer, row.status
            print(
                f"{c.account_number}\t{c.name}\t{s.days_overdue} days overdue (since {s.next_due_date.isoformat()})"
                f"\toverdue {format_rupees(s.amount_overdue)}\tcurrent installment left {format_rupees(s.partial_payment_left)}"
            )
        return 0

    return await _with_ledger(cfg, _run)


async def _list_customers(cfg: AppConfig, search: str = "") -> int:
    async def _run(ledger: LedgerStore) -> int:
        customers = sorted(filter_customers(await ledger.list_customers(), search), key=lambda c: c.account_number)
        for c in customers:
            print(
                f"{c.account_number}\t{c.name}\t{c.phone}\t{c.vehicle_number}"
                f"\tpaid {format_rupees(c.amount_paid)} / {format_rupees(c.total_amount)}"
                f" ({payment_progress(c) * 100:.1f}%)"
                + (" complete" if is_payment_complete(c) else "")
            )
        print(f"{len(customers)} customer(s)")
        return 0

    return await _with_ledger(cfg, _run)


async def _list_transactions(cfg: AppConfig, account: str) -> int:
    async def _run(ledger: LedgerStore) -> int:
        for t in await ledger.list_transactions(account):
            when = t.date.date().isoformat() if t.date else "?"
            ref = f"\tref {t.bank_reference}" if t.bank_reference else ""
            print(
                f"{t.id}\t{when}\t{format_rupees(t.amount)}\tfine {format_rupees(t.fine)}"
                f"\tbalance {format_rupees(t.balance)}\t{t.description}{ref}"
            )
        return 0

    return await _with_ledger(cfg, _run)


async def _list_upi(cfg: AppConfig, account: str) -> int:
    async def _run(ledger: LedgerStore) -> int:
        for u in await ledger.list_upi_ids(account):
            print(f"{u.handle}\t{u.id}")
        return 0

    return await _with_ledger(cfg, _run)


async def _preflight(cfg: AppConfig) -> None:
    async def _run(ledger: LedgerStore) -> None:
        customers = await ledger.list_customers()
        logger.info(
            "Firestore preflight OK (project=%s user=%s customers=%d)",
            cfg.firestore.project_id,
            cfg.firestore.user_id,
            len(customers),
        )

    await _with_ledger(cfg, _run)


def _dispatch(args: argparse.Namespace, cfg: AppConfig) -> int:
    if args.cmd == "preflight":
        logger.info("Starting preflight checks")
        asyncio.run(_preflight(cfg))
        logger.info("Preflight OK")
        return 0

    if args.cmd == "import-statement":
        path = Path(args.file)
        if not path.exists():
            raise SystemExit(f"Statement file not found: {path}")
        return asyncio.run(_import_statement(cfg, path, args.sheet))

    if args.cmd == "pending":
        today = _parse_date_arg(args.today, "--today") or date.today()
        return asyncio.run(_pending(cfg, today))

    if args.cmd == "list-customers":
        return asyncio.run(_list_customers(cfg, args.search))

    if args.cmd == "add-customer":
        new = NewCustomer(
            account_number=args.account,
            name=args.name,
            phone=args.phone,
            vehicle_number=args.vehicle,
            installment_amount=_parse_money_arg(args.installment, "--installment"),
            total_amount=_parse_money_arg(args.total, "--total"),
            opening_date=_opening_datetime(_parse_date_arg(args.opening_date, "--opening-date")),
            closing_date=_parse_date_arg(args.closing_date, "--closing-date"),
            upi_handle=args.upi,
        )
        customer = asyncio.run(_with_ledger(cfg, lambda ledger: ledger.add_customer(new)))
        print(f"Added customer {customer.account_number} ({customer.name})")
        return 0

    if args.cmd == "delete-customer":
        if not args.yes:
            answer = input(f"Delete customer {args.account}? Transactions are not removed. [y/N] ").strip().lower()
            if answer not in ("y", "yes"):
                print("Aborted.")
                return 1
        asyncio.run(_with_ledger(cfg, lambda ledger: ledger.delete_customer(args.account)))
        print(f"Deleted customer {args.account}")
        return 0

    if args.cmd == "add-upi":
        upi = asyncio.run(_with_ledger(cfg, lambda ledger: ledger.add_upi_id(args.account, args.handle)))
        print(f"Linked {upi.handle} to customer {upi.account_number}")
        return 0

    if args.cmd == "list-upi":
        return asyncio.run(_list_upi(cfg, args.account))

    if args.cmd == "add-payment":
        amount = _parse_money_arg(args.amount, "amount")
        fine_amount = _parse_money_arg(args.fine, "--fine")
        posted = asyncio.run(
            _with_ledger(
                cfg,
                lambda ledger: ledger.add_payment(args.account, amount, fine=fine_amount, description=args.description),
            )
        )
        print(
            f"Recorded {format_rupees(posted.amount)} for {posted.account_number} "
            f"(paid so far {format_rupees(posted.amount_paid)}, balance {format_rupees(posted.balance)})"
        )
        return 0

    if args.cmd == "list-transactions":
        return asyncio.run(_list_transactions(cfg, args.account))

    if args.cmd == "set-fine":
        fine_amount = _parse_money_arg(args.fine, "fine")
        asyncio.run(
            _with_ledger(
                cfg, lambda ledger: ledger.update_transaction_fine(args.account, args.transaction_id, fine_amount)
            )
        )
        print(f"Fine on {args.transaction_id} set to {format_rupees(fine_amount)}")
        return 0

    if args.cmd == "delete-transaction":
        new_paid = asyncio.run(
            _with_ledger(cfg, lambda ledger: ledger.delete_transaction(args.account, args.transaction_id))
        )
        print(f"Deleted transaction {args.transaction_id}; amount paid is now {format_rupees(new_paid)}")
        return 0

    raise AssertionError("Unhandled command")


def _opening_datetime(d: Optional[date]) -> Optional[datetime]:
    if d is None:
        return None
    # Local midnight, so the accrual's local-date view lands on the chosen day.
    return datetime(d.year, d.month, d.day).astimezone()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        cfg = load_config(args.config)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    _require_token(cfg)

    try:
        return _dispatch(args, cfg)
    except FirestoreError as e:
        print(f"❌ {describe_store_error(e)}")
        return 1
    except httpx.HTTPError as e:
        print(f"❌ {describe_store_error(e)}")
        return 1
    except (CustomerExistsError, CustomerNotFoundError, DuplicateUpiIdError, LookupError, ValueError) as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
