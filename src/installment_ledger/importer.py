from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from .matcher import UpiMatcher
from .models import ParsedStatementRow
from .statement.parser import DEFAULT_BLANK_ROW_LIMIT, HeaderNotFoundError, SkipReason, StatementScanner
from .statement.workbook import WorkbookOpenError, read_statement_rows
from .store.firestore import FirestoreError
from .store.ledger import LedgerStore
from .util.money import format_rupees


logger = logging.getLogger(__name__)

DEFAULT_UNKNOWN_PREVIEW_LIMIT = 5


class StatementImportError(Exception):
    """The statement could not be processed at all (nothing was imported)."""


class RowOutcome(str, Enum):
    ADDED = "added"
    DUPLICATE = "duplicate"
    UNKNOWN_HANDLE = "unknown_handle"
    ERROR = "error"


@dataclass
class ImportSummary:
    rows_attempted: int = 0
    added: int = 0
    duplicates_skipped: int = 0
    non_upi_or_withdrawal_skipped: int = 0
    errors: int = 0
    unknown_handles: Set[str] = field(default_factory=set)

    unknown_rows: int = 0
    amount_added: Decimal = Decimal("0")
    skipped_by_reason: Dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    stopped_on_blank_run: bool = False

    # Encounter order of unknown handles, for the report preview.
    _unknown_order: List[str] = field(default_factory=list, repr=False)

    def record_skip(self, reason: SkipReason) -> None:
        self.skipped_by_reason[reason.value] = self.skipped_by_reason.get(reason.value, 0) + 1
        if reason.attempted:
            self.rows_attempted += 1
            self.non_upi_or_withdrawal_skipped += 1

    def record_unknown_handle(self, handle: str) -> None:
        self.unknown_rows += 1
        if handle not in self.unknown_handles:
            self.unknown_handles.add(handle)
            self._unknown_order.append(handle)

    def unknown_handles_preview(self, limit: int = DEFAULT_UNKNOWN_PREVIEW_LIMIT) -> tuple[List[str], int]:
        shown = self._unknown_order[: max(0, limit)]
        return shown, len(self._unknown_order) - len(shown)

    def render(self, *, unknown_preview_limit: int = DEFAULT_UNKNOWN_PREVIEW_LIMIT) -> str:
        lines = [
            "Statement import finished" + (" (aborted: input closed)" if self.aborted else ""),
            f"Rows attempted: {self.rows_attempted}",
            f"Transactions added: {self.added} ({format_rupees(self.amount_added)})",
            f"Duplicates skipped: {self.duplicates_skipped}",
            f"Non-UPI / withdrawal rows skipped: {self.non_upi_or_withdrawal_skipped}",
            f"Unknown UPI handles: {len(self.unknown_handles)} (rows: {self.unknown_rows})",
            f"Errors: {self.errors}",
        ]
        shown, more = self.unknown_handles_preview(unknown_preview_limit)
        if shown:
            lines.append("Unmatched handles:")
            lines.extend(f"  - {h}" for h in shown)
            if more:
                lines.append(f"  ... and {more} more")
        return "\n".join(lines)


class _StreamClosed(Exception):
    pass


def _rows_until_closed(rows: Iterable[Sequence[str]], stream: BinaryIO) -> Iterator[Sequence[str]]:
    """
    Stop pulling rows as soon as the caller closes the input stream.
    """
    it = iter(rows)
    while True:
        if getattr(stream, "closed", False):
            raise _StreamClosed()
        try:
            row = next(it)
        except StopIteration:
            return
        except (ValueError, OSError):
            if getattr(stream, "closed", False):
                raise _StreamClosed()
            raise
        yield row


class StatementImporter:
    """
    Reconciles one bank statement against the ledger, row by row in file order:
    parse -> already processed? -> resolve UPI handle -> atomic post.

    Per-row problems are tallied and never stop the run; only failing to read the
    statement at all raises StatementImportError.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        *,
        blank_row_limit: int = DEFAULT_BLANK_ROW_LIMIT,
        sheet_name: str = "",
    ) -> None:
        self._ledger = ledger
        self._blank_row_limit = blank_row_limit
        self._sheet_name = sheet_name

    async def import_statement(self, stream: BinaryIO) -> ImportSummary:
        t0 = time.time()
        try:
            rows = read_statement_rows(stream, sheet_name=self._sheet_name)
        except WorkbookOpenError as e:
            raise StatementImportError(str(e)) from e

        summary = ImportSummary()
        matcher = UpiMatcher(self._ledger)
        scanner = StatementScanner(blank_row_limit=self._blank_row_limit)

        try:
            for scanned in scanner.scan(_rows_until_closed(rows, stream)):
                if isinstance(scanned.result, SkipReason):
                    summary.record_skip(scanned.result)
                    continue

                summary.rows_attempted += 1
                outcome = await self._process_row(scanned.row_number, scanned.result, matcher)
                if outcome is RowOutcome.ADDED:
                    summary.added += 1
                    summary.amount_added += scanned.result.amount
                elif outcome is RowOutcome.DUPLICATE:
                    summary.duplicates_skipped += 1
                elif outcome is RowOutcome.UNKNOWN_HANDLE:
                    summary.record_unknown_handle(scanned.result.upi_handle)
                else:
                    summary.errors += 1
        except HeaderNotFoundError as e:
            raise StatementImportError(str(e)) from e
        except _StreamClosed:
            logger.warning("Statement input closed; stopping import after %d attempted rows", summary.rows_attempted)
            summary.aborted = True

        summary.stopped_on_blank_run = scanner.stopped_on_blank_run
        logger.info(
            "Statement import done (attempted=%d added=%d duplicates=%d skipped=%d unknown=%d errors=%d seconds=%.2f)",
            summary.rows_attempted,
            summary.added,
            summary.duplicates_skipped,
            summary.non_upi_or_withdrawal_skipped,
            summary.unknown_rows,
            summary.errors,
            time.time() - t0,
        )
        return summary

    async def _process_row(self, row_number: int, parsed: ParsedStatementRow, matcher: UpiMatcher) -> RowOutcome:
        ref = parsed.bank_reference
        try:
            # Cheaper than the handle lookup and most re-imported rows stop here.
            if await matcher.is_already_processed(ref):
                logger.debug("Row %d: reference %s already processed", row_number, ref)
                return RowOutcome.DUPLICATE

            account = await matcher.resolve_handle(parsed.upi_handle)
            if account is None:
                return RowOutcome.UNKNOWN_HANDLE

            customer = await self._ledger.get_customer(account)
            if customer is None:
                logger.warning(
                    "Row %d: UPI handle %s points at missing customer %s; skipping",
                    row_number,
                    parsed.upi_handle,
                    account,
                )
                return RowOutcome.ERROR

            await self._ledger.post_statement_payment(
                customer,
                amount=parsed.amount,
                bank_reference=ref,
                description=f"UPI {parsed.upi_handle} ref {ref}",
            )
        except FirestoreError as e:
            if e.is_precondition_failure and not e.is_auth_error and await self._reference_now_exists(ref):
                # Another import applied this reference between our check and our commit.
                logger.info("Row %d: reference %s was applied concurrently; counting as duplicate", row_number, ref)
                return RowOutcome.DUPLICATE
            logger.error("Row %d: failed to post reference %s (%s)", row_number, ref, e)
            return RowOutcome.ERROR
        except Exception:
            logger.exception("Row %d: failed to post reference %s", row_number, ref)
            return RowOutcome.ERROR

        logger.info(
            "Row %d: posted %s from %s to account %s (ref=%s)",
            row_number,
            format_rupees(parsed.amount),
            parsed.upi_handle,
            account,
            ref,
        )
        return RowOutcome.ADDED

    async def _reference_now_exists(self, ref: str) -> bool:
        try:
            return await self._ledger.has_processed_reference(ref)
        except Exception:
            logger.debug("Failed to re-check reference %s after commit failure", ref, exc_info=True)
            return False


class ImportState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class ImportSession:
    """
    One upload dialog's lifecycle: Idle -> Loading -> (Success | Error). `reset()` goes back
    to Idle for the next run.
    """

    def __init__(self, importer: StatementImporter, *, unknown_preview_limit: int = DEFAULT_UNKNOWN_PREVIEW_LIMIT) -> None:
        self._importer = importer
        self._unknown_preview_limit = unknown_preview_limit
        self.state = ImportState.IDLE
        self.summary: Optional[ImportSummary] = None
        self.message = ""

    async def run(self, stream: BinaryIO) -> str:
        if self.state is not ImportState.IDLE:
            raise RuntimeError(f"Import session is {self.state.value}; reset() it before starting another run")

        self.state = ImportState.LOADING
        try:
            self.summary = await self._importer.import_statement(stream)
        except StatementImportError as e:
            self.state = ImportState.ERROR
            self.message = f"FATAL: {e}"
            return self.message
        except Exception as e:
            self.state = ImportState.ERROR
            self.message = f"FATAL: unexpected error while importing statement: {e}"
            logger.exception("Statement import crashed")
            return self.message

        self.state = ImportState.SUCCESS
        self.message = self.summary.render(unknown_preview_limit=self._unknown_preview_limit)
        return self.message

    def reset(self) -> None:
        self.state = ImportState.IDLE
        self.summary = None
        self.message = ""
