from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Iterator, Optional, Sequence, Tuple, Union

from ..models import ParsedStatementRow
from ..util.money import is_valid_amount, parse_amount


logger = logging.getLogger(__name__)


# Zero-based cell positions in the bank's export.
DATE_COL = 1
DETAILS_COL = 2
WITHDRAWAL_COL = 8
DEPOSIT_COL = 10

HEADER_DATE = "date"
HEADER_DETAILS = "transaction details"

DEFAULT_BLANK_ROW_LIMIT = 20

_UPI_HANDLE_RE = re.compile(r"[a-zA-Z0-9._-]+@[a-zA-Z0-9.-]+")
# No-break space, figure space, narrow no-break space, CR/LF/TAB.
_ODD_SPACE_RE = re.compile("[\u00a0\u2007\u202f\r\n\t]")
_WHITESPACE_RE = re.compile(r"\s+")


class SkipReason(str, Enum):
    HEADER_REPEAT = "header_repeat"
    BALANCE_SUMMARY = "balance_summary"
    BLANK = "blank"
    MISSING_FIELDS = "missing_fields"
    NON_UPI_OR_WITHDRAWAL = "non_upi_or_withdrawal"
    NOT_UPI = "not_upi"
    MISSING_UPI_PARTS = "missing_upi_parts"
    INVALID_AMOUNT = "invalid_amount"

    @property
    def attempted(self) -> bool:
        """Whether a row skipped for this reason still counts as an attempted data row."""
        return self not in (SkipReason.HEADER_REPEAT, SkipReason.BALANCE_SUMMARY, SkipReason.BLANK)


ParseResult = Union[ParsedStatementRow, SkipReason]


def _cell(row: Sequence[Optional[str]], index: int) -> str:
    if index >= len(row):
        return ""
    return (row[index] or "").strip()


def is_header_row(row: Sequence[Optional[str]]) -> bool:
    return (
        _cell(row, DATE_COL).lower() == HEADER_DATE
        and _cell(row, DETAILS_COL).lower() == HEADER_DETAILS
    )


def normalize_details(text: str) -> str:
    s = _ODD_SPACE_RE.sub(" ", text or "")
    return _WHITESPACE_RE.sub(" ", s).strip()


def extract_upi_parts(details: str) -> Tuple[str, str]:
    """
    Pull (upi_handle, bank_reference) out of a narration like
    "UPI/123456789012/payment to/john.doe@okhdfcbank/other text".

    Either part may come back blank.
    """
    segments = normalize_details(details).split("/")

    handle = ""
    for seg in segments:
        if "@" not in seg:
            continue
        m = _UPI_HANDLE_RE.search(seg)
        if m:
            handle = m.group(0).lower()
        break

    reference = segments[1].strip() if len(segments) > 1 else ""
    return handle, reference


def parse_row(row: Sequence[Optional[str]]) -> ParseResult:
    """
    Classify one data row (after the header has been located).
    The first matching skip rule wins.
    """
    date_text = _cell(row, DATE_COL)
    details = _cell(row, DETAILS_COL)

    if is_header_row(row):
        return SkipReason.HEADER_REPEAT
    if details.lower() == "balance" and not date_text:
        return SkipReason.BALANCE_SUMMARY
    if not date_text and not details:
        return SkipReason.BLANK
    if not date_text or not details:
        return SkipReason.MISSING_FIELDS

    # Only incoming credits are reconciled; any debit on the row disqualifies it.
    deposit = _cell(row, DEPOSIT_COL)
    if not is_valid_amount(deposit) or is_valid_amount(_cell(row, WITHDRAWAL_COL)):
        return SkipReason.NON_UPI_OR_WITHDRAWAL
    if "@" not in details:
        return SkipReason.NOT_UPI

    handle, reference = extract_upi_parts(details)
    if not handle or not reference:
        return SkipReason.MISSING_UPI_PARTS

    try:
        amount = parse_amount(deposit)
    except (ValueError, ArithmeticError):
        return SkipReason.INVALID_AMOUNT
    if amount <= Decimal("0"):
        return SkipReason.INVALID_AMOUNT

    return ParsedStatementRow(upi_handle=handle, bank_reference=reference, amount=amount)


class HeaderNotFoundError(ValueError):
    pass


@dataclass(frozen=True)
class ScannedRow:
    row_number: int  # 1-based position in the sheet
    result: ParseResult


class StatementScanner:
    """
    Walks a sheet in order: finds the header row, then yields a parse result per data row.

    A run of more than `blank_row_limit` consecutive blank rows ends the scan (end-of-data
    heuristic for exports padded with empty formatted rows).
    """

    def __init__(self, *, blank_row_limit: int = DEFAULT_BLANK_ROW_LIMIT) -> None:
        self.blank_row_limit = blank_row_limit
        self.header_row_number: Optional[int] = None
        self.stopped_on_blank_run = False

    def scan(self, rows: Iterable[Sequence[Optional[str]]]) -> Iterator[ScannedRow]:
        it = iter(rows)
        row_number = 0

        for row in it:
            row_number += 1
            if is_header_row(row):
                self.header_row_number = row_number
                break
        else:
            raise HeaderNotFoundError(
                "Could not find the statement header row ('Date' / 'Transaction Details')."
            )

        logger.debug("Statement header found at row %d", row_number)

        blank_run = 0
        for row in it:
            row_number += 1
            result = parse_row(row)
            if result is SkipReason.BLANK:
                blank_run += 1
                if blank_run > self.blank_row_limit:
                    logger.info(
                        "Stopping scan at row %d after %d consecutive blank rows",
                        row_number,
                        blank_run,
                    )
                    self.stopped_on_blank_run = True
                    return
            else:
                blank_run = 0
            yield ScannedRow(row_number=row_number, result=result)
