from __future__ import annotations

import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import BinaryIO, Iterator, List

from openpyxl import load_workbook
from openpyxl.workbook.workbook import Workbook


logger = logging.getLogger(__name__)


class WorkbookOpenError(ValueError):
    pass


def format_cell(value: object) -> str:
    """
    Render a cell the way it reads on screen, so numeric/date typing differences between
    bank export tools do not matter to the parser.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.strftime("%d/%m/%Y")
        return value.strftime("%d/%m/%Y %H:%M:%S")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return format(Decimal(repr(value)), "f")
    return str(value)


def open_statement_workbook(stream: BinaryIO) -> Workbook:
    try:
        return load_workbook(stream, read_only=True, data_only=True)
    except Exception as e:
        # openpyxl raises a zoo of errors (zipfile.BadZipFile, KeyError, InvalidFileException...).
        raise WorkbookOpenError(f"Could not open the statement as an .xlsx workbook: {e}") from e


def iter_sheet_rows(workbook: Workbook, *, sheet_name: str = "") -> Iterator[List[str]]:
    """
    Yield every row of the chosen sheet (first sheet by default) as a list of strings.
    """
    ws = workbook[sheet_name] if sheet_name else workbook.worksheets[0]
    logger.debug("Reading statement sheet %r", ws.title)
    for row in ws.iter_rows(values_only=True):
        yield [format_cell(v) for v in row]


def read_statement_rows(stream: BinaryIO, *, sheet_name: str = "") -> Iterator[List[str]]:
    wb = open_statement_workbook(stream)
    if sheet_name and sheet_name not in wb.sheetnames:
        wb.close()
        raise WorkbookOpenError(f"Statement workbook has no sheet named {sheet_name!r}")
    return _iter_and_close(wb, sheet_name)


def _iter_and_close(wb: Workbook, sheet_name: str) -> Iterator[List[str]]:
    try:
        yield from iter_sheet_rows(wb, sheet_name=sheet_name)
    finally:
        # read-only workbooks keep the zip archive open until closed.
        wb.close()
