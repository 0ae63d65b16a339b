from .parser import HeaderNotFoundError, SkipReason, StatementScanner, extract_upi_parts, parse_row
from .workbook import WorkbookOpenError, read_statement_rows

__all__ = [
    "HeaderNotFoundError",
    "SkipReason",
    "StatementScanner",
    "WorkbookOpenError",
    "extract_upi_parts",
    "parse_row",
    "read_statement_rows",
]
