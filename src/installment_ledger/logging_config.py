import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Libraries that log every HTTP request / workbook part at INFO or DEBUG.
QUIET_LOGGERS = ("httpx", "httpcore", "openpyxl")

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")
_GOOGLE_TOKEN_RE = re.compile(r"ya29\.[A-Za-z0-9._-]+")


class RedactTokensFilter(logging.Filter):
    """
    Masks OAuth access tokens in log records (Firestore error bodies and request reprs can
    echo them back).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        redacted = _GOOGLE_TOKEN_RE.sub("ya29.***", _BEARER_RE.sub(r"\1***", msg))
        if redacted != msg:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=2_000_000, backupCount=3, encoding="utf-8"))

    redact = RedactTokensFilter()
    for h in handlers:
        h.addFilter(redact)

    # force=True: main() calls this twice (env defaults first, then the loaded config).
    logging.basicConfig(level=numeric_level, format=_LOG_FORMAT, handlers=handlers, force=True)

    noisy_level = os.getenv("NOISY_LOG_LEVEL", "WARNING").upper()
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)
