from __future__ import annotations

import sys
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest  # noqa: E402
from openpyxl import Workbook  # noqa: E402

from installment_ledger.store.firestore import (  # noqa: E402
    Document,
    FirestoreError,
    Write,
    decode_fields,
    encode_fields,
)
from installment_ledger.store.ledger import LedgerStore  # noqa: E402


class InMemoryFirestore:
    """
    Offline stand-in for FirestoreClient.

    Values go through the real typed-value codec, so what the ledger reads back looks like
    what Firestore would return (numbers as floats, timestamps as RFC 3339 strings).
    """

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, object]] = {}
        self.commits: List[List[Write]] = []
        self.get_calls: List[str] = []

        # Test hooks.
        self.before_commit: Optional[Callable[[Sequence[Write]], None]] = None
        self.fail_next_commit: Optional[Exception] = None

    async def __aenter__(self) -> "InMemoryFirestore":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None

    def put(self, path: str, fields: Dict[str, object]) -> None:
        self.docs[path] = decode_fields(encode_fields(fields))

    async def get_document(self, path: str) -> Optional[Document]:
        self.get_calls.append(path)
        fields = self.docs.get(path)
        return Document(path=path, fields=dict(fields)) if fields is not None else None

    async def list_documents(self, collection_path: str, *, page_size: int = 300) -> List[Document]:
        prefix = collection_path.strip("/") + "/"
        return [
            Document(path=p, fields=dict(f))
            for p, f in sorted(self.docs.items())
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        ]

    async def run_query(self, parent_path: str, collection_id: str, filters: Sequence[Any] = (), *, limit: Optional[int] = None) -> List[Document]:
        docs = await self.list_documents(f"{parent_path}/{collection_id}")
        out = [d for d in docs if all(op == "EQUAL" and d.fields.get(f) == v for f, op, v in filters)]
        return out[:limit] if limit else out

    def _apply(self, w: Write) -> None:
        if w.fields is None:
            self.docs.pop(w.path, None)
            return
        encoded = decode_fields(encode_fields(w.fields))
        if w.update_mask is not None:
            merged = dict(self.docs.get(w.path, {}))
            merged.update({k: encoded[k] for k in w.update_mask if k in encoded})
            self.docs[w.path] = merged
        else:
            self.docs[w.path] = encoded

    async def commit(self, writes: Sequence[Write]) -> None:
        if self.before_commit is not None:
            self.before_commit(writes)
        if self.fail_next_commit is not None:
            err, self.fail_next_commit = self.fail_next_commit, None
            raise err
        for w in writes:
            exists = w.path in self.docs
            if w.exists is False and exists:
                raise FirestoreError(409, '{"error": {"code": 409, "status": "ALREADY_EXISTS"}}', op="commit")
            if w.exists is True and not exists:
                raise FirestoreError(404, '{"error": {"code": 404, "status": "NOT_FOUND"}}', op="commit")
        for w in writes:
            self._apply(w)
        self.commits.append(list(writes))

    async def patch_document(self, path: str, fields: Dict[str, object], *, update_mask: Optional[Sequence[str]] = None) -> Document:
        self._apply(Write(path=path, fields=fields, update_mask=update_mask))
        return Document(path=path, fields=dict(self.docs[path]))

    async def delete_document(self, path: str) -> None:
        self.docs.pop(path, None)


@pytest.fixture
def store() -> InMemoryFirestore:
    return InMemoryFirestore()


@pytest.fixture
def ledger(store: InMemoryFirestore) -> LedgerStore:
    return LedgerStore(store, user_id="u1")  # type: ignore[arg-type]


HEADER = ["", "Date", "Transaction Details", "", "", "", "", "", "Withdrawals", "", "Deposits", "Balance"]


def statement_row(details: str, *, deposit: object = "", withdrawal: object = "", when: object = "05/01/2024") -> List[object]:
    return ["", when, details, "", "", "", "", "", withdrawal, "", deposit, ""]


def upi_row(ref: str, handle: str, deposit: object = "1,500.00") -> List[object]:
    return statement_row(f"UPI/{ref}/payment to/{handle}/other text", deposit=deposit)


@pytest.fixture
def statement_xlsx() -> Callable[..., BytesIO]:
    """
    Factory for an in-memory bank statement workbook: a couple of preamble rows, the
    header, then the given data rows.
    """

    def build(rows: Sequence[Sequence[object]], *, sheet_title: str = "Statement") -> BytesIO:
        wb = Workbook()
        ws = wb.active
        ws.title = sheet_title
        ws.append(["Account Statement"])
        ws.append(["Generated", datetime(2024, 1, 6, 9, 30)])
        ws.append(HEADER)
        for row in rows:
            ws.append(list(row))
        buf = BytesIO()
        wb.save(buf)
        buf.seek(0)
        return buf

    return build
