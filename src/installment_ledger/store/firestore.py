from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx


logger = logging.getLogger(__name__)
T = TypeVar("T")

DEFAULT_BASE_URL = "https://firestore.googleapis.com/v1"

TokenProvider = Callable[[], Awaitable[str]]


class FirestoreError(Exception):
    """
    A non-2xx answer from the Firestore REST API.
    """

    def __init__(self, status_code: int, body: str, *, op: str = "") -> None:
        self.status_code = int(status_code)
        self.body = body or ""
        self.op = op
        super().__init__(f"Firestore {op or 'request'} failed: HTTP {self.status_code} - {self.body[:500]}")

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or "NOT_FOUND" in self.body

    @property
    def is_precondition_failure(self) -> bool:
        # exists=false violations come back as 409 ALREADY_EXISTS or 400 FAILED_PRECONDITION,
        # exists=true violations as 404 NOT_FOUND.
        return (
            self.status_code == 409
            or "FAILED_PRECONDITION" in self.body
            or "ALREADY_EXISTS" in self.body
            or self.is_not_found
        )


def describe_store_error(exc: BaseException, *, action: str = "talk to the ledger store") -> str:
    if isinstance(exc, FirestoreError):
        if exc.status_code == 401:
            return "Authentication failed. Check the Firestore access token (it may have expired)."
        if exc.status_code == 403:
            return "Permission denied. Check Firestore security rules."
        return f"Failed to {action}: HTTP {exc.status_code} - {exc.body[:300]}"
    if isinstance(exc, httpx.HTTPError):
        return f"Failed to {action}: network error ({exc})"
    return f"Failed to {action}: {exc}"


# --- Typed value codec ---------------------------------------------------------------


def encode_value(value: object) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        # Firestore encodes int64 as a JSON string.
        return {"integerValue": str(value)}
    if isinstance(value, (float, Decimal)):
        return {"doubleValue": float(value)}
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return {"timestampValue": dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")}
    if isinstance(value, date):
        return {"timestampValue": f"{value.isoformat()}T00:00:00Z"}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a Firestore value")


def encode_fields(fields: Dict[str, object]) -> Dict[str, Any]:
    return {k: encode_value(v) for k, v in fields.items()}


def decode_value(raw: Dict[str, Any]) -> object:
    """
    Timestamps stay as RFC 3339 strings; callers parse them where a date is meant.
    """
    if "stringValue" in raw:
        return raw["stringValue"]
    if "doubleValue" in raw:
        return raw["doubleValue"]
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "timestampValue" in raw:
        return raw["timestampValue"]
    if "nullValue" in raw:
        return None
    if "arrayValue" in raw:
        return [decode_value(v) for v in (raw["arrayValue"] or {}).get("values") or []]
    if "mapValue" in raw:
        return decode_fields((raw["mapValue"] or {}).get("fields") or {})
    if "referenceValue" in raw:
        return raw["referenceValue"]
    return None


def decode_fields(fields: Dict[str, Any]) -> Dict[str, object]:
    return {k: decode_value(v) for k, v in (fields or {}).items()}


@dataclass(frozen=True)
class Document:
    path: str  # relative to the database root, e.g. "users/u1/customer/A1"
    fields: Dict[str, object]

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class Write:
    """
    One document write inside an atomic commit.

    `fields=None` deletes the document. `exists` is the optional existence precondition
    (False: must not exist yet, True: must already exist).
    """

    path: str
    fields: Optional[Dict[str, object]]
    exists: Optional[bool] = None
    update_mask: Optional[Sequence[str]] = None


Filter = Tuple[str, str, object]  # (field_path, op, value), op like "EQUAL"


class FirestoreClient:
    """
    Small async wrapper around the Firestore REST API:
    - documents addressed by paths relative to the database root
    - typed values encoded/decoded to plain Python
    - atomic multi-document commits with existence preconditions
    """

    def __init__(
        self,
        *,
        project_id: str,
        token: str = "",
        token_provider: Optional[TokenProvider] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not project_id:
            raise ValueError("FirestoreClient requires a project_id")
        if not token and token_provider is None:
            raise ValueError("FirestoreClient requires a token or a token_provider")

        self._project_id = project_id
        self._token = token.strip() if token else ""
        self._token_provider = token_provider
        self._database = f"projects/{project_id}/databases/(default)"
        self._documents_root = f"{self._database}/documents"
        self._base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "FirestoreClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    # --- plumbing ---------------------------------------------------------------------

    def _url(self, suffix: str) -> str:
        return f"{self._base_url}/{self._documents_root}{suffix}"

    def resource_name(self, path: str) -> str:
        return f"{self._documents_root}/{path.strip('/')}"

    def relative_path(self, name: str) -> str:
        prefix = self._documents_root + "/"
        return name[len(prefix):] if name.startswith(prefix) else name

    async def _headers(self) -> Dict[str, str]:
        token = self._token
        if self._token_provider is not None:
            token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        op: str,
        method: str,
        url: str,
        *,
        params: Optional[Any] = None,
        json: Optional[Any] = None,
    ) -> httpx.Response:
        resp = await self._http.request(method, url, params=params, json=json, headers=await self._headers())
        if resp.status_code >= 400:
            raise FirestoreError(resp.status_code, resp.text, op=op)
        return resp

    async def _call_with_retry(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Best-effort retry wrapper for READ operations only; commits are never retried here.

        Auth failures and other 4xx answers are not retried (usually a config issue).
        """
        attempts = 3
        base_delay_s = 0.25
        max_delay_s = 2.0

        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except FirestoreError as e:
                if e.status_code < 500 or attempt >= attempts:
                    raise
                err: Exception = e
            except httpx.TransportError as e:
                if attempt >= attempts:
                    raise
                err = e
            delay = min(base_delay_s * (2 ** (attempt - 1)), max_delay_s)
            logger.warning(
                "Firestore %s failed (attempt %d/%d); retrying in %.2fs. (%s)",
                op,
                attempt,
                attempts,
                delay,
                err,
            )
            await asyncio.sleep(delay)

        raise RuntimeError(f"Firestore {op} failed after {attempts} attempts")

    def _to_document(self, raw: Dict[str, Any]) -> Document:
        return Document(path=self.relative_path(str(raw.get("name") or "")), fields=decode_fields(raw.get("fields") or {}))

    # --- reads ------------------------------------------------------------------------

    async def get_document(self, path: str) -> Optional[Document]:
        async def _get() -> Optional[Document]:
            try:
                resp = await self._request("get", "GET", self._url(f"/{path.strip('/')}"))
            except FirestoreError as e:
                if e.status_code == 404:
                    return None
                raise
            return self._to_document(resp.json())

        return await self._call_with_retry(f"get({path})", _get)

    async def list_documents(self, collection_path: str, *, page_size: int = 300) -> List[Document]:
        out: List[Document] = []
        page_token = ""
        while True:
            params: Dict[str, Any] = {"pageSize": page_size}
            if page_token:
                params["pageToken"] = page_token

            async def _list() -> httpx.Response:
                return await self._request(
                    "list", "GET", self._url(f"/{collection_path.strip('/')}"), params=params
                )

            resp = await self._call_with_retry(f"list({collection_path})", _list)
            data = resp.json() or {}
            out.extend(self._to_document(d) for d in data.get("documents") or [])
            page_token = str(data.get("nextPageToken") or "")
            if not page_token:
                return out

    async def run_query(
        self,
        parent_path: str,
        collection_id: str,
        filters: Sequence[Filter] = (),
        *,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """
        Structured query over one collection under `parent_path` (e.g. "users/u1").
        Multiple filters are ANDed.
        """
        field_filters = [
            {"fieldFilter": {"field": {"fieldPath": f}, "op": op, "value": encode_value(v)}}
            for f, op, v in filters
        ]
        query: Dict[str, Any] = {"from": [{"collectionId": collection_id}]}
        if len(field_filters) == 1:
            query["where"] = field_filters[0]
        elif field_filters:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": field_filters}}
        if limit:
            query["limit"] = int(limit)

        parent = f"/{parent_path.strip('/')}" if parent_path.strip("/") else ""

        async def _query() -> httpx.Response:
            return await self._request("runQuery", "POST", self._url(f"{parent}:runQuery"), json={"structuredQuery": query})

        resp = await self._call_with_retry(f"runQuery({collection_id})", _query)
        rows = resp.json() or []
        # Each result row carries "document" only when something matched.
        return [self._to_document(r["document"]) for r in rows if isinstance(r, dict) and r.get("document")]

    # --- writes -----------------------------------------------------------------------

    def _write_body(self, w: Write) -> Dict[str, Any]:
        body: Dict[str, Any]
        if w.fields is None:
            body = {"delete": self.resource_name(w.path)}
        else:
            body = {"update": {"name": self.resource_name(w.path), "fields": encode_fields(w.fields)}}
            if w.update_mask is not None:
                body["updateMask"] = {"fieldPaths": list(w.update_mask)}
        if w.exists is not None:
            body["currentDocument"] = {"exists": bool(w.exists)}
        return body

    async def commit(self, writes: Sequence[Write]) -> None:
        """
        Apply all writes atomically: either every write lands or none does.
        """
        if not writes:
            return
        payload = {"writes": [self._write_body(w) for w in writes]}
        await self._request("commit", "POST", f"{self._base_url}/{self._database}/documents:commit", json=payload)

    async def patch_document(
        self,
        path: str,
        fields: Dict[str, object],
        *,
        update_mask: Optional[Sequence[str]] = None,
    ) -> Document:
        params: List[Tuple[str, str]] = [("updateMask.fieldPaths", f) for f in (update_mask or [])]
        resp = await self._request(
            "patch",
            "PATCH",
            self._url(f"/{path.strip('/')}"),
            params=params or None,
            json={"fields": encode_fields(fields)},
        )
        return self._to_document(resp.json())

    async def delete_document(self, path: str) -> None:
        await self._request("delete", "DELETE", self._url(f"/{path.strip('/')}"))
