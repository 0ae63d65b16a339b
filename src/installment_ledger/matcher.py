from __future__ import annotations

import logging
from typing import Dict, Optional

from .store.ledger import LedgerStore


logger = logging.getLogger(__name__)


class UpiMatcher:
    """
    Resolves statement credits against the ledger:
    - bank reference -> already applied?
    - UPI handle -> customer account number (exact match on the lower-cased handle)

    Handle lookups are cached for the lifetime of the matcher (one import run); reference
    checks never are, since earlier rows of the same run may have applied them.
    """

    def __init__(self, ledger: LedgerStore) -> None:
        self._ledger = ledger
        self._handle_cache: Dict[str, Optional[str]] = {}

    async def is_already_processed(self, bank_reference: str) -> bool:
        return await self._ledger.has_processed_reference(bank_reference)

    async def resolve_handle(self, upi_handle: str) -> Optional[str]:
        handle = (upi_handle or "").strip().lower()
        if not handle:
            return None
        if handle not in self._handle_cache:
            account = await self._ledger.lookup_upi_handle(handle)
            if account is None:
                logger.debug("No customer linked to UPI handle %s", handle)
            self._handle_cache[handle] = account
        return self._handle_cache[handle]
