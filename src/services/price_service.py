from __future__ import annotations

import logging
from threading import Event
from typing import Iterable, Protocol

from domain.ledger import PriceKey
from domain.pricing import PriceHistory, PriceHistoryProvider

from .price_store import PriceHistoryStore

logger = logging.getLogger(__name__)


class PriceHistorySource(Protocol):
    """Remote history fetcher; returns None when the security is unknown."""

    def fetch_history(self, key: PriceKey, *, cancel: Event | None = None) -> PriceHistory | None: ...


class PriceHistoryService(PriceHistoryProvider):
    def __init__(
        self,
        store: PriceHistoryStore,
        source: PriceHistorySource | None = None,
    ) -> None:
        self.store = store
        self.source = source

    def history(self, key: PriceKey, *, cancel: Event | None = None) -> PriceHistory | None:
        existing = self.store.read(key)
        if existing is not None:
            return existing
        if self.source is None:
            logger.info("No stored price history for %s", key)
            return None
        if cancel is not None and cancel.is_set():
            return None

        fetched = self.source.fetch_history(key, cancel=cancel)
        if fetched is None:
            logger.info("Price source has no history for %s", key)
            return None
        if cancel is not None and cancel.is_set():
            return None
        self.store.write(fetched)
        return fetched

    def histories(self, keys: Iterable[PriceKey], *, cancel: Event | None = None) -> dict[PriceKey, PriceHistory]:
        found: dict[PriceKey, PriceHistory] = {}
        for key in sorted(set(keys)):
            history = self.history(key, cancel=cancel)
            if history is not None:
                found[key] = history
        return found


__all__ = ["PriceHistoryService", "PriceHistorySource"]
