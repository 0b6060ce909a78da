from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from packages.shared.schemas.order import OrderV1

logger = logging.getLogger(__name__)


class ActiveOrderCache:
    """Local mirror of the session's active order, for rendering only.

    Checkout decisions never read from here. After every mutating call the cache is
    invalidated; `peek` keeps serving the last snapshot until the next `get` refetches,
    so readers see at most a short stale window.
    """

    def __init__(self, fetch: Callable[[], OrderV1 | None]) -> None:
        self._fetch = fetch
        self._order: OrderV1 | None = None
        self._valid = False
        self._version = 0
        self._lock = threading.Lock()

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_valid(self) -> bool:
        return self._valid

    def peek(self) -> OrderV1 | None:
        return self._order

    def get(self) -> OrderV1 | None:
        with self._lock:
            if self._valid:
                return self._order
            version = self._version

        order = self._fetch()

        with self._lock:
            # An invalidation raced with the fetch; keep the snapshot but stay invalid.
            if version != self._version:
                logger.debug("Discarding cart refetch started at version %s", version)
                return order
            self._order = order
            self._valid = True
            return order

    def replace(self, order: OrderV1) -> None:
        """Store a snapshot taken from a server response; still invalid until refetched."""

        with self._lock:
            self._order = order
            self._valid = False
            self._version += 1

    def invalidate(self) -> None:
        with self._lock:
            self._valid = False
            self._version += 1

    def clear(self) -> None:
        with self._lock:
            self._order = None
            self._valid = False
            self._version += 1
