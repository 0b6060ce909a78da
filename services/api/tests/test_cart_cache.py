from __future__ import annotations

from packages.shared.schemas.order import OrderStateV1, OrderV1
from services.api.app.checkout.cart_cache import ActiveOrderCache


def _order(total: int) -> OrderV1:
    return OrderV1(id="1", code="ABC", state=OrderStateV1.ADDING_ITEMS, total_with_tax=total)


class _Backend:
    def __init__(self) -> None:
        self.total = 1000
        self.fetches = 0
        self.on_fetch = None

    def fetch(self) -> OrderV1:
        self.fetches += 1
        if self.on_fetch is not None:
            self.on_fetch()
        return _order(self.total)


def test_get_fetches_once_until_invalidated() -> None:
    backend = _Backend()
    cache = ActiveOrderCache(backend.fetch)

    assert cache.get().total_with_tax == 1000
    assert cache.get().total_with_tax == 1000
    assert backend.fetches == 1

    backend.total = 1500
    cache.invalidate()
    assert cache.peek().total_with_tax == 1000
    assert cache.get().total_with_tax == 1500
    assert backend.fetches == 2


def test_replace_serves_snapshot_but_refetches_on_get() -> None:
    backend = _Backend()
    cache = ActiveOrderCache(backend.fetch)

    cache.replace(_order(2000))

    assert not cache.is_valid
    assert cache.peek().total_with_tax == 2000
    assert cache.get().total_with_tax == 1000
    assert backend.fetches == 1


def test_invalidation_during_fetch_keeps_cache_invalid() -> None:
    backend = _Backend()
    cache = ActiveOrderCache(backend.fetch)
    backend.on_fetch = cache.invalidate

    cache.get()

    assert not cache.is_valid
    backend.on_fetch = None
    cache.get()
    assert cache.is_valid


def test_clear_drops_snapshot() -> None:
    backend = _Backend()
    cache = ActiveOrderCache(backend.fetch)
    cache.get()
    version = cache.version

    cache.clear()

    assert cache.peek() is None
    assert cache.version == version + 1
