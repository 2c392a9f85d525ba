from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pagerelay.errors import LockContendedError
from pagerelay.lock import DistributedLock, RetryPolicy, lock_key
from pagerelay.store import Store

from tests.fakes import FakeClock


class _FlakyStore:
    """Delegates to a real store but fails the next ``get`` or ``remove`` on demand."""

    def __init__(self, inner: Store) -> None:
        self._inner = inner
        self.fail_next_get = False
        self.fail_next_remove = False

    def get(self, key: str) -> Any:
        if self.fail_next_get:
            self.fail_next_get = False
            raise RuntimeError("store unavailable")
        return self._inner.get(key)

    def set(self, key: str, value: Any) -> None:
        self._inner.set(key, value)

    def remove(self, *keys: str) -> int:
        if self.fail_next_remove:
            self.fail_next_remove = False
            raise RuntimeError("store unavailable")
        return self._inner.remove(*keys)

    def items(self, prefix: str = "") -> dict[str, Any]:
        return self._inner.items(prefix)


@pytest.mark.asyncio()
async def test_acquire_writes_token_to_store(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)

    token = await lock.acquire("polling", timeout=5)

    assert token
    assert store.get(lock_key("polling")) == {"token": token, "acquired_at": clock.now}


@pytest.mark.asyncio()
async def test_concurrent_acquire_on_one_instance_yields_single_token(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)

    results = await asyncio.gather(*(lock.acquire("polling", timeout=5) for _ in range(5)))

    winners = [token for token in results if token]
    assert len(winners) == 1
    assert store.get(lock_key("polling"))["token"] == winners[0]


@pytest.mark.asyncio()
async def test_second_instance_blocked_by_fresh_store_record(store: Store, clock: FakeClock) -> None:
    first = DistributedLock(store, clock=clock)
    second = DistributedLock(store, clock=clock)

    token = await first.acquire("polling", timeout=5)
    clock.advance(4.9)

    assert token
    assert await second.acquire("polling", timeout=5) is None
    assert store.get(lock_key("polling"))["token"] == token


@pytest.mark.asyncio()
async def test_stale_store_record_is_reclaimed(store: Store, clock: FakeClock) -> None:
    first = DistributedLock(store, clock=clock)
    second = DistributedLock(store, clock=clock)

    stale = await first.acquire("polling", timeout=5)
    clock.advance(5)
    fresh = await second.acquire("polling", timeout=5)

    assert stale and fresh and stale != fresh
    assert store.get(lock_key("polling")) == {"token": fresh, "acquired_at": clock.now}


@pytest.mark.asyncio()
async def test_stale_memory_entry_is_discarded(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)

    first = await lock.acquire("polling", timeout=5)
    assert await lock.acquire("polling", timeout=5) is None
    clock.advance(6)
    second = await lock.acquire("polling", timeout=5)

    assert first and second and first != second


@pytest.mark.asyncio()
async def test_release_requires_matching_token(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)
    token = await lock.acquire("polling", timeout=5)
    before = store.get(lock_key("polling"))

    assert await lock.release("polling", "someone-else") is False
    assert store.get(lock_key("polling")) == before

    assert await lock.release("polling", token) is True
    assert store.get(lock_key("polling")) is None


@pytest.mark.asyncio()
async def test_former_owner_cannot_release_reclaimed_lock(store: Store, clock: FakeClock) -> None:
    first = DistributedLock(store, clock=clock)
    second = DistributedLock(store, clock=clock)

    stale = await first.acquire("polling", timeout=5)
    clock.advance(10)
    fresh = await second.acquire("polling", timeout=5)

    assert await first.release("polling", stale) is False
    assert store.get(lock_key("polling"))["token"] == fresh


@pytest.mark.asyncio()
async def test_store_error_rolls_back_memory_entry(store: Store, clock: FakeClock) -> None:
    flaky = _FlakyStore(store)
    lock = DistributedLock(flaky, clock=clock)  # type: ignore[arg-type]

    flaky.fail_next_get = True
    with pytest.raises(RuntimeError, match="store unavailable"):
        await lock.acquire("polling", timeout=5)

    # Without the rollback the cached provisional token would block this call.
    assert await lock.acquire("polling", timeout=5)


@pytest.mark.asyncio()
async def test_try_acquire_with_retries_gives_up(store: Store, clock: FakeClock) -> None:
    holder = DistributedLock(store, clock=clock)
    contender = DistributedLock(store, clock=clock)
    attempts: list[str] = []
    original = contender.acquire

    async def _counting_acquire(resource: str, timeout: float = 5.0) -> str | None:
        attempts.append(resource)
        return await original(resource, timeout)

    contender.acquire = _counting_acquire  # type: ignore[method-assign]
    await holder.acquire("polling", timeout=5)

    token = await contender.try_acquire_with_retries("polling", max_retries=3, retry_delay=0)

    assert token is None
    assert attempts == ["polling", "polling", "polling"]


@pytest.mark.asyncio()
async def test_try_acquire_with_retries_succeeds_after_release(store: Store, clock: FakeClock) -> None:
    holder = DistributedLock(store, clock=clock)
    contender = DistributedLock(store, clock=clock)
    held = await holder.acquire("polling", timeout=5)
    original = contender.acquire
    calls = 0

    async def _release_after_first(resource: str, timeout: float = 5.0) -> str | None:
        nonlocal calls
        calls += 1
        result = await original(resource, timeout)
        if calls == 1:
            await holder.release("polling", held)
        return result

    contender.acquire = _release_after_first  # type: ignore[method-assign]

    token = await contender.try_acquire_with_retries("polling", policy=RetryPolicy(max_retries=3, delay=0))

    assert token is not None
    assert calls == 2


def test_retry_policy_validates() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=0)
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=1, delay=-1)


@pytest.mark.asyncio()
async def test_with_lock_releases_when_function_raises(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)

    async def _boom() -> None:
        assert store.get(lock_key("jobs")) is not None
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await lock.with_lock("jobs", _boom)

    assert store.get(lock_key("jobs")) is None
    assert await lock.acquire("jobs")


@pytest.mark.asyncio()
async def test_with_lock_keeps_function_error_when_release_fails(store: Store, clock: FakeClock) -> None:
    flaky = _FlakyStore(store)
    lock = DistributedLock(flaky, clock=clock)  # type: ignore[arg-type]

    async def _boom() -> None:
        flaky.fail_next_remove = True
        raise ValueError("page exploded")

    with pytest.raises(ValueError, match="page exploded"):
        await lock.with_lock("jobs", _boom)


@pytest.mark.asyncio()
async def test_with_lock_surfaces_release_error_after_success(store: Store, clock: FakeClock) -> None:
    flaky = _FlakyStore(store)
    lock = DistributedLock(flaky, clock=clock)  # type: ignore[arg-type]

    async def _ok() -> int:
        flaky.fail_next_remove = True
        return 1

    with pytest.raises(RuntimeError, match="store unavailable"):
        await lock.with_lock("jobs", _ok)


@pytest.mark.asyncio()
async def test_with_lock_returns_result_and_fails_fast_when_held(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)
    other = DistributedLock(store, clock=clock)

    async def _value() -> int:
        return 42

    assert await lock.with_lock("jobs", _value) == 42

    await other.acquire("jobs")
    with pytest.raises(LockContendedError):
        await lock.with_lock("jobs", _value)


@pytest.mark.asyncio()
async def test_update_state_round_trip(lock: DistributedLock) -> None:
    async def _increment(current: Any) -> dict[str, int]:
        count = (current or {}).get("count", 0)
        return {"count": count + 1}

    await lock.update_state("counter", _increment)
    await lock.update_state("counter", _increment)

    assert await lock.get_state("counter") == {"count": 2}
    await lock.clear_state("counter")
    assert await lock.get_state("counter") is None


@pytest.mark.asyncio()
async def test_lock_status_and_clear_all(store: Store, clock: FakeClock) -> None:
    lock = DistributedLock(store, clock=clock)
    polling = await lock.acquire("polling")
    await lock.acquire("jobs")
    await lock.set_state("processing", {"url": "https://example.com"})

    status = await lock.lock_status()
    assert set(status) == {"polling", "jobs"}
    assert status["polling"]["store"]["token"] == polling
    assert status["polling"]["memory"]["token"] == polling

    assert await lock.is_lock_active("polling")
    assert await lock.clear_all_locks() == 2
    assert await lock.lock_status() == {}
    assert not await lock.is_lock_active("polling")
    assert await lock.get_state("processing") == {"url": "https://example.com"}
