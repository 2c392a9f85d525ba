"""Named mutual exclusion across agent instances sharing one durable store.

Locks live in two tiers: an in-process dict that answers the common
"already held here" case without I/O, and ``lock:<resource>`` records in the
shared :class:`~pagerelay.store.Store`. Ownership is proven by the token only.
Staleness is wall-clock age against the caller's timeout; there is no renewal,
so work that can outlive the timeout must re-check rather than hold.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from pagerelay.errors import LockContendedError
from pagerelay.store import LOCK_PREFIX, STATE_PREFIX, Store

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-delay retry envelope shared by lock acquisition and polling."""

    max_retries: int = 3
    delay: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            msg = f"max_retries must be >= 1, got {self.max_retries}"
            raise ValueError(msg)
        if self.delay < 0:
            msg = f"delay must be >= 0, got {self.delay}"
            raise ValueError(msg)


@dataclass(slots=True)
class LockRecord:
    resource: str
    token: str
    acquired_at: float

    def age(self, now: float) -> float:
        return now - self.acquired_at

    def to_store(self) -> dict[str, Any]:
        return {"token": self.token, "acquired_at": self.acquired_at}

    @classmethod
    def from_store(cls, resource: str, payload: Any) -> LockRecord | None:
        if not isinstance(payload, dict):
            return None
        token = payload.get("token")
        acquired_at = payload.get("acquired_at")
        if not isinstance(token, str) or not isinstance(acquired_at, (int, float)):
            return None
        return cls(resource=resource, token=token, acquired_at=float(acquired_at))


def lock_key(resource: str) -> str:
    return f"{LOCK_PREFIX}{resource}"


def state_key(resource: str) -> str:
    return f"{STATE_PREFIX}{resource}"


class DistributedLock:
    """Two-tier lock plus the small state API that rides on the same store."""

    def __init__(self, store: Store, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock
        self._memory: dict[str, LockRecord] = {}

    def _new_token(self) -> str:
        return f"{int(self._clock() * 1000)}-{random.random()}"

    async def acquire(self, resource: str, timeout: float = DEFAULT_LOCK_TIMEOUT) -> str | None:
        """Return a fresh token, or ``None`` when a non-stale holder exists."""

        token = self._new_token()
        started = self._clock()
        LOGGER.debug("acquire: attempting resource=%s token=%s", resource, token)

        cached = self._memory.get(resource)
        if cached is not None:
            age = cached.age(self._clock())
            if age < timeout:
                LOGGER.debug(
                    "acquire: blocked by memory lock resource=%s holder=%s age=%.3fs",
                    resource,
                    cached.token,
                    age,
                )
                return None
            LOGGER.warning(
                "acquire: clearing stale memory lock resource=%s stale=%s age=%.3fs",
                resource,
                cached.token,
                age,
            )
            self._memory.pop(resource, None)

        self._memory[resource] = LockRecord(resource=resource, token=token, acquired_at=self._clock())

        try:
            # NOTE: read-then-write is not atomic across processes; two agents
            # reclaiming the same stale record at the same instant can both win.
            payload = await asyncio.to_thread(self.store.get, lock_key(resource))
            existing = LockRecord.from_store(resource, payload)
            if existing is not None:
                age = existing.age(self._clock())
                if age < timeout:
                    LOGGER.debug(
                        "acquire: blocked by stored lock resource=%s holder=%s age=%.3fs",
                        resource,
                        existing.token,
                        age,
                    )
                    self._rollback(resource, token)
                    return None
                LOGGER.warning(
                    "acquire: reclaiming stale stored lock resource=%s stale=%s age=%.3fs",
                    resource,
                    existing.token,
                    age,
                )

            record = LockRecord(resource=resource, token=token, acquired_at=self._clock())
            await asyncio.to_thread(self.store.set, lock_key(resource), record.to_store())
        except BaseException as exc:
            self._rollback(resource, token)
            LOGGER.error("acquire: error resource=%s token=%s error=%s", resource, token, exc)
            raise

        LOGGER.info(
            "acquire: acquired resource=%s token=%s duration_ms=%d",
            resource,
            token,
            int((self._clock() - started) * 1000),
        )
        return token

    def _rollback(self, resource: str, token: str) -> None:
        cached = self._memory.get(resource)
        if cached is not None and cached.token == token:
            self._memory.pop(resource, None)

    async def release(self, resource: str, token: str) -> bool:
        """Drop the lock only when ``token`` still owns it."""

        LOGGER.debug("release: attempting resource=%s token=%s", resource, token)
        self._rollback(resource, token)

        try:
            payload = await asyncio.to_thread(self.store.get, lock_key(resource))
            existing = LockRecord.from_store(resource, payload)
            if existing is None or existing.token != token:
                LOGGER.warning(
                    "release: not owner resource=%s token=%s actual=%s",
                    resource,
                    token,
                    existing.token if existing else None,
                )
                return False
            await asyncio.to_thread(self.store.remove, lock_key(resource))
        except Exception as exc:
            LOGGER.error("release: error resource=%s token=%s error=%s", resource, token, exc)
            raise

        LOGGER.info("release: released resource=%s token=%s", resource, token)
        return True

    async def try_acquire_with_retries(
        self,
        resource: str,
        max_retries: int = 3,
        retry_delay: float = 0.1,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        policy: RetryPolicy | None = None,
    ) -> str | None:
        """Call :meth:`acquire` up to ``max_retries`` times with a fixed delay."""

        policy = policy or RetryPolicy(max_retries=max_retries, delay=retry_delay)
        for attempt in range(1, policy.max_retries + 1):
            token = await self.acquire(resource, timeout)
            if token:
                return token
            if attempt < policy.max_retries:
                LOGGER.debug(
                    "try_acquire: retrying resource=%s attempt=%d/%d",
                    resource,
                    attempt,
                    policy.max_retries,
                )
                await asyncio.sleep(policy.delay)

        LOGGER.warning(
            "try_acquire: failed after retries resource=%s max_retries=%d",
            resource,
            policy.max_retries,
        )
        return None

    async def with_lock(
        self,
        resource: str,
        fn: Callable[[], Awaitable[T]],
        timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> T:
        """Run ``fn`` while holding ``resource``; raise if the lock is held elsewhere."""

        async with self.locked(resource, timeout):
            return await fn()

    @asynccontextmanager
    async def locked(self, resource: str, timeout: float = DEFAULT_LOCK_TIMEOUT) -> AsyncIterator[str]:
        token = await self.acquire(resource, timeout)
        if not token:
            raise LockContendedError(resource)
        LOGGER.debug("with_lock: executing resource=%s token=%s", resource, token)
        try:
            yield token
        except BaseException:
            # The caller's error wins over a failed release.
            try:
                await self.release(resource, token)
            except Exception:  # noqa: BLE001
                LOGGER.exception("with_lock: release failed while unwinding resource=%s", resource)
            raise
        await self.release(resource, token)

    async def get_state(self, resource: str) -> Any | None:
        return await asyncio.to_thread(self.store.get, state_key(resource))

    async def set_state(self, resource: str, value: Any) -> None:
        await asyncio.to_thread(self.store.set, state_key(resource), value)

    async def clear_state(self, resource: str) -> None:
        await asyncio.to_thread(self.store.remove, state_key(resource))

    async def update_state(
        self,
        resource: str,
        update_fn: Callable[[Any | None], Awaitable[Any]],
        timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> Any:
        """Read-modify-write ``state:<resource>`` under the lock of the same name.

        ``update_fn`` returning ``None`` leaves the stored value untouched.
        """

        async def _apply() -> Any:
            current = await self.get_state(resource)
            updated = await update_fn(current)
            if updated is not None:
                await self.set_state(resource, updated)
            return updated

        return await self.with_lock(resource, _apply, timeout)

    async def is_lock_active(self, resource: str, timeout: float = 30.0) -> bool:
        now = self._clock()
        cached = self._memory.get(resource)
        if cached is not None and cached.age(now) < timeout:
            return True
        payload = await asyncio.to_thread(self.store.get, lock_key(resource))
        existing = LockRecord.from_store(resource, payload)
        if existing is None:
            return False
        return existing.age(now) < timeout

    async def lock_status(self) -> dict[str, dict[str, Any]]:
        stored = await asyncio.to_thread(self.store.items, LOCK_PREFIX)
        status: dict[str, dict[str, Any]] = {}
        for key, payload in stored.items():
            resource = key[len(LOCK_PREFIX):]
            cached = self._memory.get(resource)
            status[resource] = {
                "store": payload,
                "memory": cached.to_store() if cached else None,
            }
        return status

    async def clear_all_locks(self) -> int:
        LOGGER.warning("clear_all_locks: clearing all locks")
        self._memory.clear()
        stored = await asyncio.to_thread(self.store.items, LOCK_PREFIX)
        removed = await asyncio.to_thread(self.store.remove, *stored.keys())
        if removed:
            LOGGER.warning("clear_all_locks: removed %d stored locks", removed)
        return removed
