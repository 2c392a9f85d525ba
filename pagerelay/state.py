"""Scheduler-owned agent status and its persisted snapshot."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque

from pagerelay.lock import DistributedLock

LOGGER = logging.getLogger(__name__)

AGENT_STATE_RESOURCE = "agent"
PROCESSING_RESOURCE = "processing"
SUSPENSION_GAP_SECONDS = 120.0


@dataclass(slots=True)
class AgentState:
    """Mutable status shared by the scheduler and the executor of one agent.

    Created once at startup, mutated only by those two, and persisted so a
    restarted process can tell how long it was away.
    """

    is_polling: bool = False
    is_processing: bool = False
    current_status: str = "Idle"
    last_poll_time: float | None = None

    def set_status(self, status: str) -> None:
        LOGGER.info("Status changing from %r to %r", self.current_status, status)
        self.current_status = status

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)

    async def save(self, lock: DistributedLock) -> None:
        await lock.set_state(
            AGENT_STATE_RESOURCE,
            {
                "last_poll_time": self.last_poll_time,
                "is_processing": self.is_processing,
                "current_status": self.current_status,
            },
        )

    async def restore(self, lock: DistributedLock, *, now: float | None = None) -> float | None:
        """Load the persisted snapshot; return seconds since the last poll, if known."""

        stored = await lock.get_state(AGENT_STATE_RESOURCE)
        if not isinstance(stored, dict):
            return None
        gap = None
        last_poll = stored.get("last_poll_time")
        if isinstance(last_poll, (int, float)):
            gap = (now if now is not None else time.time()) - last_poll
            if gap > SUSPENSION_GAP_SECONDS:
                LOGGER.warning("Detected suspension: %.0fs since last poll", gap)
            self.last_poll_time = float(last_poll)
        if isinstance(stored.get("is_processing"), bool):
            self.is_processing = stored["is_processing"]
        if stored.get("current_status"):
            self.current_status = str(stored["current_status"])
        return gap


class LogBuffer(logging.Handler):
    """Keeps the most recent formatted records for the ``get_logs`` command."""

    def __init__(self, capacity: int = 500) -> None:
        super().__init__()
        self._records: Deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:  # noqa: BLE001 - logging must never raise
            self.handleError(record)
            return
        self._records.append(
            {
                "timestamp": record.created,
                "level": record.levelname,
                "logger": record.name,
                "message": message,
            }
        )

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        records = list(self._records)
        if limit is not None:
            return records[-limit:]
        return records
