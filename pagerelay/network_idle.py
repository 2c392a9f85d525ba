"""Per-job in-flight request tracking and quiet-network detection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Hashable
from urllib.parse import urlparse

from pagerelay.errors import NetworkIdleTimeout

LOGGER = logging.getLogger(__name__)

_PROGRESS_LOG_EVERY = 5.0


class RequestPhase(str, Enum):
    START = "start"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class RequestRecord:
    job_id: str
    request_id: Hashable
    url: str
    origin: str


@dataclass(frozen=True, slots=True)
class IdleOptions:
    """Thresholds for :meth:`NetworkIdleDetector.wait_for_idle` (seconds)."""

    timeout: float = 45.0
    quiet_period: float = 0.5
    check_interval: float = 0.1
    max_active_requests: int = 2


def origin_of(url: str) -> str | None:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


class NetworkIdleDetector:
    """Counts same-origin requests per job and waits for a quiet window.

    Cross-origin traffic (ads, trackers, CDNs) is never tracked so it cannot
    hold a page hostage. The threshold is not zero because long-lived
    connections such as polling or websockets never finish.
    """

    def __init__(self) -> None:
        self._active: Dict[str, Dict[Hashable, RequestRecord]] = {}
        self._targets: Dict[str, str] = {}

    def set_target(self, job_id: str, url: str) -> None:
        origin = origin_of(url)
        if origin is None:
            msg = f"Cannot derive an origin from target URL {url!r}"
            raise ValueError(msg)
        self._targets[job_id] = origin
        LOGGER.debug("Set target origin for job %s: %s", job_id, origin)

    def on_request_event(self, job_id: str, request_id: Hashable, url: str, phase: RequestPhase | str) -> None:
        target = self._targets.get(job_id)
        if target is None:
            return
        origin = origin_of(url)
        if origin != target:
            return

        phase = RequestPhase(phase)
        requests = self._active.setdefault(job_id, {})
        if phase is RequestPhase.START:
            requests[request_id] = RequestRecord(job_id=job_id, request_id=request_id, url=url, origin=origin)
        else:
            requests.pop(request_id, None)
        LOGGER.debug(
            "Request %s job=%s id=%s url=%s active=%d",
            phase.value,
            job_id,
            request_id,
            url,
            len(requests),
        )

    def attach(self, page: Any, job_id: str) -> None:
        """Feed Playwright page request events for ``job_id`` into the tracker.

        The ``Request`` object itself is the key: Playwright hands the same
        object to the start and finish events, and keeping it in the active map
        pins it for as long as the request is in flight.
        """

        def _handler(phase: RequestPhase):
            def _on_event(request: Any) -> None:
                self.on_request_event(job_id, request, request.url, phase)

            return _on_event

        page.on("request", _handler(RequestPhase.START))
        page.on("requestfinished", _handler(RequestPhase.COMPLETE))
        page.on("requestfailed", _handler(RequestPhase.ERROR))

    def active_count(self, job_id: str) -> int:
        return len(self._active.get(job_id, {}))

    def active_urls(self, job_id: str) -> list[str]:
        return [record.url for record in self._active.get(job_id, {}).values()]

    def is_tracking(self, job_id: str) -> bool:
        return job_id in self._targets

    def cleanup(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._targets.pop(job_id, None)
        LOGGER.debug("Cleaned up request tracking for job %s", job_id)

    async def wait_for_idle(self, job_id: str, options: IdleOptions | None = None) -> None:
        """Return once the job has been quiet for ``quiet_period``; raise on ``timeout``."""

        options = options or IdleOptions()
        if job_id not in self._targets:
            msg = f"No target URL set for job {job_id}"
            raise ValueError(msg)

        loop = asyncio.get_running_loop()
        started = loop.time()
        quiet_since: float | None = None
        last_count = -1
        next_progress_log = started + _PROGRESS_LOG_EVERY
        LOGGER.debug(
            "Waiting for network idle job=%s timeout=%.1fs quiet=%.2fs max_active=%d",
            job_id,
            options.timeout,
            options.quiet_period,
            options.max_active_requests,
        )

        try:
            while True:
                await asyncio.sleep(options.check_interval)
                now = loop.time()
                elapsed = now - started
                count = self.active_count(job_id)

                if count != last_count:
                    LOGGER.debug("Active requests changed job=%s active=%d elapsed=%.2fs", job_id, count, elapsed)
                    last_count = count
                if now >= next_progress_log:
                    LOGGER.info(
                        "Still waiting for network idle job=%s active=%d elapsed=%.1fs",
                        job_id,
                        count,
                        elapsed,
                    )
                    next_progress_log = now + _PROGRESS_LOG_EVERY

                if count <= options.max_active_requests:
                    if quiet_since is None:
                        quiet_since = now
                    elif now - quiet_since >= options.quiet_period:
                        LOGGER.debug("Network idle achieved job=%s active=%d total=%.2fs", job_id, count, elapsed)
                        return
                else:
                    quiet_since = None

                if elapsed >= options.timeout:
                    active_urls = self.active_urls(job_id)
                    LOGGER.error(
                        "Network idle timeout job=%s active=%d waited=%.1fs urls=%s",
                        job_id,
                        count,
                        elapsed,
                        active_urls,
                    )
                    raise NetworkIdleTimeout(job_id, elapsed=elapsed, active_urls=active_urls)
        finally:
            self.cleanup(job_id)
