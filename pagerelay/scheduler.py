"""Continuous poll → acquire → dispatch loop plus its backup trigger."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError

from pagerelay.control import ControlClient
from pagerelay.errors import JobFailedError, TransportError, TransportTimeout
from pagerelay.executor import Job, JobExecutor
from pagerelay.lock import DistributedLock, RetryPolicy
from pagerelay.schemas import GetLogs, GetStatus, JobPayload, StartPolling, StopPolling, parse_command
from pagerelay.settings import AgentSettings, Settings
from pagerelay.state import PROCESSING_RESOURCE, AgentState, LogBuffer

LOGGER = logging.getLogger(__name__)

POLLING_RESOURCE = "polling"
MIN_BACKUP_INTERVAL = 30.0


class PollOutcome(str, Enum):
    CONTINUE = "continue"
    SKIPPED = "skipped"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Loop pacing and the staleness horizon of the polling lock.

    The polling lock is held for a whole job, and locks are never renewed, so
    its timeout must exceed the longest legitimate poll + job.
    """

    lock_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=3, delay=1.0))
    lock_timeout: float = 540.0
    loop_pause: float = 0.1
    stale_processing_after: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerConfig:
        return cls(
            lock_policy=RetryPolicy(
                max_retries=settings.lock.poll_lock_retries,
                delay=settings.lock.poll_lock_retry_delay_seconds,
            ),
            lock_timeout=(
                settings.executor.job_timeout_seconds
                + settings.executor.poll_request_timeout_seconds
                + settings.lock.timeout_seconds
            ),
            stale_processing_after=settings.executor.stale_processing_seconds,
        )


ControlFactory = Callable[[str], ControlClient]


class JobScheduler:
    """Owns the agent's run flag; one loop instance polls at a time."""

    def __init__(
        self,
        *,
        lock: DistributedLock,
        executor: JobExecutor,
        control: ControlClient,
        agent_state: AgentState,
        settings: AgentSettings,
        config: SchedulerConfig | None = None,
        control_factory: ControlFactory | None = None,
        log_buffer: LogBuffer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.lock = lock
        self.executor = executor
        self.control = control
        self.agent_state = agent_state
        self.settings = settings
        self.config = config or SchedulerConfig()
        self._control_factory = control_factory
        self._log_buffer = log_buffer
        self._clock = clock
        self._loop_task: asyncio.Task[None] | None = None
        self._backup_task: asyncio.Task[None] | None = None

    @property
    def backup_interval(self) -> float:
        return max(MIN_BACKUP_INTERVAL, float(self.settings.poll_interval_seconds))

    async def initialize(self) -> None:
        """Restore the persisted snapshot from a previous process."""

        await self.agent_state.restore(self.lock, now=self._clock())
        self.agent_state.is_polling = False

    async def poll_once(self) -> PollOutcome:
        token = await self.lock.try_acquire_with_retries(
            POLLING_RESOURCE,
            timeout=self.config.lock_timeout,
            policy=self.config.lock_policy,
        )
        if not token:
            LOGGER.warning("Could not acquire polling lock, skipping: another poll is already in progress")
            return PollOutcome.SKIPPED

        poll_id = int(self._clock() * 1000)
        self.agent_state.last_poll_time = self._clock()
        LOGGER.debug("Starting poll %s url=%s", poll_id, self.control.control_url)
        try:
            try:
                payload = await self.control.fetch_job()
            except TransportTimeout:
                LOGGER.debug("Poll %s: request timeout - normal during idle periods", poll_id)
                return PollOutcome.CONTINUE
            except TransportError as exc:
                LOGGER.error("Poll %s failed: %s", poll_id, exc)
                return PollOutcome.STOP

            if payload is None or payload.url is None:
                LOGGER.debug("Poll %s: no URLs in queue", poll_id)
                return PollOutcome.CONTINUE

            LOGGER.info("Poll %s: received URL %s", poll_id, payload.url)
            await self._dispatch(payload)
            return PollOutcome.CONTINUE
        finally:
            await self.lock.release(POLLING_RESOURCE, token)
            LOGGER.debug("Poll %s: released lock", poll_id)

    async def _dispatch(self, payload: JobPayload) -> None:
        job = Job.from_payload(payload, now=self._clock())
        self.agent_state.set_status(f"Processing URL: {job.url}")
        try:
            await self.executor.execute(job)
        except JobFailedError as exc:
            LOGGER.error("Processing failed for %s: %s (timeout=%s)", job.url, exc.cause, exc.is_timeout)
            if not exc.reported:
                await self.control.report_error(job.url, str(exc.cause))
        except Exception as exc:  # noqa: BLE001 - job failures never stop the loop
            LOGGER.exception("Unexpected failure processing %s", job.url)
            await self.control.report_error(job.url, str(exc))
        finally:
            self.agent_state.set_status("Polling")

    async def run_continuous(self) -> None:
        if self.agent_state.is_polling:
            LOGGER.debug("Continuous polling already active")
            return

        self.agent_state.is_polling = True
        await self._poll_loop()

    async def _poll_loop(self) -> None:
        LOGGER.info("Starting continuous polling control_url=%s", self.control.control_url)
        try:
            while self.agent_state.is_polling:
                try:
                    outcome = await self.poll_once()
                except Exception:  # noqa: BLE001 - the backup trigger restarts the loop
                    LOGGER.exception("Poll iteration crashed")
                    outcome = PollOutcome.STOP

                if outcome is PollOutcome.STOP:
                    LOGGER.warning("Continuous polling stopped due to error")
                    break
                if self.agent_state.is_polling:
                    await asyncio.sleep(self.config.loop_pause)
        finally:
            self.agent_state.is_polling = False
            LOGGER.info("Continuous polling ended")

    def _spawn_loop(self) -> asyncio.Task[None]:
        if self._loop_task is None or self._loop_task.done():
            self.agent_state.is_polling = True
            self._loop_task = asyncio.create_task(self._poll_loop(), name="pagerelay-poll-loop")
        elif not self.agent_state.is_polling:
            # A loop told to stop mid-job is still alive; keep it running.
            LOGGER.info("Resuming polling loop that was stopping")
            self.agent_state.is_polling = True
        return self._loop_task

    async def start(self, settings: AgentSettings | None = None) -> None:
        """Apply ``settings`` (if given), arm the backup trigger, and start polling."""

        if settings is not None:
            self._apply_settings(settings)
        if not self.settings.configured:
            LOGGER.warning("Invalid polling settings provided: %s", self.settings)
            return

        self.agent_state.set_status("Starting polling")
        self.agent_state.last_poll_time = self._clock()
        await self.agent_state.save(self.lock)

        if self._backup_task is None or self._backup_task.done():
            self._backup_task = asyncio.create_task(self.run_backup_trigger(), name="pagerelay-backup")
            LOGGER.info("Set up backup trigger every %.0f seconds", self.backup_interval)
        self._spawn_loop()

    def _apply_settings(self, settings: AgentSettings) -> None:
        if settings.control_url != self.settings.control_url and self._control_factory is not None:
            self.control = self._control_factory(settings.control_url)
            self.executor.control = self.control
        self.settings = settings
        LOGGER.info(
            "Applied settings control_url=%s poll_interval=%ss",
            settings.control_url,
            settings.poll_interval_seconds,
        )

    async def stop(self) -> None:
        LOGGER.info("Stopping continuous polling")
        self.agent_state.is_polling = False
        backup, self._backup_task = self._backup_task, None
        if backup is not None and not backup.done():
            backup.cancel()
        self.agent_state.set_status("Polling stopped")
        await self.agent_state.save(self.lock)

    async def shutdown(self) -> None:
        """Stop polling and wait for in-flight work to unwind."""

        tasks = [task for task in (self._loop_task, self._backup_task) if task is not None]
        await self.stop()
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def clear_stale_processing(self) -> bool:
        """Drop a processing marker left behind by a suspended or killed agent."""

        processing = await self.lock.get_state(PROCESSING_RESOURCE)
        if not isinstance(processing, dict):
            return False
        started = processing.get("start_time")
        if not isinstance(started, (int, float)):
            return False
        age = self._clock() - started
        if age <= self.config.stale_processing_after:
            return False

        LOGGER.warning(
            "Clearing stale processing state url=%s process_id=%s age=%.0fs",
            processing.get("url"),
            processing.get("process_id"),
            age,
        )
        await self.lock.clear_state(PROCESSING_RESOURCE)
        self.agent_state.is_processing = False
        await self.agent_state.save(self.lock)
        return True

    async def backup_tick(self) -> bool:
        """Restart a stopped loop; returns whether a restart happened."""

        if self.agent_state.is_polling or not self.settings.control_url:
            LOGGER.debug(
                "Skipping backup trigger has_control_url=%s is_polling=%s",
                bool(self.settings.control_url),
                self.agent_state.is_polling,
            )
            return False

        LOGGER.info("Backup trigger fired - restarting continuous polling")
        self.agent_state.last_poll_time = self._clock()
        await self.agent_state.save(self.lock)
        await self.clear_stale_processing()
        self._spawn_loop()
        return True

    async def run_backup_trigger(self) -> None:
        while True:
            await asyncio.sleep(self.backup_interval)
            try:
                await self.backup_tick()
            except Exception:  # noqa: BLE001 - keep the trigger alive
                LOGGER.exception("Backup trigger failed")

    async def handle_command(self, raw: Any) -> dict[str, Any]:
        """Validate and run one operator command.

        This is the control surface for hosts embedding the agent; ``run_agent``
        also starts polling through it.
        """

        try:
            command = parse_command(raw)
        except ValidationError as exc:
            msg = f"Invalid command: {exc.errors(include_url=False)}"
            raise ValueError(msg) from exc

        LOGGER.debug("Command received type=%s", command.type)
        if isinstance(command, StartPolling):
            await self.start(
                AgentSettings(
                    control_url=command.control_url,
                    poll_interval_seconds=command.poll_interval_seconds,
                )
            )
        elif isinstance(command, StopPolling):
            await self.stop()
        elif isinstance(command, GetLogs):
            entries = self._log_buffer.entries(command.limit) if self._log_buffer else []
            return {"logs": entries}
        elif isinstance(command, GetStatus):
            return {"status": self.agent_state.current_status, "state": self.agent_state.snapshot()}
        return {"status": self.agent_state.current_status}
