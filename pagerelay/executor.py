"""Single-job pipeline: render, wait for quiet, extract, capture, submit."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Protocol

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerelay.control import ControlClient
from pagerelay.errors import JobFailedError, JobTimeoutError, PageLoadTimeout
from pagerelay.extract import ExtractedContent, extract_content
from pagerelay.job_log import append_job_event
from pagerelay.lock import DistributedLock
from pagerelay.network_idle import IdleOptions, NetworkIdleDetector
from pagerelay.schemas import JobPayload, SubmitContent, SubmitPayload
from pagerelay.screenshot import ScreenshotStitcher, encode_data_url
from pagerelay.settings import Settings
from pagerelay.state import PROCESSING_RESOURCE, AgentState

LOGGER = logging.getLogger(__name__)

Extractor = Callable[[Any], Awaitable[ExtractedContent]]


class JobState(str, Enum):
    """Lifecycle of one job; ``DONE`` and ``FAILED`` are terminal."""

    CREATED = "CREATED"
    RENDERING = "RENDERING"
    AWAITING_IDLE = "AWAITING_IDLE"
    EXTRACTING = "EXTRACTING"
    CAPTURING = "CAPTURING"
    SUBMITTING = "SUBMITTING"
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED})


@dataclass(slots=True)
class Job:
    url: str
    allow_screenshot: bool
    process_id: int
    start_time: float

    @classmethod
    def from_payload(cls, payload: JobPayload, *, now: float | None = None) -> Job:
        started = time.time() if now is None else now
        return cls(
            url=payload.url,
            allow_screenshot=payload.capture_screenshot,
            process_id=int(started * 1000),
            start_time=started,
        )

    @property
    def job_id(self) -> str:
        return str(self.process_id)

    def processing_state(self) -> dict[str, Any]:
        return {"url": self.url, "process_id": self.process_id, "start_time": self.start_time}


class RenderTargetFactory(Protocol):
    """Anything that opens an isolated page; a Playwright ``BrowserContext`` fits."""

    async def new_page(self) -> Any: ...


@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    job_timeout: float = 480.0
    page_load_timeout: float = 30.0
    post_extract_delay: float = 2.0
    idle: IdleOptions = field(
        default_factory=lambda: IdleOptions(timeout=30.0, quiet_period=2.0, check_interval=0.1, max_active_requests=2)
    )
    job_log_path: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ExecutorConfig:
        return cls(
            job_timeout=settings.executor.job_timeout_seconds,
            page_load_timeout=settings.executor.page_load_timeout_seconds,
            post_extract_delay=settings.executor.post_extract_delay_seconds,
            idle=IdleOptions(
                timeout=settings.idle.timeout_seconds,
                quiet_period=settings.idle.quiet_period_seconds,
                check_interval=settings.idle.check_interval_seconds,
                max_active_requests=settings.idle.max_active_requests,
            ),
            job_log_path=settings.storage.job_log_path,
        )


@dataclass(slots=True)
class JobRun:
    """Bookkeeping for one :meth:`JobExecutor.execute` call."""

    job: Job
    state: JobState = JobState.CREATED
    history: List[JobState] = field(default_factory=lambda: [JobState.CREATED])
    page: Any = None
    error: str | None = None
    screenshot_bytes: int | None = None
    cleaned_up: bool = False


class JobExecutor:
    """Runs one job at a time under a hard deadline and always cleans up."""

    def __init__(
        self,
        *,
        targets: RenderTargetFactory,
        detector: NetworkIdleDetector,
        stitcher: ScreenshotStitcher,
        control: ControlClient,
        lock: DistributedLock,
        agent_state: AgentState,
        config: ExecutorConfig | None = None,
        extractor: Extractor = extract_content,
    ) -> None:
        self.targets = targets
        self.detector = detector
        self.stitcher = stitcher
        self.control = control
        self.lock = lock
        self.agent_state = agent_state
        self.config = config or ExecutorConfig()
        self._extractor = extractor
        self.last_run: JobRun | None = None

    async def execute(self, job: Job) -> SubmitPayload:
        """Process ``job``; raise :class:`JobFailedError` after reporting on failure."""

        run = JobRun(job=job)
        self.last_run = run
        LOGGER.info("Starting URL processing %s url=%s screenshot=%s", job.process_id, job.url, job.allow_screenshot)

        try:
            await self.lock.set_state(PROCESSING_RESOURCE, job.processing_state())
            self.agent_state.is_processing = True
            await self.agent_state.save(self.lock)

            try:
                payload = await asyncio.wait_for(self._pipeline(run), timeout=self.config.job_timeout)
            except asyncio.TimeoutError as exc:
                raise JobTimeoutError(self.config.job_timeout) from exc
        except Exception as exc:
            failed_in = run.state
            self._transition(run, JobState.FAILED)
            run.error = str(exc)
            LOGGER.error(
                "Process %s failed in %s url=%s error=%s",
                job.process_id,
                failed_in.value,
                job.url,
                exc,
            )
            reported = await self.control.report_error(job.url, str(exc))
            raise JobFailedError(job.url, exc, reported=reported) from exc
        finally:
            await self._cleanup(run)

        LOGGER.info("Process %s completed successfully", job.process_id)
        return payload

    async def _pipeline(self, run: JobRun) -> SubmitPayload:
        job = run.job

        self._transition(run, JobState.RENDERING)
        page = await self.targets.new_page()
        run.page = page
        self.detector.set_target(job.job_id, job.url)
        self.detector.attach(page, job.job_id)
        await page.goto(job.url, wait_until="commit", timeout=self.config.page_load_timeout * 1000)
        load_result = await self._await_load(page, job)

        self._transition(run, JobState.AWAITING_IDLE)
        LOGGER.info("Waiting for network idle after %s process=%s", load_result, job.process_id)
        await self.detector.wait_for_idle(job.job_id, self.config.idle)

        self._transition(run, JobState.EXTRACTING)
        extracted = await self._extractor(page)
        if self.config.post_extract_delay > 0:
            await asyncio.sleep(self.config.post_extract_delay)

        screenshot: str | None = None
        if job.allow_screenshot:
            self._transition(run, JobState.CAPTURING)
            png = await self.stitcher.capture_full_page(page)
            run.screenshot_bytes = len(png)
            screenshot = encode_data_url(png)
        else:
            LOGGER.info("Process %s: skipping screenshot capture (text-only mode)", job.process_id)

        payload = SubmitPayload(
            url=job.url,
            transformed_url=extracted.url,
            content=SubmitContent(
                raw_html=extracted.raw_html,
                raw_purified_content=extracted.raw_purified_content,
                readable_content=extracted.readable_content,
                title=extracted.title,
                screenshot=screenshot,
            ),
        )
        LOGGER.info(
            "Process %s content preview transformed=%s title_len=%d content_len=%d screenshot_len=%s",
            job.process_id,
            extracted.url,
            len(extracted.title),
            len(extracted.readable_content),
            len(screenshot) if screenshot else None,
        )

        self._transition(run, JobState.SUBMITTING)
        await self.control.submit(payload)
        self._transition(run, JobState.DONE)
        return payload

    async def _await_load(self, page: Any, job: Job) -> str:
        """Wait for the load event; a timeout degrades to partial content."""

        try:
            await page.wait_for_load_state("load", timeout=self.config.page_load_timeout * 1000)
        except PlaywrightTimeoutError:
            degraded = PageLoadTimeout(f"Page load exceeded {self.config.page_load_timeout:g}s")
            LOGGER.warning("Process %s: %s, proceeding with partial content", job.process_id, degraded)
            return "timeout"
        return "complete"

    async def _cleanup(self, run: JobRun) -> None:
        if run.cleaned_up:
            return
        run.cleaned_up = True
        job = run.job

        if run.page is not None:
            try:
                await run.page.close()
                LOGGER.debug("Process %s: closed page", job.process_id)
            except Exception as exc:  # noqa: BLE001 - the job outcome is already decided
                LOGGER.warning("Process %s: failed to close page: %s", job.process_id, exc)
            run.page = None
        self.detector.cleanup(job.job_id)

        try:
            await self.lock.clear_state(PROCESSING_RESOURCE)
        except Exception:  # noqa: BLE001 - stale state is reclaimed by the backup trigger
            LOGGER.exception("Process %s: failed to clear processing state", job.process_id)
        self.agent_state.is_processing = False
        try:
            await self.agent_state.save(self.lock)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Process %s: failed to persist agent state", job.process_id)
        LOGGER.debug("Process %s: reset state to idle", job.process_id)

        if self.config.job_log_path is not None:
            try:
                append_job_event(
                    self.config.job_log_path,
                    process_id=job.process_id,
                    url=job.url,
                    state=run.state.value,
                    error=run.error,
                    duration_ms=int((time.time() - job.start_time) * 1000),
                    screenshot_bytes=run.screenshot_bytes,
                )
            except OSError:
                LOGGER.exception("Process %s: failed to append job log %s", job.process_id, self.config.job_log_path)

    @staticmethod
    def _transition(run: JobRun, state: JobState) -> None:
        if run.state in TERMINAL_STATES:
            return
        LOGGER.debug("Process %s: %s -> %s", run.job.process_id, run.state.value, state.value)
        run.state = state
        run.history.append(state)
