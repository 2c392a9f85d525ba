"""Chromium launch helpers and the agent wiring that sits on top of them."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from playwright.async_api import Browser, BrowserContext, async_playwright

from pagerelay.control import ControlClient
from pagerelay.executor import ExecutorConfig, JobExecutor
from pagerelay.lock import DistributedLock
from pagerelay.network_idle import NetworkIdleDetector
from pagerelay.scheduler import JobScheduler, SchedulerConfig
from pagerelay.screenshot import ScreenshotStitcher
from pagerelay.settings import AgentSettings, BrowserSettings, Settings
from pagerelay.state import AgentState, LogBuffer
from pagerelay.store import build_store

LOGGER = logging.getLogger(__name__)

_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


@dataclass(slots=True)
class Agent:
    """Everything one running agent instance owns."""

    scheduler: JobScheduler
    executor: JobExecutor
    lock: DistributedLock
    context: BrowserContext


async def _launch_browser(playwright, browser_settings: BrowserSettings) -> Browser:
    channel = _normalize_channel(browser_settings.playwright_channel)
    LOGGER.debug("launching chromium channel=%s headless=%s", channel, browser_settings.headless)
    options: dict[str, Any] = {"headless": browser_settings.headless}
    if channel != "chromium":
        options["channel"] = channel
    return await playwright.chromium.launch(**options)


async def _build_context(browser: Browser, browser_settings: BrowserSettings) -> BrowserContext:
    context = await browser.new_context(
        viewport={"width": browser_settings.viewport_width, "height": browser_settings.viewport_height},
        locale="en-US",
    )
    await context.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )
    return context


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)


@asynccontextmanager
async def open_agent(
    settings: Settings,
    *,
    agent_settings: AgentSettings | None = None,
    log_buffer: LogBuffer | None = None,
) -> AsyncIterator[Agent]:
    """Launch Chromium and wire lock, detector, stitcher, executor and scheduler."""

    agent_settings = agent_settings or settings.agent
    store = build_store(settings.storage.db_path)
    lock = DistributedLock(store)
    agent_state = AgentState()
    control = ControlClient(
        agent_settings.control_url,
        poll_timeout=settings.executor.poll_request_timeout_seconds,
    )

    async with async_playwright() as playwright:
        browser = await _launch_browser(playwright, settings.browser)
        context = await _build_context(browser, settings.browser)
        executor = JobExecutor(
            targets=context,
            detector=NetworkIdleDetector(),
            stitcher=ScreenshotStitcher(
                settle_ms=settings.browser.scroll_settle_ms,
                max_tiles=settings.browser.max_capture_tiles,
            ),
            control=control,
            lock=lock,
            agent_state=agent_state,
            config=ExecutorConfig.from_settings(settings),
        )
        scheduler = JobScheduler(
            lock=lock,
            executor=executor,
            control=control,
            agent_state=agent_state,
            settings=agent_settings,
            config=SchedulerConfig.from_settings(settings),
            control_factory=lambda url: ControlClient(
                url, poll_timeout=settings.executor.poll_request_timeout_seconds
            ),
            log_buffer=log_buffer,
        )
        try:
            await scheduler.initialize()
            yield Agent(scheduler=scheduler, executor=executor, lock=lock, context=context)
        finally:
            await scheduler.shutdown()
            await context.close()
            await browser.close()
            await scheduler.control.aclose()
            if control is not scheduler.control:
                await control.aclose()
            store.close()


async def run_agent(
    settings: Settings,
    *,
    agent_settings: AgentSettings | None = None,
    log_buffer: LogBuffer | None = None,
) -> None:
    """Poll until cancelled (Ctrl-C)."""

    async with open_agent(settings, agent_settings=agent_settings, log_buffer=log_buffer) as agent:
        scheduler = agent.scheduler
        if not scheduler.settings.configured:
            LOGGER.info("Waiting for configuration - no control URL set")
            return
        await scheduler.handle_command(
            {
                "type": "start_polling",
                "controlUrl": scheduler.settings.control_url,
                "pollInterval": scheduler.settings.poll_interval_seconds,
            }
        )
        await asyncio.Event().wait()
