"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import AutoConfig, Config as DecoupleConfig, RepositoryEnv

__all__ = [
    "AgentSettings",
    "LockSettings",
    "IdleSettings",
    "BrowserSettings",
    "ExecutorSettings",
    "StorageSettings",
    "LoggingSettings",
    "Settings",
    "load_config",
    "get_settings",
]


@dataclass(frozen=True, slots=True)
class AgentSettings:
    """Control-server coordinates; owned by the operator, read-only to the agent."""

    control_url: str
    poll_interval_seconds: int

    @property
    def configured(self) -> bool:
        return bool(self.control_url) and self.poll_interval_seconds > 0


@dataclass(frozen=True, slots=True)
class LockSettings:
    """Staleness + retry knobs for the cross-instance polling lock."""

    timeout_seconds: float
    poll_lock_retries: int
    poll_lock_retry_delay_seconds: float


@dataclass(frozen=True, slots=True)
class IdleSettings:
    """Quiet-network thresholds applied after the page load signal."""

    timeout_seconds: float
    quiet_period_seconds: float
    check_interval_seconds: float
    max_active_requests: int


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch + viewport sweep parameters."""

    playwright_channel: str
    headless: bool
    viewport_width: int
    viewport_height: int
    scroll_settle_ms: int
    max_capture_tiles: int


@dataclass(frozen=True, slots=True)
class ExecutorSettings:
    """Deadlines for a single job run."""

    job_timeout_seconds: float
    page_load_timeout_seconds: float
    post_extract_delay_seconds: float
    stale_processing_seconds: float
    poll_request_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """SQLite state file shared by every agent on the host, plus the job log."""

    db_path: Path
    job_log_path: Path


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str
    buffer_size: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    agent: AgentSettings
    lock: LockSettings
    idle: IdleSettings
    browser: BrowserSettings
    executor: ExecutorSettings
    storage: StorageSettings
    logging: LoggingSettings


def load_config(env_path: str = ".env") -> DecoupleConfig | AutoConfig:
    """Return a python-decouple config anchored to ``env_path`` when it exists."""

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return AutoConfig(search_path=str(Path.cwd()))


def _int(cfg, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _positive(name: str, value: float) -> None:
    if value <= 0:
        msg = f"{name} must be positive, got {value}"
        raise ValueError(msg)


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    agent = AgentSettings(
        control_url=cfg("CONTROL_URL", default="").rstrip("/"),
        poll_interval_seconds=_int(cfg, "POLL_INTERVAL_SECONDS", default=30),
    )
    lock = LockSettings(
        timeout_seconds=_float(cfg, "LOCK_TIMEOUT_SECONDS", default=5.0),
        poll_lock_retries=_int(cfg, "POLL_LOCK_RETRIES", default=3),
        poll_lock_retry_delay_seconds=_float(cfg, "POLL_LOCK_RETRY_DELAY_SECONDS", default=1.0),
    )
    idle = IdleSettings(
        timeout_seconds=_float(cfg, "IDLE_TIMEOUT_SECONDS", default=30.0),
        quiet_period_seconds=_float(cfg, "IDLE_QUIET_PERIOD_SECONDS", default=2.0),
        check_interval_seconds=_float(cfg, "IDLE_CHECK_INTERVAL_SECONDS", default=0.1),
        max_active_requests=_int(cfg, "IDLE_MAX_ACTIVE_REQUESTS", default=2),
    )
    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        viewport_width=_int(cfg, "CAPTURE_VIEWPORT_WIDTH", default=1280),
        viewport_height=_int(cfg, "CAPTURE_VIEWPORT_HEIGHT", default=1000),
        scroll_settle_ms=_int(cfg, "SCROLL_SETTLE_MS", default=500),
        max_capture_tiles=_int(cfg, "MAX_CAPTURE_TILES", default=200),
    )
    executor = ExecutorSettings(
        job_timeout_seconds=_float(cfg, "JOB_TIMEOUT_SECONDS", default=480.0),
        page_load_timeout_seconds=_float(cfg, "PAGE_LOAD_TIMEOUT_SECONDS", default=30.0),
        post_extract_delay_seconds=_float(cfg, "POST_EXTRACT_DELAY_SECONDS", default=2.0),
        stale_processing_seconds=_float(cfg, "STALE_PROCESSING_SECONDS", default=600.0),
        poll_request_timeout_seconds=_float(cfg, "POLL_REQUEST_TIMEOUT_SECONDS", default=30.0),
    )
    storage = StorageSettings(
        db_path=Path(cfg("STATE_DB_PATH", default="pagerelay.db")),
        job_log_path=Path(cfg("JOB_LOG_PATH", default="ops/jobs.jsonl")),
    )
    logging_settings = LoggingSettings(
        level=cfg("LOG_LEVEL", default="INFO").upper(),
        buffer_size=_int(cfg, "LOG_BUFFER_SIZE", default=500),
    )

    _positive("LOCK_TIMEOUT_SECONDS", lock.timeout_seconds)
    _positive("IDLE_CHECK_INTERVAL_SECONDS", idle.check_interval_seconds)
    _positive("JOB_TIMEOUT_SECONDS", executor.job_timeout_seconds)
    if lock.poll_lock_retries < 1:
        msg = "POLL_LOCK_RETRIES must be >= 1"
        raise ValueError(msg)
    if idle.max_active_requests < 0:
        msg = "IDLE_MAX_ACTIVE_REQUESTS must be >= 0"
        raise ValueError(msg)

    return Settings(
        env_path=env_path,
        agent=agent,
        lock=lock,
        idle=idle,
        browser=browser,
        executor=executor,
        storage=storage,
        logging=logging_settings,
    )
