from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from pagerelay.scheduler import SchedulerConfig
from pagerelay.settings import get_settings

_KEYS = (
    "CONTROL_URL",
    "POLL_INTERVAL_SECONDS",
    "LOCK_TIMEOUT_SECONDS",
    "POLL_LOCK_RETRIES",
    "JOB_TIMEOUT_SECONDS",
    "POLL_REQUEST_TIMEOUT_SECONDS",
    "IDLE_MAX_ACTIVE_REQUESTS",
    "BROWSER_HEADLESS",
    "STATE_DB_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _write_env(tmp_path: Path, body: str) -> str:
    env_path = tmp_path / ".env"
    env_path.write_text(body, encoding="utf-8")
    return str(env_path)


def test_defaults_when_env_file_is_silent(tmp_path: Path) -> None:
    settings = get_settings(_write_env(tmp_path, ""))

    assert settings.agent.control_url == ""
    assert settings.agent.configured is False
    assert settings.agent.poll_interval_seconds == 30
    assert settings.lock.timeout_seconds == 5.0
    assert settings.lock.poll_lock_retries == 3
    assert settings.idle.quiet_period_seconds == 2.0
    assert settings.idle.max_active_requests == 2
    assert settings.browser.headless is True
    assert settings.browser.scroll_settle_ms == 500
    assert settings.executor.job_timeout_seconds == 480.0
    assert settings.executor.page_load_timeout_seconds == 30.0
    assert settings.logging.level == "INFO"


def test_env_file_values_are_parsed(tmp_path: Path) -> None:
    env_path = _write_env(
        tmp_path,
        "\n".join(
            [
                "CONTROL_URL=http://control.test:8080/",
                "POLL_INTERVAL_SECONDS=45",
                "BROWSER_HEADLESS=false",
                "STATE_DB_PATH=/var/lib/agent/state.db",
                "LOG_LEVEL=debug",
            ]
        ),
    )

    settings = get_settings(env_path)

    assert settings.agent.control_url == "http://control.test:8080"
    assert settings.agent.configured is True
    assert settings.agent.poll_interval_seconds == 45
    assert settings.browser.headless is False
    assert settings.storage.db_path == Path("/var/lib/agent/state.db")
    assert settings.logging.level == "DEBUG"


def test_process_environment_overrides_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_path = _write_env(tmp_path, "POLL_INTERVAL_SECONDS=45\n")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "60")

    assert get_settings(env_path).agent.poll_interval_seconds == 60


@pytest.mark.parametrize(
    "line",
    ["LOCK_TIMEOUT_SECONDS=0", "JOB_TIMEOUT_SECONDS=-1", "POLL_LOCK_RETRIES=0", "IDLE_MAX_ACTIVE_REQUESTS=-1"],
)
def test_invalid_values_are_rejected(tmp_path: Path, line: str) -> None:
    with pytest.raises(ValueError):
        get_settings(_write_env(tmp_path, line + "\n"))


def test_polling_lock_outlives_a_full_job(tmp_path: Path) -> None:
    env_path = _write_env(
        tmp_path,
        "JOB_TIMEOUT_SECONDS=100\nPOLL_REQUEST_TIMEOUT_SECONDS=20\nLOCK_TIMEOUT_SECONDS=5\n",
    )

    config = SchedulerConfig.from_settings(get_settings(env_path))

    assert config.lock_timeout == 125
    assert config.lock_policy.max_retries == 3
