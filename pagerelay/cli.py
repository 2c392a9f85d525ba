"""Operator CLI: run the agent, inspect persisted state and locks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from pagerelay.browser import run_agent
from pagerelay.job_log import read_job_events
from pagerelay.lock import DistributedLock
from pagerelay.settings import AgentSettings, Settings, get_settings
from pagerelay.state import AGENT_STATE_RESOURCE, PROCESSING_RESOURCE, LogBuffer
from pagerelay.store import build_store

console = Console()
cli = typer.Typer(help="Browser job agent: poll a control server, render, extract, capture, submit.")


def _configure_logging(settings: Settings, *, level: Optional[str] = None) -> LogBuffer:
    buffer = LogBuffer(capacity=settings.logging.buffer_size)
    logging.basicConfig(
        level=(level or settings.logging.level).upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_time=True), buffer],
        force=True,
    )
    return buffer


def _lock_for(settings: Settings, db_path: Optional[Path]) -> DistributedLock:
    return DistributedLock(build_store(db_path or settings.storage.db_path))


def _format_ts(value: Any) -> str:
    if not isinstance(value, (int, float)):
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat(timespec="seconds")


@cli.command()
def run(
    control_url: Optional[str] = typer.Option(None, "--control-url", help="Override CONTROL_URL."),
    poll_interval: Optional[int] = typer.Option(None, "--poll-interval", min=1, help="Backup trigger period (s)."),
    headed: bool = typer.Option(False, "--headed", help="Show the browser window."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
) -> None:
    """Start continuous polling until interrupted."""

    settings = get_settings()
    if headed:
        settings = replace(settings, browser=replace(settings.browser, headless=False))
    agent_settings = AgentSettings(
        control_url=(control_url or settings.agent.control_url).rstrip("/"),
        poll_interval_seconds=poll_interval or settings.agent.poll_interval_seconds,
    )
    if not agent_settings.control_url:
        console.print("[red]No control URL configured (set CONTROL_URL or pass --control-url).[/]")
        raise typer.Exit(2)

    buffer = _configure_logging(settings, level=log_level)
    try:
        asyncio.run(run_agent(settings, agent_settings=agent_settings, log_buffer=buffer))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, polling stopped.[/]")


@cli.command()
def status(
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override STATE_DB_PATH."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
    recent: int = typer.Option(5, "--recent", min=0, help="Show the last N job outcomes."),
) -> None:
    """Print the persisted agent status and any in-flight job marker."""

    settings = get_settings()
    lock = _lock_for(settings, db_path)

    async def _load() -> tuple[Any, Any]:
        return await lock.get_state(AGENT_STATE_RESOURCE), await lock.get_state(PROCESSING_RESOURCE)

    agent_state, processing = asyncio.run(_load())
    events = read_job_events(settings.storage.job_log_path, limit=recent) if recent else []
    if json_output:
        console.print_json(data={"agent": agent_state, "processing": processing, "recent": events})
        return

    table = Table("Field", "Value", title="Agent")
    agent_state = agent_state or {}
    table.add_row("status", str(agent_state.get("current_status", "-")))
    table.add_row("processing", str(agent_state.get("is_processing", False)))
    table.add_row("last poll", _format_ts(agent_state.get("last_poll_time")))
    if isinstance(processing, dict):
        table.add_row("job url", str(processing.get("url")))
        table.add_row("job started", _format_ts(processing.get("start_time")))
    console.print(table)

    if events:
        history = Table("When", "State", "URL", "Error", title="Recent jobs")
        for event in events:
            history.add_row(
                str(event.get("timestamp", "-")),
                str(event.get("state", "-")),
                str(event.get("url", "-")),
                str(event.get("error") or ""),
            )
        console.print(history)


@cli.command()
def locks(
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override STATE_DB_PATH."),
    clear: bool = typer.Option(False, "--clear", help="Remove every lock record."),
) -> None:
    """List lock records (and optionally wipe them)."""

    settings = get_settings()
    lock = _lock_for(settings, db_path)

    if clear:
        removed = asyncio.run(lock.clear_all_locks())
        console.print(f"[yellow]Removed {removed} lock record(s).[/]")
        return

    records = asyncio.run(lock.lock_status())
    if not records:
        console.print("No locks held.")
        return
    table = Table("Resource", "Token", "Acquired")
    for resource, entry in sorted(records.items()):
        stored = entry.get("store") or {}
        table.add_row(resource, str(stored.get("token", "-")), _format_ts(stored.get("acquired_at")))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    cli()
