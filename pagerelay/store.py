"""Durable key/value store shared by every agent instance on the host."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Column, event
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from pagerelay.settings import load_config

LOCK_PREFIX = "lock:"
STATE_PREFIX = "state:"


class StoreRecord(SQLModel, table=True):
    """One persisted key (lock record, processing state, agent status)."""

    __tablename__ = "kv"

    key: str = Field(primary_key=True)
    value: Any = Field(default=None, sa_column=Column(SQLITE_JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class StorageConfig:
    """Resolved database location."""

    db_path: Path

    @classmethod
    def from_env(cls) -> StorageConfig:
        cfg = load_config()
        return cls(db_path=Path(cfg("STATE_DB_PATH", default="pagerelay.db")))


class Store:
    """Facade around the SQLite file that survives restarts and suspensions.

    Every method is synchronous; async callers hop through ``asyncio.to_thread``
    so SQLite I/O never blocks the event loop.
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_env()
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def get(self, key: str) -> Any | None:
        with self.session() as session:
            record = session.get(StoreRecord, key)
            return None if record is None else record.value

    def set(self, key: str, value: Any) -> None:
        with self.session() as session:
            record = session.get(StoreRecord, key)
            if record is None:
                record = StoreRecord(key=key, value=value)
            else:
                record.value = value
                record.updated_at = datetime.now(timezone.utc)
            session.add(record)
            session.commit()

    def remove(self, *keys: str) -> int:
        if not keys:
            return 0
        with self.session() as session:
            statement = select(StoreRecord).where(col(StoreRecord.key).in_(keys))
            records = list(session.exec(statement))
            for record in records:
                session.delete(record)
            session.commit()
            return len(records)

    def items(self, prefix: str = "") -> dict[str, Any]:
        with self.session() as session:
            statement = select(StoreRecord)
            if prefix:
                statement = statement.where(col(StoreRecord.key).startswith(prefix))
            return {record.key: record.value for record in session.exec(statement)}

    def close(self) -> None:
        self.engine.dispose()


def build_store(db_path: Path | None = None) -> Store:
    if db_path is None:
        return Store()
    return Store(StorageConfig(db_path=db_path))


def _create_engine(db_path: Path):
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[override]
        # WAL lets one agent read while another writes the same file.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine
