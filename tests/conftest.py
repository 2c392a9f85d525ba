from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from pagerelay.lock import DistributedLock
from pagerelay.store import StorageConfig, Store
from tests.fakes import FakeClock


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[Store]:
    instance = Store(StorageConfig(db_path=tmp_path / "state.db"))
    yield instance
    instance.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def lock(store: Store) -> DistributedLock:
    return DistributedLock(store)
