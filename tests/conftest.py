# tests/conftest.py
from __future__ import annotations

from typing import Iterator

import pytest

from mes_ledger.config import Settings
from mes_ledger.services import MESService
from mes_ledger.storage import MESDatabase


@pytest.fixture
def settings() -> Settings:
    return Settings(
        persistence_retry_attempts=3,
        persistence_retry_delay_seconds=0,
        conflict_retry_attempts=5,
        cache_ttl_seconds=300,
    )


@pytest.fixture
def mes(settings: Settings) -> MESService:
    """Service over the in-memory record store."""
    return MESService(settings=settings)


@pytest.fixture
def sqlite_db(tmp_path) -> Iterator[MESDatabase]:
    with MESDatabase(str(tmp_path / "mes.sqlite3"), retry_delay=0) as db:
        yield db


@pytest.fixture
def sqlite_mes(sqlite_db: MESDatabase, settings: Settings) -> MESService:
    return MESService(sqlite_db.repositories, settings=settings)


@pytest.fixture
def work_order(mes: MESService):
    return mes.create_work_order(36, customer_name="Fab 12", product_model="R0-300")
