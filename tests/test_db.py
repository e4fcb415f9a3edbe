import logging
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from job_status_adapter.config import get_settings
from job_status_adapter.db import DatabaseUnavailableError, _engine_options, wait_for_database


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_wait_for_database_retries_with_backoff_until_ping_succeeds(
    engine: Engine, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="job_status_adapter")
    clock = _FakeClock()
    pings: list[Engine] = []

    def ping(target: Engine) -> None:
        pings.append(target)
        if len(pings) < 3:
            raise OperationalError("SELECT 1", None, Exception("the database system is starting up"))

    wait_for_database(
        engine,
        timeout_seconds=60,
        base_delay=1.0,
        max_delay=30.0,
        ping=ping,
        sleep_fn=clock.sleep,
        clock=clock,
    )

    assert len(pings) == 3
    assert len(clock.sleeps) == 2
    assert 1.0 <= clock.sleeps[0] <= 1.2
    assert 2.0 <= clock.sleeps[1] <= 2.4
    assert caplog.records[-1].getMessage() == "Connected to the database"


def test_wait_for_database_gives_up_once_the_window_is_spent(tmp_path: Path) -> None:
    unreachable = create_engine(f"sqlite+pysqlite:///{tmp_path / 'missing' / 'adapter.db'}")
    clock = _FakeClock()

    with pytest.raises(DatabaseUnavailableError, match="database unreachable"):
        wait_for_database(
            unreachable,
            timeout_seconds=5,
            base_delay=1.0,
            max_delay=30.0,
            sleep_fn=clock.sleep,
            clock=clock,
        )

    assert clock.sleeps
    assert sum(clock.sleeps) == pytest.approx(5.0)
    unreachable.dispose()


def test_wait_for_database_with_zero_window_tries_once(tmp_path: Path) -> None:
    unreachable = create_engine(f"sqlite+pysqlite:///{tmp_path / 'missing' / 'adapter.db'}")
    clock = _FakeClock()

    with pytest.raises(DatabaseUnavailableError, match="after 1 attempt"):
        wait_for_database(unreachable, timeout_seconds=0, sleep_fn=clock.sleep, clock=clock)

    assert clock.sleeps == []
    unreachable.dispose()


def test_statement_timeout_applies_to_postgres_connections(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADAPTER_DATABASE_URL", "postgresql+psycopg://de:de@db.test:5432/de")
    monkeypatch.setenv("ADAPTER_DB_STATEMENT_TIMEOUT_SECONDS", "2.5")

    options = _engine_options(get_settings())

    assert options["connect_args"] == {"options": "-c statement_timeout=2500"}
    assert options["pool_pre_ping"] is True


def test_statement_timeout_is_skipped_when_unset_or_not_postgres(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADAPTER_DATABASE_URL", "sqlite+pysqlite:///adapter.db")
    monkeypatch.setenv("ADAPTER_DB_STATEMENT_TIMEOUT_SECONDS", "2.5")
    assert "connect_args" not in _engine_options(get_settings())

    get_settings.cache_clear()
    monkeypatch.setenv("ADAPTER_DATABASE_URL", "postgresql+psycopg://de:de@db.test:5432/de")
    monkeypatch.delenv("ADAPTER_DB_STATEMENT_TIMEOUT_SECONDS")
    assert "connect_args" not in _engine_options(get_settings())
