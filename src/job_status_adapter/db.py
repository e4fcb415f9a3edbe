from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache
from random import random
from time import monotonic, sleep
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase

from job_status_adapter.config import Settings, get_settings
from job_status_adapter.logging_config import StructuredLogger, get_logger


class Base(DeclarativeBase):
    pass


class DatabaseUnavailableError(RuntimeError):
    pass


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {
        "echo": settings.db_echo,
        "pool_pre_ping": True,
    }
    timeout = settings.db_statement_timeout_seconds
    if timeout is not None and make_url(settings.database_url).get_backend_name() == "postgresql":
        # server side bound on queries left running in a worker thread after cancellation
        options["connect_args"] = {"options": f"-c statement_timeout={int(timeout * 1000)}"}
    return options


def build_engine(settings: Settings) -> Engine:
    return create_engine(settings.database_url, **_engine_options(settings))


@lru_cache
def get_engine() -> Engine:
    return build_engine(get_settings())


def ping_database(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def wait_for_database(
    engine: Engine,
    *,
    timeout_seconds: float,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    logger: StructuredLogger | None = None,
    ping: Callable[[Engine], None] = ping_database,
    sleep_fn: Callable[[float], None] = sleep,
    clock: Callable[[], float] = monotonic,
) -> None:
    """Block until the database answers a ping or ``timeout_seconds`` elapse.

    Retries back off exponentially with a little jitter, capped at
    ``max_delay``. Raises ``DatabaseUnavailableError`` once the window is used up.
    """
    log = logger or get_logger(__name__)
    deadline = clock() + timeout_seconds
    delay = base_delay
    attempt = 1

    while True:
        try:
            ping(engine)
        except SQLAlchemyError as exc:
            remaining = deadline - clock()
            if remaining <= 0:
                raise DatabaseUnavailableError(
                    f"database unreachable after {attempt} attempt(s): {exc}"
                ) from exc
            wait = min(delay + random() * 0.2 * delay, remaining)
            log.warning(
                "database ping failed; retrying",
                attempt=attempt,
                error=repr(exc),
                retry_in_seconds=round(wait, 2),
            )
            sleep_fn(wait)
            delay = min(delay * 2, max_delay)
            attempt += 1
            continue

        log.info("Connected to the database", attempt=attempt)
        return
