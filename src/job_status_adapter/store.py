from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from job_status_adapter.models import JobStatusUpdateRecord


class QueryError(RuntimeError):
    pass


def fetch_unpropagated(engine: Engine, max_retries: int) -> list[str]:
    """Return the external ids of jobs with status updates still waiting to be propagated.

    Only rows with fewer than ``max_retries`` recorded attempts are considered.
    Ordering is whatever the store returns for a distinct select.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    stmt = (
        select(JobStatusUpdateRecord.external_id)
        .where(JobStatusUpdateRecord.propagated.is_(False))
        .where(JobStatusUpdateRecord.propagation_attempts < max_retries)
        .distinct()
    )
    try:
        with engine.connect() as connection:
            return [str(external_id) for external_id in connection.scalars(stmt)]
    except SQLAlchemyError as exc:
        raise QueryError(f"unpropagated status query failed: {exc}") from exc


class AttemptLedger(Protocol):
    """Owner of the ``propagation_attempts`` counter.

    The propagation loop only reads the counter. Whoever implements this
    protocol is responsible for making it grow; nothing in the loop assumes
    that happens.
    """

    def record_attempt(self, external_id: str) -> None: ...


class SqlAttemptLedger:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def record_attempt(self, external_id: str) -> None:
        with self._engine.begin() as connection:
            connection.execute(
                update(JobStatusUpdateRecord)
                .where(JobStatusUpdateRecord.external_id == external_id)
                .where(JobStatusUpdateRecord.propagated.is_(False))
                .values(
                    propagation_attempts=JobStatusUpdateRecord.propagation_attempts + 1,
                    last_propagation_attempt=datetime.now(timezone.utc),
                )
            )
