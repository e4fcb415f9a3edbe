from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Tracer
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from job_status_adapter.config import get_settings
from job_status_adapter.db import Base, get_engine
from job_status_adapter.models import JobStatusUpdateRecord


@pytest.fixture(autouse=True)
def reset_adapter_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite+pysqlite:///{tmp_path / 'adapter-tests.db'}"


@pytest.fixture
def engine(sqlite_url: str) -> Iterator[Engine]:
    engine = create_engine(sqlite_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


SeedStatus = Callable[..., None]


@pytest.fixture
def seed_status(engine: Engine) -> SeedStatus:
    counter = {"next": 1}

    def _seed(external_id: str, *, propagated: bool = False, attempts: int = 0, status: str = "Running") -> None:
        with Session(engine) as session:
            session.add(
                JobStatusUpdateRecord(
                    id=str(counter["next"]),
                    external_id=external_id,
                    status=status,
                    propagated=propagated,
                    propagation_attempts=attempts,
                )
            )
            session.commit()
        counter["next"] += 1

    return _seed


@pytest.fixture
def tracing() -> Iterator[tuple[Tracer, InMemorySpanExporter]]:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    yield provider.get_tracer("job_status_adapter.tests"), exporter
    provider.shutdown()
