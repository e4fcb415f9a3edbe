"""
job-status-adapter

Polls the job_status_updates table for jobs with status updates that have not
been propagated yet and POSTs each job's id to the apps service callbacks
endpoint, which in turn raises the job notifications shown in the UI. Jobs
whose updates already reached the configured number of propagation attempts
are left alone.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Sequence

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError

from job_status_adapter import SERVICE_NAME, __version__
from job_status_adapter.config import ConfigError, Settings, get_settings
from job_status_adapter.db import DatabaseUnavailableError, build_engine, wait_for_database
from job_status_adapter.diagnostics import (
    DiagnosticsBindError,
    DiagnosticsServer,
    bind_diagnostics_socket,
    create_diagnostics_app,
)
from job_status_adapter.logging_config import configure_logging, get_logger
from job_status_adapter.loop import PropagationLoop
from job_status_adapter.propagator import Propagator
from job_status_adapter.stats import PropagationStats
from job_status_adapter.store import QueryError, SqlAttemptLedger

log = get_logger("job_status_adapter.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Propagate job status updates to the apps service",
    )
    parser.add_argument("--version", action="store_true", help="Print the version information and exit")
    parser.add_argument("--db", default=None, help="The URI used to connect to the database")
    parser.add_argument("--callbacks-uri", default=None, help="The apps service job status callbacks URI")
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="The maximum number of propagation attempts per job status update",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="The number of concurrent propagations")
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=None,
        help="Seconds to wait between propagation cycles",
    )
    parser.add_argument("--once", action="store_true", help="Run a single propagation cycle and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser


def _resolve_settings(args: argparse.Namespace) -> Settings:
    return get_settings().with_overrides(
        database_url=args.db,
        apps_callbacks_uri=args.callbacks_uri,
        max_retries=args.retries,
        batch_size=args.batch_size,
        poll_seconds=args.poll_seconds,
        log_level=args.log_level.upper() if args.log_level else None,
    )


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    # every member of a batch gets its own connection; waiting for one is never a timeout
    limits = httpx.Limits(
        max_connections=settings.batch_size,
        max_keepalive_connections=settings.batch_size,
    )
    if settings.http_timeout_seconds is None:
        timeout = httpx.Timeout(None)
    else:
        timeout = httpx.Timeout(settings.http_timeout_seconds, pool=None)
    return httpx.AsyncClient(limits=limits, timeout=timeout)


async def run(settings: Settings, *, once: bool = False) -> None:
    stats = PropagationStats()

    diagnostics: DiagnosticsServer | None = None
    if settings.diagnostics_enabled:
        sock = bind_diagnostics_socket(settings.diagnostics_host, settings.diagnostics_port)
        diagnostics = DiagnosticsServer(create_diagnostics_app(settings, stats), sock)
        diagnostics.start()
        log.info(
            "diagnostics listener started",
            host=settings.diagnostics_host,
            port=settings.diagnostics_port,
        )

    engine: Engine | None = None
    stop_event = asyncio.Event()
    try:
        engine = build_engine(settings)
        log.info("Connecting to the database...")
        await asyncio.to_thread(
            wait_for_database,
            engine,
            timeout_seconds=settings.db_connect_timeout_seconds,
            base_delay=settings.db_retry_base_seconds,
            max_delay=settings.db_retry_max_seconds,
        )
        async with build_http_client(settings) as client:
            loop = PropagationLoop(
                engine=engine,
                propagator=Propagator(client=client, callbacks_uri=settings.apps_callbacks_uri),
                max_retries=settings.max_retries,
                batch_size=settings.batch_size,
                poll_seconds=settings.poll_seconds,
                stats=stats,
                ledger=SqlAttemptLedger(engine) if settings.record_attempts else None,
            )
            task = asyncio.create_task(loop.run_forever(stop_event, max_cycles=1 if once else None))

            def _shutdown(signame: str) -> None:
                log.info("shutdown requested", signal=signame)
                stop_event.set()
                task.cancel()

            event_loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                event_loop.add_signal_handler(sig, _shutdown, sig.name)
            try:
                await task
            except asyncio.CancelledError:
                if not stop_event.is_set():
                    raise
                log.info("propagation loop stopped")
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    event_loop.remove_signal_handler(sig)
    finally:
        if diagnostics is not None:
            diagnostics.stop()
        if engine is not None:
            engine.dispose()


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.version:
        print(f"{SERVICE_NAME} {__version__}")
        return 0

    try:
        settings = _resolve_settings(args)
    except ConfigError as exc:
        print(f"Error: {exc}")
        return 2

    configure_logging(settings.log_level, json_output=settings.log_json)
    log.info("configuration loaded", callbacks_uri=settings.apps_callbacks_uri, batch_size=settings.batch_size)

    try:
        asyncio.run(run(settings, once=args.once))
    except DatabaseUnavailableError as exc:
        log.critical("unable to connect to the database", error=str(exc))
        return 1
    except QueryError as exc:
        log.critical("unable to query unpropagated job status updates", error=str(exc))
        return 1
    except DiagnosticsBindError as exc:
        log.critical("unable to start diagnostics listener", error=str(exc))
        return 1
    except ArgumentError as exc:
        log.critical("invalid database configuration", error=str(exc))
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
