from __future__ import annotations

from dataclasses import asdict
import socket
import sys
from threading import Thread
from typing import Any

from fastapi import FastAPI
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
import uvicorn

from job_status_adapter import SERVICE_NAME, __version__
from job_status_adapter.config import Settings
from job_status_adapter.stats import PropagationStats


def _redacted_settings(settings: Settings) -> dict[str, Any]:
    values = asdict(settings)
    try:
        values["database_url"] = make_url(settings.database_url).render_as_string(hide_password=True)
    except ArgumentError:
        values["database_url"] = "<unparseable>"
    return values


def create_diagnostics_app(settings: Settings, stats: PropagationStats) -> FastAPI:
    app = FastAPI(title="job-status-adapter diagnostics", version=__version__)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/debug/vars")
    def debug_vars() -> dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "cmdline": list(sys.argv),
            "settings": _redacted_settings(settings),
            "stats": stats.snapshot(),
        }

    return app


class DiagnosticsBindError(RuntimeError):
    pass


def bind_diagnostics_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise DiagnosticsBindError(f"cannot listen on {host}:{port}: {exc}") from exc
    return sock


class DiagnosticsServer:
    """Serves the diagnostics app from a daemon thread on an already bound socket."""

    def __init__(self, app: FastAPI, sock: socket.socket) -> None:
        self._sock = sock
        self._server = uvicorn.Server(uvicorn.Config(app, log_level="warning", access_log=False))
        self._thread = Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name="diagnostics",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)
        self._sock.close()
