from __future__ import annotations

from dataclasses import dataclass

import httpx
from opentelemetry import propagate
from pydantic import BaseModel, ConfigDict

from job_status_adapter.logging_config import StructuredLogger, get_logger


class PropagationError(RuntimeError):
    kind = "propagation"

    def __init__(self, external_id: str, message: str) -> None:
        super().__init__(message)
        self.external_id = external_id


class SerializationError(PropagationError):
    kind = "serialization"


class TransportError(PropagationError):
    kind = "transport"


class DeliveryError(PropagationError):
    kind = "delivery"

    def __init__(self, external_id: str, status_code: int) -> None:
        super().__init__(external_id, f"bad response status {status_code}")
        self.status_code = status_code


class JobStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    uuid: str


@dataclass(frozen=True)
class DeliveryResult:
    external_id: str
    status_code: int


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code <= 299


class Propagator:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        callbacks_uri: str,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._client = client
        self._callbacks_uri = callbacks_uri
        self._logger = logger or get_logger(__name__)

    def build_message(self, external_id: str) -> bytes:
        try:
            return JobStatusUpdate(uuid=external_id).model_dump_json().encode("utf-8")
        except ValueError as exc:
            raise SerializationError(external_id, f"cannot encode job status update: {exc}") from exc

    async def propagate(self, external_id: str) -> DeliveryResult:
        log = self._logger.bind(external_id=external_id, callbacks_uri=self._callbacks_uri)
        log.info("propagating job status")

        try:
            message = self.build_message(external_id)
        except SerializationError as exc:
            log.error("job status serialization failed", error=str(exc))
            raise

        log.info("job status message", body=message.decode("utf-8"))

        headers = {"content-type": "application/json"}
        propagate.inject(headers)
        try:
            response = await self._client.post(self._callbacks_uri, content=message, headers=headers)
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            log.error("job status send failed", error=repr(exc))
            raise TransportError(external_id, f"request to {self._callbacks_uri} failed: {exc!r}") from exc

        log.info("job status response", status_code=response.status_code)
        if not is_success_status(response.status_code):
            raise DeliveryError(external_id, response.status_code)

        return DeliveryResult(external_id=external_id, status_code=response.status_code)
