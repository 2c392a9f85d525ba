"""HTTP adapter for the control server (job queue, results, error reports)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError

from pagerelay.errors import SubmitError, TransportError, TransportTimeout
from pagerelay.schemas import ErrorReport, JobPayload, SubmitPayload

LOGGER = logging.getLogger(__name__)
REQUEST_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0)
REPORT_TIMEOUT = httpx.Timeout(10.0)
_PREVIEW_CHARS = 100


class ControlClient:
    """Thin async client for ``/get_url``, ``/submit`` and ``/report_error``."""

    def __init__(
        self,
        control_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        poll_timeout: float = 30.0,
    ) -> None:
        self.control_url = control_url.rstrip("/")
        self.poll_timeout = poll_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> ControlClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def fetch_job(self) -> JobPayload | None:
        """Return the next job, or ``None`` on ``204`` or a body without a URL."""

        url = f"{self.control_url}/get_url"
        try:
            response = await self._client.get(url, timeout=self.poll_timeout)
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"Poll timed out after {self.poll_timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Poll request failed: {exc}") from exc

        LOGGER.debug("Poll response status=%s", response.status_code)
        if response.status_code == httpx.codes.NO_CONTENT:
            return None
        if not response.is_success:
            raise TransportError(f"HTTP error! status: {response.status_code}")

        try:
            payload = JobPayload.model_validate_json(response.content)
        except ValidationError as exc:
            raise TransportError(f"Malformed job payload: {exc}") from exc
        if payload.url is None:
            LOGGER.warning("Poll response carried no URL, treating queue as empty")
            return None
        return payload

    async def submit(self, payload: SubmitPayload) -> None:
        body = payload.model_dump(by_alias=True)
        try:
            response = await self._client.post(f"{self.control_url}/submit", json=body)
        except httpx.HTTPError as exc:
            raise SubmitError(f"Submit request failed: {exc}") from exc

        preview = response.text[:_PREVIEW_CHARS]
        LOGGER.info("Submit response status=%s body=%r", response.status_code, preview)
        if not response.is_success:
            raise SubmitError(
                f"Server responded with {response.status_code}: {preview}",
                status_code=response.status_code,
            )

    async def report_error(self, url: str, error: str) -> bool:
        """Best-effort failure report; never raises."""

        report = ErrorReport(
            url=url,
            error=error,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        try:
            response = await self._client.post(
                f"{self.control_url}/report_error",
                json=report.model_dump(),
                timeout=REPORT_TIMEOUT,
            )
        except Exception as exc:  # noqa: BLE001 - reporting must not escalate
            LOGGER.warning("Failed to report error for %s: %s (original: %s)", url, exc, error)
            return False
        if not response.is_success:
            LOGGER.warning("Error report for %s rejected with status %s", url, response.status_code)
            return False
        LOGGER.info("Error reported to server for %s", url)
        return True
