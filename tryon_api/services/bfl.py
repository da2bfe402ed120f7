"""Black Forest Labs client: submit, fetch status, poll with backoff, download results."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Iterator

import httpx

from tryon_api.core.config import get_settings
from tryon_api.core.exceptions import (
    InvalidRequestError,
    PollTimeoutError,
    ProtocolError,
    RemoteJobFailed,
    ServiceUnavailableError,
)
from tryon_api.core.logging import get_logger

log = get_logger(__name__)


class RemoteState(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"


# Remote status vocabulary (lower-cased) -> canonical state. Anything else is a ProtocolError.
STATUS_MAP: dict[str, RemoteState] = {
    "succeeded": RemoteState.SUCCEEDED,
    "ready": RemoteState.SUCCEEDED,
    "processing": RemoteState.PROCESSING,
    "pending": RemoteState.PROCESSING,
    "queued": RemoteState.PROCESSING,
    "failed": RemoteState.FAILED,
    "error": RemoteState.FAILED,
    "request moderated": RemoteState.FAILED,
    "content moderated": RemoteState.FAILED,
    "task not found": RemoteState.FAILED,
}

# Status codes worth retrying; other 4xx mean the request itself is wrong.
RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class SubmitResult:
    external_job_id: str
    polling_url: str


@dataclass
class RemoteStatus:
    status: RemoteState
    result_url: str | None = None
    error_detail: Any = None
    raw: dict[str, Any] = field(default_factory=dict)


def normalize_status(value: Any) -> RemoteState:
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"Missing remote status: {value!r}")
    state = STATUS_MAP.get(value.strip().lower())
    if state is None:
        raise ProtocolError(f"Unrecognized remote status: {value}")
    return state


def extract_result_url(body: dict[str, Any]) -> str | None:
    result = body.get("result")
    if not isinstance(result, dict):
        return None
    for key in ("sample", "image", "url"):
        value = result.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def backoff_delays(initial: float, factor: float = 1.5, maximum: float = 30.0) -> Iterator[float]:
    """Non-decreasing delays: initial, initial*factor, ... capped at maximum."""
    delay = min(initial, maximum)
    while True:
        yield delay
        delay = min(delay * factor, maximum)


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


def _raise_for_status(response: httpx.Response, what: str) -> None:
    code = response.status_code
    if code < 400:
        return
    body = _body(response)
    if code >= 500 or code in RETRYABLE_STATUS_CODES:
        raise ServiceUnavailableError(f"{what} failed with status {code}", remote_status=code, remote_body=body)
    raise InvalidRequestError(f"{what} rejected with status {code}", remote_status=code, remote_body=body)


class BFLClient:
    """Async client for the BFL generation API.

    One httpx.AsyncClient per call keeps the client safe to share between the
    request path and detached reconciliation tasks.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.bfl.ai/v1",
        *,
        submit_timeout: float = 30.0,
        poll_timeout: float = 30.0,
        download_timeout: float = 120.0,
        max_delay: float = 30.0,
        backoff_factor: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.submit_timeout = submit_timeout
        self.poll_timeout = poll_timeout
        self.download_timeout = download_timeout
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: float, authenticated: bool = True) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if authenticated:
            headers["x-key"] = self.api_key
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def submit(self, endpoint: str, payload: dict[str, Any]) -> SubmitResult:
        """POST a generation request. No local side effects."""
        started = time.perf_counter()
        try:
            async with self._client(self.submit_timeout) as client:
                response = await client.post(f"/{endpoint.lstrip('/')}", json=payload)
        except httpx.TimeoutException as e:
            raise ServiceUnavailableError(f"Generation request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"Generation service network error: {e}") from e
        _raise_for_status(response, "Generation request")
        body = _body(response)
        if not isinstance(body, dict) or not body.get("id") or not body.get("polling_url"):
            raise ProtocolError("Generation response missing id or polling_url", remote_body=body)
        log.info(
            "bfl_submitted",
            endpoint=endpoint,
            external_job_id=body["id"],
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return SubmitResult(external_job_id=str(body["id"]), polling_url=str(body["polling_url"]))

    async def fetch_status(self, polling_url: str) -> RemoteStatus:
        """One status request. Transport errors and 5xx raise ServiceUnavailableError (transient)."""
        try:
            async with self._client(self.poll_timeout) as client:
                response = await client.get(polling_url)
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"Polling network error: {e}") from e
        _raise_for_status(response, "Polling request")
        body = _body(response)
        if not isinstance(body, dict):
            raise ProtocolError("Polling response is not a JSON object", remote_body=body)
        state = normalize_status(body.get("status"))
        error_detail = None
        if state is RemoteState.FAILED:
            error_detail = body.get("details") or body.get("error") or body.get("status")
        return RemoteStatus(
            status=state,
            result_url=extract_result_url(body) if state is RemoteState.SUCCEEDED else None,
            error_detail=error_detail,
            raw=body,
        )

    async def poll_until_terminal(
        self,
        polling_url: str,
        max_attempts: int = 30,
        initial_delay: float = 2.0,
    ) -> RemoteStatus:
        """Poll until succeeded (returned) or failed (RemoteJobFailed).

        Non-terminal statuses and transient errors share the attempt budget and the
        same backoff. ProtocolError and InvalidRequestError abort immediately.
        """
        delays = backoff_delays(initial_delay, self.backoff_factor, self.max_delay)
        started = time.perf_counter()
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.fetch_status(polling_url)
            except ServiceUnavailableError as e:
                last_error = e
                log.warning("bfl_poll_transient_error", attempt=attempt, max_attempts=max_attempts, error=e.message)
            else:
                if result.status is RemoteState.SUCCEEDED:
                    log.info(
                        "bfl_poll_succeeded",
                        attempt=attempt,
                        elapsed_s=round(time.perf_counter() - started, 2),
                    )
                    return result
                if result.status is RemoteState.FAILED:
                    log.warning("bfl_poll_failed", attempt=attempt, detail=result.error_detail)
                    raise RemoteJobFailed(f"Remote job failed: {result.error_detail}", detail=result.error_detail)
                log.debug("bfl_poll_pending", attempt=attempt, progress=result.raw.get("progress"))
            if attempt < max_attempts:
                await self._sleep(next(delays))
        message = f"Maximum polling attempts ({max_attempts}) reached after {time.perf_counter() - started:.2f}s"
        if last_error is not None:
            message = f"{message}; last error: {last_error}"
        log.error("bfl_poll_exhausted", max_attempts=max_attempts)
        raise PollTimeoutError(message, attempts=max_attempts)

    async def download(self, url: str) -> tuple[bytes, str]:
        """Fetch a result image; returns (content, content_type). Empty bodies are an error."""
        try:
            async with self._client(self.download_timeout, authenticated=False) as client:
                response = await client.get(url, headers={"Accept": "image/jpeg,image/png,image/*"})
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"Image download failed: {e}") from e
        _raise_for_status(response, "Image download")
        if not response.content:
            raise ProtocolError("Downloaded image is empty")
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return response.content, content_type


@lru_cache
def get_bfl_client() -> BFLClient:
    s = get_settings()
    return BFLClient(
        s.bfl_api_key,
        s.bfl_base_url,
        submit_timeout=s.bfl_submit_timeout,
        poll_timeout=s.bfl_poll_timeout,
        download_timeout=s.bfl_download_timeout,
        max_delay=s.poll_max_delay,
        backoff_factor=s.poll_backoff_factor,
    )
