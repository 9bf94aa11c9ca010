"""HTTP client with retry, redacted logging and typed error translation."""

import os
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

import httpx
import structlog

from store_publisher import __version__
from store_publisher.core.exceptions import NetworkError
from store_publisher.core.resilience import CancellationToken, SleepFn, with_retry
from store_publisher.models.deployment import RetryPolicy
from store_publisher.utils.helpers import format_file_size
from store_publisher.utils.logging import REDACTED, get_logger

SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "cookie", "set-cookie"})

DEFAULT_HEADERS = {
    "User-Agent": f"store-publisher/{__version__}",
    "Accept": "application/json",
}

UPLOAD_CHUNK_SIZE = 1024 * 1024


def sanitize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Copy ``headers`` with credential-bearing values replaced."""
    if not headers:
        return {}
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def is_retryable_response(response: httpx.Response) -> bool:
    """5xx, 429 and rate-limit bodies are transient."""
    if response.status_code >= 500 or response.status_code == 429:
        return True
    try:
        body = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return False
    return "rate limit" in body.lower()


def decode_body(response: httpx.Response) -> Any:
    """Decode a response body: JSON when declared, text otherwise, None if empty."""
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        return response.json()
    return response.text


async def iter_file(
    path: str | os.PathLike[str],
    chunk_size: int = UPLOAD_CHUNK_SIZE,
    on_progress: Callable[[int, int], None] | None = None,
) -> AsyncIterator[bytes]:
    """Stream a file as an async byte iterator, reporting progress."""
    total = os.path.getsize(path)
    sent = 0
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            sent += len(chunk)
            if on_progress is not None:
                on_progress(sent, total)
            yield chunk


class HttpClient:
    """Thin async wrapper over ``httpx.AsyncClient``.

    Every verb returns only the decoded response body. Transport failures
    and transient server responses raise NetworkError and are retried under
    the client's RetryPolicy; other HTTP errors propagate as
    ``httpx.HTTPStatusError``.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger or get_logger("http")
        self._sleep = sleep
        self._cancel_token = cancel_token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={**DEFAULT_HEADERS, **(headers or {})},
            transport=transport,
            event_hooks={
                "request": [self._log_request],
                "response": [self._log_response],
            },
        )

    @classmethod
    def with_bearer_token(cls, token: str, **kwargs: Any) -> "HttpClient":
        """Create a client that sends ``Authorization: Bearer <token>``."""
        headers = {**kwargs.pop("headers", {}), "Authorization": f"Bearer {token}"}
        return cls(headers=headers, **kwargs)

    @classmethod
    def with_api_key(cls, api_key: str, header_name: str = "X-API-Key", **kwargs: Any) -> "HttpClient":
        """Create a client that sends an API key header."""
        headers = {**kwargs.pop("headers", {}), header_name: api_key}
        return cls(headers=headers, **kwargs)

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- logging hooks -------------------------------------------------------

    async def _log_request(self, request: httpx.Request) -> None:
        self.logger.debug(
            "http.request",
            method=request.method,
            url=str(request.url),
            headers=sanitize_headers(request.headers),
        )

    async def _log_response(self, response: httpx.Response) -> None:
        content_length = response.headers.get("content-length")
        self.logger.debug(
            "http.response",
            method=response.request.method,
            url=str(response.request.url),
            status_code=response.status_code,
            headers=sanitize_headers(response.headers),
            size=format_file_size(int(content_length)) if content_length else "unknown",
        )

    # -- verbs ---------------------------------------------------------------

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, json: Any = None, data: Mapping[str, Any] | None = None, **kwargs: Any) -> Any:
        return await self.request("POST", url, json=json, data=data, **kwargs)

    async def put(self, url: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", url, json=json, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", url, **kwargs)

    async def upload(self, url: str, file_path: str | os.PathLike[str], **kwargs: Any) -> Any:
        """POST ``file_path`` as a multipart ``file`` part."""
        return await self.upload_with_fields(url, file_path, {}, **kwargs)

    async def upload_with_fields(
        self,
        url: str,
        file_path: str | os.PathLike[str],
        fields: Mapping[str, str],
        **kwargs: Any,
    ) -> Any:
        """POST ``file_path`` as multipart, preceded by plain form ``fields``."""
        path = Path(file_path)

        async def send() -> httpx.Response:
            with path.open("rb") as f:
                return await self._client.request(
                    "POST",
                    url,
                    data=dict(fields),
                    files={"file": (path.name, f, "application/octet-stream")},
                    **kwargs,
                )

        return await self._execute(send)

    async def send_file(
        self,
        method: str,
        url: str,
        file_path: str | os.PathLike[str],
        content_type: str = "application/octet-stream",
        on_progress: Callable[[int, int], None] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Stream ``file_path`` as the raw request body; reopened on each attempt."""
        headers = {
            **kwargs.pop("headers", {}),
            "Content-Type": content_type,
            "Content-Length": str(os.path.getsize(file_path)),
        }

        def send() -> Awaitable[httpx.Response]:
            return self._client.request(
                method,
                url,
                content=iter_file(file_path, on_progress=on_progress),
                headers=headers,
                **kwargs,
            )

        return await self._execute(send)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        def send() -> Awaitable[httpx.Response]:
            return self._client.request(method, url, json=json, data=data, **kwargs)

        return await self._execute(send)

    # -- execution -----------------------------------------------------------

    async def _execute(self, send: Callable[[], Awaitable[httpx.Response]]) -> Any:
        async def attempt() -> Any:
            try:
                response = await send()
            except httpx.TransportError as e:
                self.logger.error("http.request_failed", error_type=type(e).__name__, error=str(e))
                raise NetworkError(
                    f"network error: {type(e).__name__}: {e}",
                    details={"url": str(e.request.url) if _has_request(e) else None},
                ) from e

            if response.is_error:
                self.logger.error(
                    "http.response_error",
                    method=response.request.method,
                    url=str(response.request.url),
                    status_code=response.status_code,
                    reason=response.reason_phrase,
                )
                if is_retryable_response(response):
                    raise NetworkError(
                        f"HTTP {response.status_code} {response.reason_phrase} "
                        f"from {response.request.url}",
                        details={"status_code": response.status_code},
                    )
                response.raise_for_status()

            return decode_body(response)

        def on_retry(attempt_no: int, delay: float, error: BaseException) -> None:
            self.logger.warning(
                "http.retrying",
                attempt=attempt_no,
                max_attempts=self.retry_policy.max_attempts,
                delay_seconds=delay,
                error=str(error),
            )

        return await with_retry(
            attempt,
            self.retry_policy,
            sleep=self._sleep,
            cancel_token=self._cancel_token,
            on_retry=on_retry,
        )


def _has_request(error: httpx.TransportError) -> bool:
    try:
        error.request
    except RuntimeError:
        return False
    return True


def http_status(error: BaseException) -> int | None:
    """Status code carried by ``error``, if it came from an HTTP response."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, NetworkError):
        return error.details.get("status_code")
    return None


def describe_http_error(error: BaseException) -> str:
    """Human-readable summary of a failed call, including the store's own message.

    Understands Google (``{"error": {"message": ...}}``), OAuth
    (``{"error": ..., "error_description": ...}``) and App Store Connect
    (``{"errors": [{"detail": ...}]}``) error bodies.
    """
    if not isinstance(error, httpx.HTTPStatusError):
        return getattr(error, "message", None) or str(error) or type(error).__name__

    response = error.response
    detail = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        google_error = body.get("error")
        if isinstance(google_error, dict):
            detail = google_error.get("message")
        elif isinstance(google_error, str):
            detail = body.get("error_description") or google_error
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            detail = errors[0].get("detail") or errors[0].get("title")

    summary = f"HTTP {response.status_code} {response.reason_phrase}".rstrip()
    return f"{summary}: {detail}" if detail else summary
