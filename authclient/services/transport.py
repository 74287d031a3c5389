"""
HTTP Transport Layer.

Executes one logical HTTP call against the auth API:

- an overall deadline per call (``asyncio.timeout``); exceeding it
  cancels the in-flight attempt and raises ``TransportError(TIMEOUT)``;
- retries of transient I/O failures through ``tenacity`` with a
  non-blocking ``2^n * base`` backoff (2 s, 4 s with the defaults);
- no retry for failures a retry cannot fix within the deadline:
  connection establishment / name resolution (``CONNECTION_UNAVAILABLE``)
  and cancellation (``CANCELLED`` or a propagated
  ``asyncio.CancelledError``);
- one structured log line per request/response pair.

HTTP error statuses are *not* transport failures: a 4xx/5xx response is
returned to the caller, which owns status interpretation.
"""

from __future__ import annotations

import asyncio
import socket
import time
from types import TracebackType
from typing import Any, Awaitable, Callable, Optional, Type

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from authclient.config import AppConfig
from authclient.logger import StructuredLogger
from authclient.models.enums import ErrorKind

SleepFn = Callable[[float], Awaitable[None]]

_DNS_FAILURE_MARKERS: tuple[str, ...] = (
    "unable to resolve host",
    "no address associated with hostname",
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "getaddrinfo failed",
)


# ---------------------------------------------------------------------------
# Request / response / error
# ---------------------------------------------------------------------------

class HttpRequest(BaseModel):
    """One logical call.  ``path`` is relative to the configured base URL."""

    method: str = "GET"
    path: str
    json_body: Optional[dict[str, Any]] = None
    headers: dict[str, str] = Field(default_factory=dict)


class HttpResponse(BaseModel):
    """Final response of a call, after retries."""

    status_code: int
    content: bytes = b""
    elapsed_ms: int = 0
    attempts: int = 1

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class TransportError(Exception):
    """A call that produced no HTTP response.

    Attributes
    ----------
    kind:
        ``TIMEOUT``, ``CONNECTION_UNAVAILABLE``, ``CANCELLED`` or
        ``IO_ERROR``.
    attempts:
        Number of attempts started before giving up.
    """

    def __init__(self, kind: ErrorKind, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.kind: ErrorKind = kind
        self.message: str = message
        self.attempts: int = attempts

    def __repr__(self) -> str:
        return f"TransportError(kind={self.kind!s}, attempts={self.attempts}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

def is_connection_unavailable(exc: BaseException) -> bool:
    """``True`` for host-unresolvable / connection-refused failures."""
    if isinstance(exc, (httpx.ConnectError, socket.gaierror, ConnectionRefusedError)):
        return True
    if isinstance(exc, (httpx.TransportError, OSError)):
        text = str(exc).lower()
        return any(marker in text for marker in _DNS_FAILURE_MARKERS)
    return False


def is_retryable(exc: BaseException) -> bool:
    """Retry policy: transient I/O only.

    Never retried: cancellation, connection establishment / DNS
    failures, requests httpx refuses to send (bad scheme, closed
    client) and anything that is not an I/O error.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if is_connection_unavailable(exc):
        return False
    if isinstance(exc, httpx.UnsupportedProtocol):
        return False
    return isinstance(exc, (httpx.TransportError, OSError))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class HttpTransport:
    """Deadline + retry wrapper around one ``httpx.AsyncClient``.

    Parameters
    ----------
    config:
        Application settings (base URL, timeouts, retry policy).
    logger:
        Structured logger; receives one ``HTTP_EXCHANGE`` line per
        attempt and one ``HTTP_RETRY`` line per backoff.
    transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in tests.
    sleep:
        Coroutine used for backoff delays.  Defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        config: AppConfig,
        logger: StructuredLogger,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._config: AppConfig = config
        self._logger: StructuredLogger = logger
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._max_attempts: int = max(1, config.RETRY_MAX_ATTEMPTS)
        self._backoff_base_s: float = config.RETRY_BACKOFF_BASE_MS / 1000.0
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config.API_BASE_URL,
            timeout=httpx.Timeout(
                connect=config.CONNECT_TIMEOUT_S,
                read=config.READ_TIMEOUT_S,
                write=config.WRITE_TIMEOUT_S,
                pool=config.CONNECT_TIMEOUT_S,
            ),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    def backoff_schedule(self) -> list[float]:
        """Delays (seconds) slept between attempts, in order."""
        return [
            self._backoff_base_s * (2 ** attempt)
            for attempt in range(1, self._max_attempts)
        ]

    async def execute(
        self,
        request: HttpRequest,
        deadline_s: Optional[float] = None,
    ) -> HttpResponse:
        """Run *request* to completion within *deadline_s* seconds.

        Raises
        ------
        TransportError
            ``TIMEOUT`` when the deadline expires, ``CONNECTION_UNAVAILABLE``
            for DNS / connect failures, ``CANCELLED`` when the attempt was
            cancelled underneath us, ``IO_ERROR`` once retries are
            exhausted or for a non-retryable send failure.
        asyncio.CancelledError
            When the calling task itself is being cancelled.
        """
        deadline: float = (
            deadline_s if deadline_s is not None else self._config.DEFAULT_DEADLINE_S
        )
        attempts: list[int] = [0]
        started = time.monotonic()

        try:
            async with asyncio.timeout(deadline):
                return await self._execute_with_retry(request, attempts)
        except TimeoutError as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._logger.error(
                "%s %s exceeded its %.0fs deadline after %dms (%d attempt(s)).",
                request.method, request.path, deadline, elapsed_ms, attempts[0],
                extra={"event": "HTTP_DEADLINE", "elapsed_ms": elapsed_ms},
            )
            raise TransportError(
                ErrorKind.TIMEOUT,
                f"No response within {deadline:.0f} seconds.",
                attempts=attempts[0],
            ) from exc
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The caller asked us to stop; honour it.
                raise
            self._logger.warning(
                "%s %s was cancelled (no retry).", request.method, request.path,
                extra={"event": "HTTP_CANCELLED"},
            )
            raise TransportError(
                ErrorKind.CANCELLED,
                "The request was cancelled.",
                attempts=attempts[0],
            ) from None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _execute_with_retry(
        self,
        request: HttpRequest,
        attempts: list[int],
    ) -> HttpResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=2 * self._backoff_base_s),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts[0] = attempt.retry_state.attempt_number
                    response = await self._send_once(request)
                    return response.model_copy(update={"attempts": attempts[0]})
        except httpx.UnsupportedProtocol as exc:
            raise TransportError(
                ErrorKind.IO_ERROR, f"Unsupported URL: {exc}", attempts=attempts[0],
            ) from exc
        except Exception as exc:
            if is_connection_unavailable(exc):
                self._logger.error(
                    "DNS/connection error (no retry): %s", exc,
                    extra={"event": "HTTP_UNREACHABLE"},
                )
                raise TransportError(
                    ErrorKind.CONNECTION_UNAVAILABLE,
                    f"Unable to reach the server: {exc}",
                    attempts=attempts[0],
                ) from exc
            if isinstance(exc, RuntimeError) and "client has been closed" in str(exc):
                raise TransportError(
                    ErrorKind.CANCELLED,
                    "The request was cancelled because the client was closed.",
                    attempts=attempts[0],
                ) from exc
            if is_retryable(exc):
                self._logger.error(
                    "Request failed after %d attempt(s): %s", attempts[0], exc,
                    extra={"event": "HTTP_GAVE_UP", "error_type": type(exc).__name__},
                )
            raise TransportError(
                ErrorKind.IO_ERROR,
                f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                attempts=attempts[0],
            ) from exc
        raise TransportError(ErrorKind.IO_ERROR, "No attempt was made.", attempts=0)

    async def _send_once(self, request: HttpRequest) -> HttpResponse:
        started = time.monotonic()
        try:
            response = await self._client.request(
                request.method,
                request.path,
                json=request.json_body,
                headers=request.headers or None,
            )
        except BaseException as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._logger.warning(
                "%s %s failed after %dms: %s: %s",
                request.method, request.path, elapsed_ms, type(exc).__name__, exc,
                extra={
                    "event": "HTTP_EXCHANGE",
                    "method": request.method,
                    "path": request.path,
                    "elapsed_ms": elapsed_ms,
                    "error_type": type(exc).__name__,
                },
            )
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        content: bytes = response.content
        self._logger.info(
            "%s %s -> %d in %dms (%d bytes)",
            request.method, str(response.request.url), response.status_code,
            elapsed_ms, len(content),
            extra={
                "event": "HTTP_EXCHANGE",
                "method": request.method,
                "url": str(response.request.url),
                "status": response.status_code,
                "elapsed_ms": elapsed_ms,
                "body_bytes": len(content),
            },
        )
        if self._config.LOG_HTTP_BODIES:
            self._logger.debug("Response body: %s", response.text)
        if not content:
            self._logger.debug("Response body is empty.")

        return HttpResponse(
            status_code=response.status_code,
            content=content,
            elapsed_ms=elapsed_ms,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._logger.warning(
            "Request failed (attempt %d/%d): %s. Retrying in %dms...",
            retry_state.attempt_number, self._max_attempts, exc, int(delay * 1000),
            extra={"event": "HTTP_RETRY", "delay_ms": int(delay * 1000)},
        )
