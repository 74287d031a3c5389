"""
Tests for the HTTP transport: retry policy, deadline and cancellation
handling, and exchange logging.
"""
import asyncio
import json

import httpx
import pytest

from authclient.models.enums import ErrorKind
from authclient.services.transport import (
    HttpRequest,
    HttpTransport,
    TransportError,
    is_connection_unavailable,
    is_retryable,
)
from conftest import Delayed, ScriptedBackend, make_config


def _login_request() -> HttpRequest:
    return HttpRequest(
        method="POST",
        path="auth/login",
        json_body={"email": "u@x.com", "password": "pw"},
    )


class TestRetryPolicy:
    """Which failures are retried and how often."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 2])
    async def test_transient_failures_then_success(self, transport, backend, sleeper, failures):
        steps = [httpx.ReadError("connection reset by peer")] * failures
        backend.script(*steps, (200, {"ok": True}))

        response = await transport.execute(_login_request())

        assert response.status_code == 200
        assert response.attempts == failures + 1
        assert backend.calls == failures + 1
        assert len(sleeper.delays) == failures

    @pytest.mark.asyncio
    async def test_backoff_schedule_is_exponential(self, transport, backend, sleeper):
        backend.script(httpx.ReadError("reset"), httpx.WriteError("broken pipe"), (200, {}))

        await transport.execute(_login_request())

        assert sleeper.delays == [2.0, 4.0]
        assert transport.backoff_schedule() == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_last_error(self, transport, backend, sleeper):
        backend.script(
            httpx.ReadError("first"),
            httpx.ReadError("second"),
            httpx.ReadError("third"),
        )

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request())

        assert excinfo.value.kind == ErrorKind.IO_ERROR
        assert excinfo.value.attempts == 3
        assert "third" in excinfo.value.message
        assert backend.calls == 3
        assert sum(sleeper.delays) == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_per_io_timeout_is_retried(self, transport, backend):
        backend.script(httpx.ReadTimeout("read timed out"), (200, {}))

        response = await transport.execute(_login_request())

        assert response.attempts == 2

    @pytest.mark.asyncio
    async def test_connection_failure_is_not_retried(self, transport, backend, sleeper):
        backend.script(httpx.ConnectError("[Errno -2] Name or service not known"))

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request())

        assert excinfo.value.kind == ErrorKind.CONNECTION_UNAVAILABLE
        assert excinfo.value.attempts == 1
        assert backend.calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_dns_failure_wrapped_as_os_error_is_not_retried(self, transport, backend):
        backend.script(OSError("Unable to resolve host \"api.test\""))

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request())

        assert excinfo.value.kind == ErrorKind.CONNECTION_UNAVAILABLE
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_attempt_is_not_retried(self, transport, backend, sleeper):
        backend.script(asyncio.CancelledError())

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request())

        assert excinfo.value.kind == ErrorKind.CANCELLED
        assert excinfo.value.attempts == 1
        assert backend.calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_attempt_limit_does_not_change_single_attempt_kinds(self, logger, sleeper):
        backend = ScriptedBackend(httpx.ConnectError("refused"))
        http = HttpTransport(
            config=make_config(RETRY_MAX_ATTEMPTS=10),
            logger=logger,
            transport=httpx.MockTransport(backend),
            sleep=sleeper,
        )
        async with http:
            with pytest.raises(TransportError):
                await http.execute(_login_request())

        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_http_error_status_is_returned_not_raised(self, transport, backend):
        backend.script((401, {"message": "Invalid credentials"}))

        response = await transport.execute(_login_request())

        assert response.status_code == 401
        assert not response.is_success
        assert response.attempts == 1
        assert json.loads(response.text) == {"message": "Invalid credentials"}

    @pytest.mark.asyncio
    async def test_closed_client_reports_cancelled(self, transport, backend):
        await transport.aclose()

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request())

        assert excinfo.value.kind == ErrorKind.CANCELLED
        assert backend.calls == 0


class TestDeadline:
    """Overall per-call deadline (scaled down from 90 s)."""

    @pytest.mark.asyncio
    async def test_response_before_deadline_succeeds(self, transport, backend):
        backend.script(Delayed(0.05, (200, {"token": "t"})))

        response = await transport.execute(_login_request(), deadline_s=0.5)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_response_after_deadline_times_out(self, transport, backend, sleeper):
        backend.script(Delayed(1.0, (200, {"token": "t"})))

        with pytest.raises(TransportError) as excinfo:
            await transport.execute(_login_request(), deadline_s=0.1)

        assert excinfo.value.kind == ErrorKind.TIMEOUT
        assert excinfo.value.attempts == 1
        assert backend.calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_deadline_covers_backoff_sleep(self, logger, backend):
        backend.script(httpx.ReadError("reset"))
        http = HttpTransport(
            config=make_config(RETRY_BACKOFF_BASE_MS=10_000),
            logger=logger,
            transport=httpx.MockTransport(backend),
        )
        async with http:
            with pytest.raises(TransportError) as excinfo:
                await http.execute(_login_request(), deadline_s=0.1)

        assert excinfo.value.kind == ErrorKind.TIMEOUT
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, transport, backend):
        backend.script(Delayed(5.0, (200, {})))

        task = asyncio.create_task(transport.execute(_login_request(), deadline_s=10))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert backend.calls == 1


class TestLogging:

    @pytest.mark.asyncio
    async def test_exchange_is_logged(self, transport, backend, log_stream):
        backend.script((201, {"message": "created"}))

        await transport.execute(_login_request())

        lines = [json.loads(line) for line in log_stream.getvalue().splitlines()]
        exchanges = [
            line for line in lines
            if line.get("extra", {}).get("event") == "HTTP_EXCHANGE"
        ]
        assert len(exchanges) == 1
        extra = exchanges[0]["extra"]
        assert extra["method"] == "POST"
        assert extra["url"] == "https://api.test/api/v1/auth/login"
        assert extra["status"] == "201"
        assert int(extra["body_bytes"]) > 0
        assert "elapsed_ms" in extra

    @pytest.mark.asyncio
    async def test_retries_are_logged(self, transport, backend, log_stream):
        backend.script(httpx.ReadError("reset"), (200, {}))

        await transport.execute(_login_request())

        assert "HTTP_RETRY" in log_stream.getvalue()

    @pytest.mark.asyncio
    async def test_password_is_not_logged(self, transport, backend, log_stream):
        await transport.execute(_login_request())

        assert "\"pw\"" not in log_stream.getvalue()


class TestClassification:

    def test_connect_error_is_connection_unavailable(self):
        assert is_connection_unavailable(httpx.ConnectError("refused"))
        assert not is_retryable(httpx.ConnectError("refused"))

    def test_read_errors_are_retryable(self):
        assert is_retryable(httpx.ReadError("reset"))
        assert is_retryable(httpx.RemoteProtocolError("peer closed"))
        assert is_retryable(ConnectionResetError("reset"))

    def test_cancellation_and_bugs_are_not_retryable(self):
        assert not is_retryable(asyncio.CancelledError())
        assert not is_retryable(ValueError("bug"))
        assert not is_retryable(httpx.UnsupportedProtocol("ftp"))
