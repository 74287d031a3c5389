"""
Shared fixtures for the auth client tests.

Provides an isolated config, a quiet in-memory logger, an in-memory
key-value store, a recording backoff sleep and a scripted
``httpx.MockTransport`` so no test touches the network or the disk
beyond ``tmp_path``.
"""
import asyncio
import io
import json
import os
import uuid
from typing import Any, Union

import httpx
import pytest
import pytest_asyncio

from authclient.config import AppConfig
from authclient.logger import StructuredLogger
from authclient.services.auth_client import AuthClient
from authclient.services.auth_state_machine import AuthStateMachine
from authclient.services.kv_store import MemoryKeyValueStore
from authclient.services.session_store import SessionStore
from authclient.services.transport import HttpTransport

# Loggers built through get_logger() read the cached config; keep them off disk.
os.environ.setdefault("LOG_FILE", "")


BASE_URL = "https://api.test/api/v1/"


class SleepRecorder:
    """Backoff sleep that returns immediately and remembers each delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Delayed:
    """Scripted step: wait *seconds* (real time) and then answer with *then*."""

    def __init__(self, seconds: float, then: Any) -> None:
        self.seconds = seconds
        self.then = then


Step = Union[BaseException, tuple, Delayed]


class ScriptedBackend:
    """``httpx.MockTransport`` handler replaying a script of outcomes.

    Each step is one of:
        - an exception instance, raised for that attempt;
        - ``(status, body)`` where body is a dict/list (sent as JSON),
          a str or bytes (sent verbatim) or ``None`` (empty body);
        - ``Delayed(seconds, step)``.

    The last step repeats once the script is exhausted.
    """

    def __init__(self, *steps: Step) -> None:
        self.steps: list[Step] = list(steps) or [(200, {})]
        self.requests: list[httpx.Request] = []

    def script(self, *steps: Step) -> None:
        """Replace the remaining script."""
        self.steps = list(steps)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def bodies(self) -> list[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        return await self._play(step)

    async def _play(self, step: Step) -> httpx.Response:
        if isinstance(step, Delayed):
            await asyncio.sleep(step.seconds)
            return await self._play(step.then)
        if isinstance(step, BaseException):
            raise step
        status, body = step
        if body is None:
            return httpx.Response(status)
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, content=body)


def make_config(**overrides: Any) -> AppConfig:
    values: dict[str, Any] = {
        "API_BASE_URL": BASE_URL,
        "LOG_FILE": "",
        "LOG_LEVEL": "DEBUG",
        "ENCRYPT_TOKENS": False,
        "TOKEN_KDF_ITERATIONS": 1_000,
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def config() -> AppConfig:
    return make_config()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> StructuredLogger:
    # Unique name: handlers are attached once per logger name.
    return StructuredLogger(
        name=f"tests.{uuid.uuid4().hex}",
        level="DEBUG",
        stream=log_stream,
        log_file="",
    )


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def session_store(kv: MemoryKeyValueStore, logger: StructuredLogger) -> SessionStore:
    return SessionStore(kv=kv, logger=logger)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def backend() -> ScriptedBackend:
    """Default script: every call answers 200 with an empty JSON object."""
    return ScriptedBackend((200, {}))


@pytest_asyncio.fixture
async def transport(config, logger, backend, sleeper):
    http = HttpTransport(
        config=config,
        logger=logger,
        transport=httpx.MockTransport(backend),
        sleep=sleeper,
    )
    yield http
    await http.aclose()


@pytest.fixture
def client(transport, session_store, config, logger) -> AuthClient:
    return AuthClient(
        transport=transport,
        session_store=session_store,
        config=config,
        logger=logger,
    )


@pytest.fixture
def machine(client, session_store, logger) -> AuthStateMachine:
    return AuthStateMachine(client=client, session_store=session_store, logger=logger)
