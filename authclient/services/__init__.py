"""
Auth Services Package.

Contains the transport, persistence and auth-flow services.

The ``create_services()`` factory wires every service together,
returning a typed dict that the application layer (UI / entry point) can
consume without knowing the internal dependency graph.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, TypedDict

import httpx

from authclient.config import AppConfig
from authclient.database import DatabaseManager
from authclient.logger import StructuredLogger
from authclient.services.auth_client import AuthClient
from authclient.services.auth_state_machine import AuthStateMachine
from authclient.services.kv_store import (
    KeyValueStore,
    MemoryKeyValueStore,
    SQLiteKeyValueStore,
)
from authclient.services.session_store import SessionStore
from authclient.services.token_cipher import TokenCipher
from authclient.services.transport import HttpTransport, SleepFn
from authclient.state import AuthStateContainer


class ServiceContainer(TypedDict, total=False):
    """Typed container for all auth services.

    ``token_cipher`` is ``None`` when ``ENCRYPT_TOKENS`` is disabled.
    """

    # --- Infrastructure ---
    kv_store: KeyValueStore
    token_cipher: Optional[TokenCipher]
    session_store: SessionStore
    transport: HttpTransport

    # --- Auth ---
    auth_client: AuthClient
    state: AuthStateContainer
    auth_state_machine: AuthStateMachine


def _make_logger(name: str, config: AppConfig) -> StructuredLogger:
    """Logger driven by *config* rather than the cached global settings."""
    return StructuredLogger(
        name=name,
        level=config.LOG_LEVEL,
        log_file=config.LOG_FILE,
        max_bytes=config.LOG_MAX_BYTES,
        backup_count=config.LOG_BACKUP_COUNT,
    )


def create_services(
    config: AppConfig,
    db: Optional[DatabaseManager] = None,
    kv_store: Optional[KeyValueStore] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[SleepFn] = None,
) -> ServiceContainer:
    """
    Wire all services together.

    This is the single composition root for the service layer.  The
    entry point calls it once at startup; tests call it with a memory
    store and an ``httpx.MockTransport``.

    Args:
        config: Application configuration.
        db: Initialised DatabaseManager.  Backs the key-value store when
            *kv_store* is not given.
        kv_store: Explicit key-value store.  Takes precedence over *db*;
            with neither, an in-memory store is used (nothing survives
            the process).
        http_transport: Optional httpx transport override.
        sleep: Optional backoff sleep override.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = _make_logger("services", config)

    # ------------------------------------------------------------------
    # 1. Persistence
    # ------------------------------------------------------------------
    store: KeyValueStore
    if kv_store is not None:
        store = kv_store
    elif db is not None:
        store = SQLiteKeyValueStore(db=db, logger=logger)
    else:
        logger.warning("No database configured; sessions will not survive a restart.")
        store = MemoryKeyValueStore()

    token_cipher: Optional[TokenCipher] = None
    if config.ENCRYPT_TOKENS:
        token_cipher = TokenCipher(
            salt_path=Path(config.TOKEN_SALT_PATH).expanduser(),
            logger=logger,
            iterations=config.TOKEN_KDF_ITERATIONS,
        )

    session_store = SessionStore(kv=store, logger=logger, cipher=token_cipher)

    # ------------------------------------------------------------------
    # 2. Transport
    # ------------------------------------------------------------------
    transport = HttpTransport(
        config=config,
        logger=_make_logger("http", config),
        transport=http_transport,
        sleep=sleep,
    )

    # ------------------------------------------------------------------
    # 3. Auth client and state machine
    # ------------------------------------------------------------------
    auth_client = AuthClient(
        transport=transport,
        session_store=session_store,
        config=config,
        logger=logger,
    )
    state = AuthStateContainer(logger=logger)
    auth_state_machine = AuthStateMachine(
        client=auth_client,
        session_store=session_store,
        logger=logger,
        container=state,
    )

    return ServiceContainer(
        kv_store=store,
        token_cipher=token_cipher,
        session_store=session_store,
        transport=transport,
        auth_client=auth_client,
        state=state,
        auth_state_machine=auth_state_machine,
    )
