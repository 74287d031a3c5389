"""
Auth Client Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite schema and restores the auth state from the previous
run.  Every subsystem is wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import atexit
import sys
from pathlib import Path

from authclient.config import get_config
from authclient.database import DatabaseManager
from authclient.logger import StructuredLogger, get_logger
from authclient.models.session_models import AuthUiState
from authclient.services import create_services


async def run() -> AuthUiState:
    """Wire dependencies, restore the session and report the derived state."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting auth client...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (local SQLite for session persistence)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        sqlite_path=Path(config.SESSION_DB_PATH),
        logger=StructuredLogger(name="database"),
    )

    # DatabaseManager.close() is idempotent; this covers unclean exits.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. Schema (app_settings table, idempotent)
    # ------------------------------------------------------------------
    db.initialize_schema()

    # ------------------------------------------------------------------
    # 4. Service Container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(config=config, db=db)
    machine = services["auth_state_machine"]
    transport = services["transport"]

    # ------------------------------------------------------------------
    # 5. Cold start: re-derive state from the Session Store
    # ------------------------------------------------------------------
    try:
        state = await machine.check_auth_state()
        logger.info(
            "Session restored: stage=%s, authenticated=%s, pending=%s.",
            state.stage,
            state.is_authenticated,
            state.pending_verification_email is not None,
            extra={"event": "STARTUP_STATE"},
        )
        return state
    finally:
        await transport.aclose()
        db.close()
        logger.info("Auth client shut down.")


def main() -> None:
    """Application entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n")
        sys.exit(1)
