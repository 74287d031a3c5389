"""
Session Store.

Durable persistence for the four auth records:

=============================  ==========================================
Key                            Value
=============================  ==========================================
``auth_token``                 session token (AES-GCM sealed when a
                               ``TokenCipher`` is configured)
``remember_me``                ``"true"`` / ``"false"``
``pending_verification_email`` ``PendingVerification`` JSON
``forgot_password_context``    ``ForgotPasswordContext`` JSON
=============================  ==========================================

Reads never raise: an absent key, a corrupt JSON blob or an
undecryptable token all come back as the empty value (``None`` /
``False``) and are logged.  That keeps the store safe to call at
process start, before anything else is initialised.  Writes propagate
storage errors to the caller.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError

from authclient.logger import StructuredLogger
from authclient.models.session_models import (
    ForgotPasswordContext,
    PendingVerification,
    Session,
)
from authclient.services.kv_store import KeyValueStore
from authclient.services.token_cipher import TokenCipher
from authclient.utils.general import mask_email

KEY_AUTH_TOKEN: str = "auth_token"
KEY_REMEMBER_ME: str = "remember_me"
KEY_PENDING_VERIFICATION: str = "pending_verification_email"
KEY_FORGOT_PASSWORD_CONTEXT: str = "forgot_password_context"


class SessionStore:
    """Async, per-key atomic persistence for session and flow context.

    Parameters
    ----------
    kv:
        Backing key-value store.
    logger:
        Structured logger instance.
    cipher:
        Optional token cipher.  When ``None`` the token is stored as-is.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        logger: StructuredLogger,
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        self._kv: KeyValueStore = kv
        self._logger: StructuredLogger = logger
        self._cipher: Optional[TokenCipher] = cipher

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    async def get_token(self) -> Optional[str]:
        raw = await self._safe_get(KEY_AUTH_TOKEN)
        if not raw:
            return None
        if self._cipher is None:
            return raw
        try:
            # PBKDF2 on first use is CPU-heavy; keep it off the event loop.
            return await asyncio.to_thread(self._cipher.decrypt, raw)
        except (ValueError, OSError) as exc:
            self._logger.warning(
                "Stored token could not be decrypted; treating as absent: %s", exc,
            )
            return None

    async def set_token(self, token: str) -> None:
        value = token
        if self._cipher is not None:
            value = await asyncio.to_thread(self._cipher.encrypt, token)
        await self._kv.set(KEY_AUTH_TOKEN, value)

    async def clear_token(self) -> None:
        await self._kv.remove(KEY_AUTH_TOKEN)

    # ------------------------------------------------------------------
    # Remember me
    # ------------------------------------------------------------------

    async def get_remember_me(self) -> bool:
        raw = await self._safe_get(KEY_REMEMBER_ME)
        return raw == "true"

    async def set_remember_me(self, remember_me: bool) -> None:
        await self._kv.set(KEY_REMEMBER_ME, "true" if remember_me else "false")

    async def clear_remember_me(self) -> None:
        await self._kv.remove(KEY_REMEMBER_ME)

    # ------------------------------------------------------------------
    # Pending verification
    # ------------------------------------------------------------------

    async def get_pending_verification(self) -> Optional[PendingVerification]:
        raw = await self._safe_get(KEY_PENDING_VERIFICATION)
        if not raw:
            return None
        try:
            record = PendingVerification.model_validate_json(raw)
        except ValidationError as exc:
            self._logger.warning(
                "Discarding malformed pending verification record: %s", exc,
            )
            return None
        return record if record.email.strip() else None

    async def get_pending_verification_email(self) -> Optional[str]:
        record = await self.get_pending_verification()
        return record.email if record is not None else None

    async def set_pending_verification_email(
        self,
        email: str,
        for_password_reset: bool = False,
    ) -> None:
        await self._kv.set(
            KEY_PENDING_VERIFICATION,
            PendingVerification(
                email=email, for_password_reset=for_password_reset,
            ).model_dump_json(),
        )
        self._logger.debug("Pending verification saved for %s.", mask_email(email))

    async def clear_pending_verification_email(self) -> None:
        await self._kv.remove(KEY_PENDING_VERIFICATION)

    # ------------------------------------------------------------------
    # Forgot-password context
    # ------------------------------------------------------------------

    async def get_forgot_password_context(self) -> Optional[ForgotPasswordContext]:
        raw = await self._safe_get(KEY_FORGOT_PASSWORD_CONTEXT)
        if not raw:
            return None
        try:
            context = ForgotPasswordContext.model_validate_json(raw)
        except ValidationError as exc:
            self._logger.warning(
                "Discarding malformed forgot-password context: %s", exc,
            )
            return None
        if not context.email or not context.code:
            return None
        return context

    async def set_forgot_password_context(self, email: str, code: str) -> None:
        await self._kv.set(
            KEY_FORGOT_PASSWORD_CONTEXT,
            ForgotPasswordContext(email=email, code=code).model_dump_json(),
        )

    async def clear_forgot_password_context(self) -> None:
        await self._kv.remove(KEY_FORGOT_PASSWORD_CONTEXT)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def load_session(self) -> Session:
        """Read token and remember-me together (two independent reads)."""
        return Session(
            token=await self.get_token(),
            remember_me=await self.get_remember_me(),
        )

    async def save_session(self, token: str, remember_me: bool) -> None:
        """Persist a freshly issued token together with the remember-me flag."""
        await self.set_token(token)
        await self.set_remember_me(remember_me)

    async def clear_session(self) -> None:
        """Forget the token and the remember-me flag."""
        await self.clear_token()
        await self.clear_remember_me()

    async def clear_flow_context(self) -> None:
        """Forget any pending verification and forgot-password context."""
        await self.clear_pending_verification_email()
        await self.clear_forgot_password_context()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _safe_get(self, key: str) -> Optional[str]:
        try:
            return await self._kv.get(key)
        except Exception as exc:
            self._logger.warning("Failed to read %s from local store: %s", key, exc)
            return None
