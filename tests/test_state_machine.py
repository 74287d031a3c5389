"""
Tests for the auth state machine: cold start, both multi-step flows,
resumability across restarts and the in-flight guard.
"""
import asyncio

import pytest

from authclient.models.auth_models import (
    RESET_CONTEXT_MISSING_MESSAGE,
    RegistrationData,
)
from authclient.models.enums import AuthStage, ErrorKind
from authclient.services.auth_client import AuthClient
from authclient.services.auth_state_machine import (
    ALREADY_VERIFIED_MESSAGE,
    AuthStateMachine,
)
from authclient.services.session_store import SessionStore
from conftest import Delayed


def _registration() -> RegistrationData:
    return RegistrationData(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        phone_number="21612345",
        birth_date="1990-12-10",
        role="participant",
        password="s3cret!",
    )


def _restart(client: AuthClient, kv, logger) -> AuthStateMachine:
    """A new machine over the same persisted key-value store."""
    store = SessionStore(kv=kv, logger=logger)
    return AuthStateMachine(client=client, session_store=store, logger=logger)


class TestColdStart:

    @pytest.mark.asyncio
    async def test_empty_store_is_unauthenticated(self, machine):
        state = await machine.check_auth_state()

        assert state.stage == AuthStage.UNAUTHENTICATED
        assert not state.is_authenticated

    @pytest.mark.asyncio
    async def test_remember_me_with_token_is_authenticated(self, machine, session_store):
        await session_store.save_session("tok", remember_me=True)

        state = await machine.check_auth_state()

        assert state.stage == AuthStage.AUTHENTICATED
        assert state.is_authenticated

    @pytest.mark.asyncio
    async def test_token_without_remember_me_is_unauthenticated(self, machine, session_store):
        await session_store.set_token("tok")

        state = await machine.check_auth_state()

        assert state.stage == AuthStage.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_remember_me_without_token_is_repaired(self, machine, session_store, log_stream):
        await session_store.set_remember_me(True)

        state = await machine.check_auth_state()

        assert state.stage == AuthStage.UNAUTHENTICATED
        assert await session_store.get_remember_me() is False
        assert "SESSION_REPAIRED" in log_stream.getvalue()

    @pytest.mark.asyncio
    async def test_pending_verification_resumes(self, machine, session_store):
        await session_store.set_pending_verification_email("ada@example.com")

        state = await machine.check_auth_state()

        assert state.stage == AuthStage.AWAITING_VERIFICATION
        assert state.pending_verification_email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_reset_context_resumes(self, machine, session_store):
        await session_store.set_pending_verification_email("ada@example.com", for_password_reset=True)
        await session_store.set_forgot_password_context("ada@example.com", "123456")

        state = await machine.check_auth_state()

        assert state.stage == AuthStage.AWAITING_PASSWORD_RESET
        assert state.forgot_password_context is not None
        assert state.forgot_password_context.code == "123456"


class TestRegistrationFlow:

    @pytest.mark.asyncio
    async def test_register_then_verify(self, machine, backend, session_store):
        backend.script(
            (201, {"user": {"_id": "u1", "email": "ada@example.com", "isVerified": False}}),
            (200, {"message": "Email verified"}),
        )

        result = await machine.register(_registration())

        assert result.success and result.requires_verification
        assert machine.state.stage == AuthStage.AWAITING_VERIFICATION
        assert machine.state.pending_verification_email == "ada@example.com"
        assert await session_store.get_pending_verification_email() == "ada@example.com"

        result = await machine.verify_email("123456")

        assert result.success
        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert machine.state.pending_verification_email is None
        assert machine.state.user is not None and machine.state.user.is_verified
        assert machine.state.info_message == "Email verified"
        assert await session_store.get_pending_verification_email() is None
        assert backend.bodies()[1] == {"code": "123456", "email": "ada@example.com"}

    @pytest.mark.asyncio
    async def test_unparseable_registration_body_awaits_verification(self, machine, backend):
        backend.script((201, "Created"))

        result = await machine.register(_registration())

        assert result.success
        assert machine.state.stage == AuthStage.AWAITING_VERIFICATION
        assert machine.state.error_message is None

    @pytest.mark.asyncio
    async def test_register_with_token_authenticates(self, machine, backend):
        backend.script((201, {"token": "tok", "user": {"_id": "u1"}}))

        await machine.register(_registration())

        assert machine.state.stage == AuthStage.AUTHENTICATED
        assert machine.state.is_authenticated

    @pytest.mark.asyncio
    async def test_verify_with_token_authenticates(self, machine, backend, session_store):
        await session_store.set_pending_verification_email("ada@example.com")
        backend.script((200, {"token": "tok-v"}))

        await machine.verify_email("123456")

        assert machine.state.stage == AuthStage.AUTHENTICATED
        assert machine.state.is_authenticated
        assert await session_store.get_token() == "tok-v"

    @pytest.mark.asyncio
    async def test_second_verify_is_a_no_op(self, machine, backend, session_store):
        await session_store.set_pending_verification_email("ada@example.com")
        backend.script((200, {"token": "tok-v"}))
        await machine.verify_email("123456")
        calls = backend.calls

        result = await machine.verify_email("123456")

        assert result.success
        assert result.message == ALREADY_VERIFIED_MESSAGE
        assert backend.calls == calls
        assert machine.state.stage == AuthStage.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_second_verify_without_user_record_is_a_no_op(self, machine, backend):
        backend.script((201, {"message": "ok"}), (200, {"message": "Email verified"}))
        await machine.register(_registration())
        await machine.verify_email("123456")
        calls = backend.calls

        result = await machine.verify_email("123456")

        assert result is not None and result.success
        assert result.message == ALREADY_VERIFIED_MESSAGE
        assert result.email == "ada@example.com"
        assert backend.calls == calls
        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert machine.state.error_message is None
        assert machine.state.pending_verification_email is None

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_stage_and_shows_error(self, machine, backend, session_store):
        await session_store.set_pending_verification_email("ada@example.com")
        await machine.check_auth_state()
        backend.script((400, {"message": "Invalid or expired code"}))

        result = await machine.verify_email("000000")

        assert result.error_kind == ErrorKind.SERVER_REJECTED
        assert machine.state.stage == AuthStage.AWAITING_VERIFICATION
        assert machine.state.error_message == "Invalid or expired code"
        assert not machine.state.is_loading
        assert await session_store.get_pending_verification_email() == "ada@example.com"

    @pytest.mark.asyncio
    async def test_verify_uses_persisted_email_after_restart(
        self, machine, client, backend, kv, logger,
    ):
        backend.script((201, {"message": "ok"}), (200, {}))
        await machine.register(_registration())

        restarted = _restart(client, kv, logger)
        assert await restarted.load_pending_verification_email() == "ada@example.com"
        assert restarted.state.stage == AuthStage.AWAITING_VERIFICATION

        await restarted.verify_email("123456")

        assert backend.bodies()[1]["email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_resend_uses_pending_email(self, machine, backend, session_store):
        await session_store.set_pending_verification_email("ada@example.com")
        await machine.check_auth_state()

        result = await machine.resend_verification_email()

        assert result.success
        assert backend.bodies()[0] == {"email": "ada@example.com"}
        assert machine.state.stage == AuthStage.AWAITING_VERIFICATION

    @pytest.mark.asyncio
    async def test_load_pending_email_when_none(self, machine):
        assert await machine.load_pending_verification_email() is None
        assert machine.state.stage == AuthStage.UNAUTHENTICATED


class TestPasswordResetFlow:

    @pytest.mark.asyncio
    async def test_full_flow(self, machine, backend, session_store):
        backend.script(
            (200, {"message": "Code sent to email"}),
            (200, {"message": "Code verified"}),
            (200, {"message": "Password changed successfully"}),
        )

        await machine.forgot_password("ada@example.com")
        assert machine.state.stage == AuthStage.AWAITING_RESET_CODE
        assert machine.state.pending_is_for_password_reset

        await machine.verify_forgot_password_code("123456")
        assert machine.state.stage == AuthStage.AWAITING_PASSWORD_RESET
        context = await session_store.get_forgot_password_context()
        assert context is not None and context.code == "123456"

        result = await machine.reset_password("new-pw", "new-pw")

        assert result.success
        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert machine.state.forgot_password_context is None
        assert await session_store.get_forgot_password_context() is None
        assert await session_store.get_pending_verification_email() is None
        assert backend.bodies()[2]["code"] == "123456"

    @pytest.mark.asyncio
    async def test_reset_resumes_after_restart(self, machine, client, backend, kv, logger):
        backend.script((200, {}), (200, {}), (200, {}))
        await machine.forgot_password("ada@example.com")
        await machine.verify_forgot_password_code("654321")

        restarted = _restart(client, kv, logger)
        state = await restarted.check_auth_state()
        assert state.stage == AuthStage.AWAITING_PASSWORD_RESET

        result = await restarted.reset_password("new-pw", "new-pw")

        assert result.success
        assert backend.bodies()[2]["email"] == "ada@example.com"
        assert backend.bodies()[2]["code"] == "654321"

    @pytest.mark.asyncio
    async def test_reset_signs_out_remembered_session(
        self, machine, client, backend, session_store, kv, logger,
    ):
        backend.script((200, {"token": "tok", "user": {"_id": "u1", "prenom": "Ada"}}))
        await machine.login("ada@example.com", "pw", remember_me=True)
        backend.script((200, {}))

        await machine.forgot_password("ada@example.com")
        await machine.verify_forgot_password_code("123456")
        result = await machine.reset_password("new-pw", "new-pw")

        assert result.success
        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert not machine.state.is_authenticated
        assert machine.state.user is None
        session = await session_store.load_session()
        assert session.token is None and session.remember_me is False

        restarted = _restart(client, kv, logger)
        state = await restarted.check_auth_state()

        assert state.stage == AuthStage.UNAUTHENTICATED
        assert not state.is_authenticated

    @pytest.mark.asyncio
    async def test_reset_without_context_makes_no_call(self, machine, backend):
        result = await machine.reset_password("new-pw", "new-pw")

        assert result.error_kind == ErrorKind.INVALID_INPUT
        assert result.error_message == RESET_CONTEXT_MISSING_MESSAGE
        assert machine.state.error_message == RESET_CONTEXT_MISSING_MESSAGE
        assert backend.calls == 0

    @pytest.mark.asyncio
    async def test_new_request_discards_old_context(self, machine, backend, session_store):
        await session_store.set_forgot_password_context("ada@example.com", "111111")
        backend.script((200, {}))

        await machine.forgot_password("ada@example.com")

        assert await session_store.get_forgot_password_context() is None
        assert machine.state.stage == AuthStage.AWAITING_RESET_CODE

    @pytest.mark.asyncio
    async def test_abandon(self, machine, backend, session_store):
        backend.script((200, {}), (200, {}))
        await machine.forgot_password("ada@example.com")
        await machine.verify_forgot_password_code("123456")

        await machine.abandon_password_reset()

        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert machine.state.forgot_password_context is None
        assert machine.state.pending_verification_email is None
        assert await session_store.get_forgot_password_context() is None
        assert await session_store.get_pending_verification_email() is None


class TestLoginAndLogout:

    @pytest.mark.asyncio
    async def test_login_with_remember_me(self, machine, backend, session_store):
        backend.script((200, {"token": "tok"}))

        result = await machine.login("ada@example.com", "pw", remember_me=True)

        assert result.success
        assert machine.state.stage == AuthStage.AUTHENTICATED
        assert not machine.state.is_loading
        session = await session_store.load_session()
        assert session.token == "tok" and session.remember_me is True

    @pytest.mark.asyncio
    async def test_tokenless_login_does_not_remember(self, machine, backend, session_store):
        backend.script((200, {"message": "Welcome"}))

        result = await machine.login("ada@example.com", "pw", remember_me=True)

        assert result.tokenless
        assert machine.state.is_authenticated
        assert await session_store.get_remember_me() is False

    @pytest.mark.asyncio
    async def test_failed_login_restores_stage(self, machine, backend, session_store):
        backend.script((401, {"message": "Invalid credentials"}))

        await machine.login("ada@example.com", "wrong")

        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert machine.state.error_message == "Invalid credentials"
        assert not machine.state.is_loading
        assert await session_store.get_token() is None

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, machine, backend, session_store):
        backend.script((200, {"token": "tok"}))
        await machine.login("ada@example.com", "pw", remember_me=True)
        await session_store.set_pending_verification_email("ada@example.com")

        await machine.logout()

        assert machine.state.stage == AuthStage.UNAUTHENTICATED
        assert not machine.state.is_authenticated
        session = await session_store.load_session()
        assert session.token is None and session.remember_me is False
        assert await session_store.get_pending_verification_email() is None

    @pytest.mark.asyncio
    async def test_fetch_user_failure_keeps_current_record(self, machine, backend):
        backend.script((200, {"token": "tok", "user": {"_id": "u1", "prenom": "Ada"}}))
        await machine.login("ada@example.com", "pw")
        backend.script((500, None))

        assert await machine.fetch_and_set_user_by_id("u1") is None
        assert machine.state.user is not None and machine.state.user.first_name == "Ada"


class TestInFlightGuard:

    @pytest.mark.asyncio
    async def test_concurrent_login_issues_one_request(self, machine, backend):
        backend.script(Delayed(0.1, (200, {"token": "tok"})))

        first, second = await asyncio.gather(
            machine.login("ada@example.com", "pw"),
            machine.login("ada@example.com", "pw"),
        )

        assert first is not None and first.success
        assert second is None
        assert backend.calls == 1
        assert not machine.in_flight.is_running("login")

    @pytest.mark.asyncio
    async def test_different_operations_do_not_block_each_other(self, machine, backend):
        backend.script(Delayed(0.1, (200, {})))

        results = await asyncio.gather(
            machine.forgot_password("ada@example.com"),
            machine.resend_verification_email("ada@example.com"),
        )

        assert all(result is not None for result in results)
        assert backend.calls == 2

    @pytest.mark.asyncio
    async def test_guard_is_released_after_cancellation(self, machine, backend):
        backend.script(Delayed(5.0, (200, {"token": "tok"})))

        task = asyncio.create_task(machine.login("ada@example.com", "pw"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not machine.in_flight.is_running("login")
        assert not machine.state.is_loading
        assert machine.state.stage == AuthStage.UNAUTHENTICATED


class TestObservation:

    @pytest.mark.asyncio
    async def test_subscribers_see_loading_then_result(self, machine, backend):
        seen = []
        unsubscribe = machine.subscribe(lambda state: seen.append((state.stage, state.is_loading)))
        backend.script((200, {"token": "tok"}))

        await machine.login("ada@example.com", "pw")
        unsubscribe()
        await machine.logout()

        assert seen[0] == (AuthStage.UNAUTHENTICATED, False)
        assert (AuthStage.AUTHENTICATING, True) in seen
        assert seen[-1] == (AuthStage.AUTHENTICATED, False)

    def test_clear_error(self, machine):
        machine._container.update(error_message="boom")

        machine.clear_error()

        assert machine.state.error_message is None
