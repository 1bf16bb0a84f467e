from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Optional

import pytest

from we_account_engine.engine import AccountEngine, RetryPolicy
from we_account_engine.errors import (
    AutoReloginFailed,
    BrowserNotInstalled,
    LoginFailed,
    NoCredentialsSaved,
    RenewDisabled,
    SessionExpired,
    describe_error,
)
from we_account_engine.models import AccountSnapshot, Credentials, ExtractionResult
from we_account_engine.portal.session_store import SessionStore
from we_account_engine.state import StateStore


class FakePortal:
    def __init__(self) -> None:
        self.login_calls: list[tuple[str, str, str]] = []
        self.fetch_calls = 0
        self.renew_calls = 0
        self.closed: list[str] = []
        self.login_errors: list[BaseException] = []
        self.fetch_errors: list[BaseException] = []
        self.renew_errors: list[BaseException] = []
        self.url: Optional[str] = "https://my.te.eg/echannel/#/accountoverview"
        self.sessions: Optional[SessionStore] = None

    async def login(self, user_id: str, service_number: str, password: str) -> None:
        self.login_calls.append((user_id, service_number, password))
        if self.login_errors:
            raise self.login_errors.pop(0)
        if self.sessions is not None:
            self.sessions.save(user_id, '{"cookies": [], "origins": []}')

    async def fetch(self, user_id: str) -> ExtractionResult:
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        snap = AccountSnapshot(plan="Super speed 1", balance_egp=100.0, remaining_gb=10.0, used_gb=5.0)
        return ExtractionResult(snapshot=snap, method_picked="ACCOUNTOVERVIEW_ONLY(text)", more_details_visible=False)

    async def renew(self, user_id: str) -> None:
        self.renew_calls += 1
        if self.renew_errors:
            raise self.renew_errors.pop(0)

    def current_url(self, user_id: str) -> Optional[str]:
        return self.url

    async def close_user(self, user_id: str) -> None:
        self.closed.append(user_id)

    async def shutdown(self) -> None:
        return None


async def _no_sleep(_: float) -> None:
    return None


def _engine(
    tmp_path: Path,
    portal: FakePortal,
    *,
    creds: Optional[Credentials] = None,
    provider: Optional[Callable[[str], Optional[Credentials]]] = None,
    max_auto_relogin: int = 2,
) -> tuple[AccountEngine, StateStore]:
    state = StateStore(str(tmp_path / "state.db"))
    sessions = SessionStore(state, str(tmp_path / "sessions"))
    portal.sessions = sessions
    if creds is not None:
        state.save_credentials("42", creds)
    eng = AccountEngine(
        portal=portal,
        sessions=sessions,
        credentials=provider or state.get_credentials,
        login_policy=RetryPolicy(max_attempts=3, delay_s=0.0),
        max_auto_relogin=max_auto_relogin,
        sleep=_no_sleep,
    )
    return eng, state


def test_wrong_credentials_are_not_retried(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.login_errors = [LoginFailed(reason="Invalid service number or password")]
    eng, state = _engine(tmp_path, portal)
    try:
        with pytest.raises(LoginFailed) as exc:
            asyncio.run(eng.login_and_save("42", "0223456789", "bad"))
        assert exc.value.reason == "Invalid service number or password"
        assert len(portal.login_calls) == 1
        diag = eng.get_session_diagnostics("42")
        assert diag.last_error is not None and diag.last_error.startswith("LOGIN_FAILED")
    finally:
        state.close()


def test_transient_login_error_is_retried_once(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.login_errors = [TimeoutError("sign-in button never enabled")]
    eng, state = _engine(tmp_path, portal)
    try:
        asyncio.run(eng.login_and_save("42", "0223456789", "pw"))
        assert len(portal.login_calls) == 2
        diag = eng.get_session_diagnostics("42")
        assert diag.has_session is True
        assert diag.last_error is None
        assert diag.method_picked == "LOGIN_OK"
    finally:
        state.close()


def test_login_gives_up_after_max_attempts(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.login_errors = [TimeoutError("slow")] * 3
    eng, state = _engine(tmp_path, portal)
    try:
        with pytest.raises(LoginFailed):
            asyncio.run(eng.login_and_save("42", "0223456789", "pw"))
        assert len(portal.login_calls) == 3
    finally:
        state.close()


def test_fetch_with_valid_session(tmp_path: Path) -> None:
    portal = FakePortal()
    eng, state = _engine(tmp_path, portal)
    try:
        snap = asyncio.run(eng.fetch_with_session("42"))
        assert snap.plan == "Super speed 1"
        assert portal.login_calls == []
        diag = eng.get_session_diagnostics("42")
        assert diag.last_fetch_at == snap.captured_at
        assert diag.method_picked == "ACCOUNTOVERVIEW_ONLY(text)"
        assert diag.more_details_visible is False
    finally:
        state.close()


def test_expired_session_triggers_one_relogin(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        snap = asyncio.run(eng.fetch_with_session("42"))
        assert snap.balance_egp == 100.0
        assert portal.login_calls == [("42", "0223456789", "pw")]
        assert portal.fetch_calls == 2
        assert portal.closed == ["42"]
    finally:
        state.close()


def test_relogin_is_bounded(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired() for _ in range(10)]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        with pytest.raises(AutoReloginFailed) as exc:
            asyncio.run(eng.fetch_with_session("42"))
        assert isinstance(exc.value.cause, SessionExpired)
        assert len(portal.login_calls) == 2
        assert portal.fetch_calls == 3
    finally:
        state.close()


def test_relogin_disabled_surfaces_original_error(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"), max_auto_relogin=0)
    try:
        with pytest.raises(SessionExpired):
            asyncio.run(eng.fetch_with_session("42"))
        assert portal.login_calls == []
    finally:
        state.close()


def test_missing_credentials_surface_session_error(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    eng, state = _engine(tmp_path, portal)
    try:
        with pytest.raises(SessionExpired):
            asyncio.run(eng.fetch_with_session("42"))
        assert portal.login_calls == []
    finally:
        state.close()


def test_failed_relogin_is_wrapped(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    portal.login_errors = [LoginFailed(reason="Password changed")]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "old"))
    try:
        with pytest.raises(AutoReloginFailed) as exc:
            asyncio.run(eng.fetch_with_session("42"))
        assert isinstance(exc.value.cause, LoginFailed)
        assert str(exc.value).startswith("AUTO_RELOGIN_FAILED:")
    finally:
        state.close()


def test_explicit_auto_relogin_without_credentials(tmp_path: Path) -> None:
    portal = FakePortal()
    eng, state = _engine(tmp_path, portal)
    try:
        with pytest.raises(NoCredentialsSaved):
            asyncio.run(eng.auto_relogin("42"))
    finally:
        state.close()


def test_renew_disabled_is_not_retried(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.renew_errors = [RenewDisabled()]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        with pytest.raises(RenewDisabled):
            asyncio.run(eng.renew_with_session("42"))
        assert portal.renew_calls == 1
        assert portal.login_calls == []
        assert eng.get_session_diagnostics("42").last_error.startswith("RENEW_DISABLED")
    finally:
        state.close()


def test_renew_recovers_from_expired_session(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.renew_errors = [SessionExpired()]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        asyncio.run(eng.renew_with_session("42"))
        assert portal.renew_calls == 2
        assert len(portal.login_calls) == 1
    finally:
        state.close()


def test_delete_session_is_idempotent(tmp_path: Path) -> None:
    portal = FakePortal()
    eng, state = _engine(tmp_path, portal)
    try:
        asyncio.run(eng.login_and_save("42", "0223456789", "pw"))
        assert eng.get_session_diagnostics("42").has_session is True

        asyncio.run(eng.delete_session("42"))
        asyncio.run(eng.delete_session("42"))
        assert eng.get_session_diagnostics("42").has_session is False
        assert state.get_session("42") is None
    finally:
        state.close()


def test_diagnostics_never_raise(tmp_path: Path) -> None:
    class BrokenPortal(FakePortal):
        def current_url(self, user_id: str) -> Optional[str]:
            raise RuntimeError("browser is gone")

    portal = BrokenPortal()
    eng, state = _engine(tmp_path, portal)
    try:
        diag = eng.get_session_diagnostics("unknown-user")
        assert diag.has_session is False
        assert diag.last_error is None
    finally:
        state.close()


def test_exhausted_timeouts_are_described_as_slow_portal(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.login_errors = [TimeoutError("Timeout 120000ms exceeded")] * 3
    eng, state = _engine(tmp_path, portal)
    try:
        with pytest.raises(LoginFailed) as exc:
            asyncio.run(eng.login_and_save("42", "0223456789", "pw"))
        assert exc.value.transient is True
        assert exc.value.reason is None
        msg = describe_error(exc.value)
        assert msg.startswith("The WE portal is slow or not responding.")
        assert "Timeout 120000ms exceeded" in msg
        assert "password" not in msg
    finally:
        state.close()


def test_relogin_timeouts_are_described_as_slow_portal(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    portal.login_errors = [TimeoutError("Timeout 120000ms exceeded")] * 3
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        with pytest.raises(AutoReloginFailed) as exc:
            asyncio.run(eng.fetch_with_session("42"))
        assert isinstance(exc.value.cause, LoginFailed) and exc.value.cause.transient
        msg = describe_error(exc.value)
        assert msg.startswith("The WE portal is slow or not responding.")
        assert "credentials" not in msg
    finally:
        state.close()


def test_missing_browser_during_relogin_is_not_wrapped(tmp_path: Path) -> None:
    portal = FakePortal()
    portal.fetch_errors = [SessionExpired()]
    portal.login_errors = [BrowserNotInstalled()]
    eng, state = _engine(tmp_path, portal, creds=Credentials("0223456789", "pw"))
    try:
        with pytest.raises(BrowserNotInstalled):
            asyncio.run(eng.fetch_with_session("42"))
        assert len(portal.login_calls) == 1
        assert eng.get_session_diagnostics("42").last_error.startswith("BROWSER_NOT_INSTALLED")

        portal.login_errors = [BrowserNotInstalled()]
        with pytest.raises(BrowserNotInstalled):
            asyncio.run(eng.auto_relogin("42"))
    finally:
        state.close()


def test_fetches_are_serialized_per_user(tmp_path: Path) -> None:
    events: list[str] = []

    class SlowPortal(FakePortal):
        async def fetch(self, user_id: str) -> ExtractionResult:
            events.append(f"{user_id}-start")
            await asyncio.sleep(0.02)
            events.append(f"{user_id}-end")
            return await super().fetch(user_id)

    portal = SlowPortal()
    eng, state = _engine(tmp_path, portal)

    async def _go() -> list[AccountSnapshot]:
        return await asyncio.gather(
            eng.fetch_with_session("42"),
            eng.fetch_with_session("42"),
            eng.fetch_with_session("7"),
        )

    try:
        snaps = asyncio.run(_go())
        assert len(snaps) == 3
        assert [e for e in events if e.startswith("42-")] == ["42-start", "42-end", "42-start", "42-end"]
        # Another user's fetch does not wait for user 42.
        assert events.index("7-start") < events.index("42-end")
        assert portal.fetch_calls == 3
    finally:
        state.close()
