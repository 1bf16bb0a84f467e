from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol, TypeVar

from .errors import (
    AutoReloginFailed,
    BrowserNotInstalled,
    EngineError,
    LoginFailed,
    NoCredentialsSaved,
    is_session_error,
    is_transient_error,
)
from .locks import UserLocks
from .models import AccountSnapshot, Credentials, ExtractionResult, SessionDiagnostics
from .portal.session_store import SessionStore

if TYPE_CHECKING:
    from .config import AppConfig
    from .portal.browser import ContextHook
    from .state import StateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

CredentialsProvider = Callable[[str], Optional[Credentials]]


class Portal(Protocol):
    async def login(self, user_id: str, service_number: str, password: str) -> None: ...

    async def fetch(self, user_id: str) -> ExtractionResult: ...

    async def renew(self, user_id: str) -> None: ...

    def current_url(self, user_id: str) -> Optional[str]: ...

    async def close_user(self, user_id: str) -> None: ...

    async def shutdown(self) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_s: float = 1.5
    backoff: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.delay_s * (self.backoff ** max(0, attempt - 1)))


class AccountEngine:
    """
    Public API for the bot front-end: link, fetch, renew, logout, diagnostics.

    Every public call for a user id runs under that user's lock. Session errors during
    fetch/renew trigger a bounded auto-relogin with stored credentials.
    """

    def __init__(
        self,
        *,
        portal: Portal,
        sessions: SessionStore,
        credentials: CredentialsProvider,
        locks: Optional[UserLocks] = None,
        login_policy: Optional[RetryPolicy] = None,
        max_auto_relogin: int = 2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.portal = portal
        self.sessions = sessions
        self.credentials = credentials
        self.locks = locks or UserLocks()
        self.login_policy = login_policy or RetryPolicy()
        self.max_auto_relogin = max(0, int(max_auto_relogin))
        self._sleep = sleep
        self._diag: dict[str, SessionDiagnostics] = {}

    @classmethod
    def from_config(
        cls,
        cfg: "AppConfig",
        store: "StateStore",
        *,
        on_new_context: Optional["ContextHook"] = None,
    ) -> "AccountEngine":
        from .portal.browser import BrowserManager
        from .portal.client import PortalClient

        browser = BrowserManager(
            headless=cfg.portal.headless,
            viewport=(cfg.portal.viewport_width, cfg.portal.viewport_height),
            page_timeout_ms=cfg.portal.page_timeout_ms,
            slow_mo_ms=cfg.portal.slow_mo_ms,
            on_new_context=on_new_context,
        )
        sessions = SessionStore(store, cfg.state.sessions_dir)
        portal = PortalClient(
            browser=browser,
            sessions=sessions,
            base_url=cfg.portal.base_url,
            signin_path=cfg.portal.signin_path,
            account_overview_path=cfg.portal.account_overview_path,
            overview_path=cfg.portal.overview_path,
            login_timeout_ms=cfg.portal.login_timeout_ms,
            renew_settle_ms=cfg.engine.renew_settle_ms,
            debug_dir=cfg.debug.dir,
            save_debug_artifacts=cfg.debug.save_artifacts,
            step_screenshots=cfg.debug.step_screenshots,
        )
        return cls(
            portal=portal,
            sessions=sessions,
            credentials=store.get_credentials,
            login_policy=RetryPolicy(
                max_attempts=cfg.engine.max_login_attempts,
                delay_s=cfg.engine.login_retry_delay_s,
                backoff=cfg.engine.login_retry_backoff,
            ),
            max_auto_relogin=cfg.engine.max_auto_relogin,
        )

    # --- public API ---

    async def login_and_save(self, user_id: str, service_number: str, password: str) -> None:
        uid = str(user_id)

        async def _op() -> None:
            try:
                await self._login_with_retry(uid, service_number, password)
            except Exception as e:
                self._note_error(uid, e)
                raise
            self._update_diag(uid, last_error=None, method_picked="LOGIN_OK", current_url=self.portal.current_url(uid))

        await self.locks.run(uid, _op)

    async def fetch_with_session(self, user_id: str) -> AccountSnapshot:
        uid = str(user_id)

        async def _op() -> AccountSnapshot:
            try:
                result = await self._with_recovery(uid, lambda: self.portal.fetch(uid), what="fetch")
            except Exception as e:
                self._note_error(uid, e)
                raise
            self._update_diag(
                uid,
                last_error=None,
                last_fetch_at=result.snapshot.captured_at,
                current_url=result.current_url,
                method_picked=result.method_picked,
                more_details_visible=result.more_details_visible,
            )
            return result.snapshot

        return await self.locks.run(uid, _op)

    async def renew_with_session(self, user_id: str) -> None:
        uid = str(user_id)

        async def _op() -> None:
            try:
                await self._with_recovery(uid, lambda: self.portal.renew(uid), what="renew")
            except Exception as e:
                self._note_error(uid, e)
                raise
            self._update_diag(uid, last_error=None, current_url=self.portal.current_url(uid))

        await self.locks.run(uid, _op)

    async def delete_session(self, user_id: str) -> None:
        uid = str(user_id)

        async def _op() -> None:
            await self.portal.close_user(uid)
            self.sessions.delete(uid)
            self._diag.pop(uid, None)
            logger.info("Deleted portal session for user=%s", uid)

        await self.locks.run(uid, _op)

    async def auto_relogin(self, user_id: str) -> None:
        """
        Re-login with stored credentials. Raises NoCredentialsSaved, BrowserNotInstalled or AutoReloginFailed.
        """
        uid = str(user_id)

        async def _op() -> None:
            try:
                await self._relogin(uid)
            except (NoCredentialsSaved, BrowserNotInstalled) as e:
                self._note_error(uid, e)
                raise
            except Exception as e:
                self._note_error(uid, e)
                raise AutoReloginFailed(cause=e) from e

        await self.locks.run(uid, _op)

    def get_session_diagnostics(self, user_id: str) -> SessionDiagnostics:
        uid = str(user_id)
        try:
            d = self._diag.get(uid) or SessionDiagnostics()
            return dataclasses.replace(
                d,
                has_session=self.sessions.exists(uid),
                current_url=d.current_url or self.portal.current_url(uid),
            )
        except Exception:
            logger.debug("Diagnostics lookup failed for user=%s", uid, exc_info=True)
            return SessionDiagnostics()

    async def shutdown(self) -> None:
        await self.portal.shutdown()

    # --- internals (callers already hold the user lock) ---

    async def _login_with_retry(self, uid: str, service_number: str, password: str) -> None:
        policy = self.login_policy
        attempts = max(1, int(policy.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                logger.info("Portal login for user=%s (attempt %d/%d)", uid, attempt, attempts)
                await self.portal.login(uid, service_number, password)
                return
            except EngineError:
                # LoginFailed (rejected credentials) and BrowserNotInstalled are final.
                raise
            except Exception as e:
                if not is_transient_error(e):
                    raise LoginFailed(f"Portal sign-in failed: {e}") from e
                if attempt >= attempts:
                    raise LoginFailed(
                        f"Portal sign-in did not complete after {attempts} attempts: {e}",
                        transient=True,
                    ) from e
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Portal login failed for user=%s (attempt %d/%d); retrying in %.2fs (%s)",
                    uid,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await self._sleep(delay)

    async def _relogin(self, uid: str) -> None:
        creds = self.credentials(uid)
        if creds is None:
            raise NoCredentialsSaved()
        await self.portal.close_user(uid)
        await self._login_with_retry(uid, creds.service_number, creds.password)
        logger.info("Auto-relogin OK for user=%s", uid)

    async def _with_recovery(self, uid: str, op: Callable[[], Awaitable[T]], *, what: str) -> T:
        relogins = 0
        while True:
            try:
                return await op()
            except Exception as e:
                if not is_session_error(e):
                    raise
                if relogins >= self.max_auto_relogin:
                    if relogins == 0:
                        raise
                    raise AutoReloginFailed(cause=e) from e

                relogins += 1
                logger.warning(
                    "Session error for user=%s during %s (%s); auto-relogin %d/%d",
                    uid,
                    what,
                    e,
                    relogins,
                    self.max_auto_relogin,
                )
                try:
                    await self._relogin(uid)
                except NoCredentialsSaved:
                    logger.info("No stored credentials for user=%s; surfacing the session error.", uid)
                    raise e from None
                except BrowserNotInstalled:
                    raise
                except Exception as login_err:
                    raise AutoReloginFailed(cause=login_err) from login_err

    def _update_diag(self, uid: str, **changes: object) -> None:
        current = self._diag.get(uid) or SessionDiagnostics()
        self._diag[uid] = dataclasses.replace(current, **changes)

    def _note_error(self, uid: str, err: BaseException) -> None:
        code = getattr(err, "code", None) or type(err).__name__
        try:
            url = self.portal.current_url(uid)
        except Exception:
            url = None
        self._update_diag(uid, last_error=f"{code}: {err}", current_url=url)
