from __future__ import annotations

from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class EngineError(RuntimeError):
    """
    Base class for failures the engine reports to its callers.

    `code` is stable and safe to branch on; the message is for humans and logs.
    """

    code = "ENGINE_ERROR"
    default_message = "The portal operation failed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class NoSession(EngineError):
    code = "NO_SESSION"
    default_message = "No stored portal session for this user; link the account first."


class SessionExpired(EngineError):
    code = "SESSION_EXPIRED"
    default_message = "The portal rejected the stored session (redirected to sign-in)."


class LoginFailed(EngineError):
    code = "LOGIN_FAILED"
    default_message = "Portal sign-in did not complete."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        self.reason = (reason or "").strip() or None
        # Set when retries ran out on timeouts/closed targets, not on a portal rejection.
        self.transient = bool(transient)
        if message is None and self.reason:
            message = f"Portal sign-in failed: {self.reason}"
        super().__init__(message)


class BrowserNotInstalled(EngineError):
    code = "BROWSER_NOT_INSTALLED"
    default_message = (
        "Playwright Chromium is not installed. Run `python -m playwright install chromium` on this host."
    )


class BrowserClosedDuringFetch(EngineError):
    code = "BROWSER_CLOSED_DURING_FETCH"
    default_message = "The browser tab closed while reading account data."


class BrowserClosedDuringRenew(EngineError):
    code = "BROWSER_CLOSED_DURING_RENEW"
    default_message = "The browser tab closed while renewing."


class RenewDisabled(EngineError):
    code = "RENEW_DISABLED"
    default_message = "The portal currently does not allow renewal (Renew button is disabled)."


class MoreDetailsNotFound(EngineError):
    code = "MORE_DETAILS_NOT_FOUND"
    default_message = "The 'More Details' panel did not render in time."

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None) -> None:
        self.reason = reason
        if message is None and reason:
            message = f"{self.default_message} ({reason})"
        super().__init__(message)


class AutoReloginFailed(EngineError):
    code = "AUTO_RELOGIN_FAILED"
    default_message = "Automatic re-login failed."

    def __init__(self, message: Optional[str] = None, *, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        if message is None and cause is not None:
            message = f"AUTO_RELOGIN_FAILED: {cause}"
        super().__init__(message)


class NoCredentialsSaved(EngineError):
    code = "NO_CREDENTIALS_SAVED"
    default_message = "No stored credentials for this user; automatic re-login is not possible."


# Playwright surfaces a dead tab/context only through its message text.
_CLOSED_TARGET_SIGNATURES = (
    "Target closed",
    "has been closed",
    "Execution context was destroyed",
    "Target page, context or browser has been closed",
)
_MISSING_BROWSER_SIGNATURES = (
    "Executable doesn't exist",
    "download new browsers",
    "playwright install",
)
_SESSION_MESSAGE_SIGNATURES = (
    "Target closed",
    "Navigation failed",
    "net::ERR",
)

# Why a snapshot has no renewal details (see PortalClient._open_more_details).
MORE_NOT_VISIBLE = "MORE_NOT_VISIBLE"
DETAILS_TEMP_UNAVAILABLE = "DETAILS_TEMP_UNAVAILABLE"


def _message(err: BaseException) -> str:
    return str(err or "")


def is_closed_target_error(err: BaseException) -> bool:
    msg = _message(err)
    return any(sig in msg for sig in _CLOSED_TARGET_SIGNATURES)


def is_missing_browser_error(err: BaseException) -> bool:
    msg = _message(err)
    return any(sig in msg for sig in _MISSING_BROWSER_SIGNATURES)


def is_transient_error(err: BaseException) -> bool:
    """
    Errors worth retrying the same step for: timeouts and detached/closed targets.
    """
    if isinstance(err, EngineError):
        return False
    if isinstance(err, (TimeoutError, PlaywrightTimeoutError)):
        return True
    return is_closed_target_error(err)


def is_session_error(err: BaseException) -> bool:
    """
    Errors that a fresh login can plausibly fix.
    """
    if isinstance(
        err,
        (NoSession, SessionExpired, BrowserClosedDuringFetch, BrowserClosedDuringRenew, AutoReloginFailed),
    ):
        return True
    if isinstance(err, EngineError):
        return False
    msg = _message(err)
    return any(sig in msg for sig in _SESSION_MESSAGE_SIGNATURES)


_USER_MESSAGES = {
    NoSession.code: "No account linked. Run `link` with your service number and password.",
    SessionExpired.code: "The portal session expired. Run `link` again to sign in.",
    NoCredentialsSaved.code: "The session expired and no credentials are stored. Run `link` again.",
    AutoReloginFailed.code: "Automatic re-login failed. Check your credentials with `link`, or try later.",
    BrowserNotInstalled.code: "Playwright Chromium is not installed on this host.",
    RenewDisabled.code: "Renewal is not available right now (insufficient balance or portal policy).",
    MoreDetailsNotFound.code: "The renewal details panel did not load. Try again in a few minutes.",
    BrowserClosedDuringFetch.code: "The browser closed while reading your account. Try again.",
    BrowserClosedDuringRenew.code: "The browser closed while renewing. Check the portal before retrying.",
}


def describe_error(err: BaseException, *, max_detail: int = 140) -> str:
    """
    One line suitable for showing to the account owner.
    """
    if isinstance(err, AutoReloginFailed) and isinstance(err.cause, LoginFailed) and err.cause.transient:
        err = err.cause

    if isinstance(err, LoginFailed):
        if err.transient:
            detail = _message(err.__cause__ or err).strip().replace("\n", " ")[:max_detail]
            return f"The WE portal is slow or not responding. Try again shortly. ({detail})"
        if err.reason:
            return f"Sign-in failed: {err.reason[:max_detail]}"
        return "Sign-in failed. Double-check the service number and password."

    if isinstance(err, EngineError):
        msg = _USER_MESSAGES.get(err.code)
        if msg:
            return msg

    detail = _message(err).strip().replace("\n", " ")[:max_detail]
    if isinstance(err, (TimeoutError, PlaywrightTimeoutError)) or "Timeout" in detail:
        return f"The WE portal is slow or not responding. Try again shortly. ({detail})"
    return f"Unexpected error; try again later. ({detail})" if detail else "Unexpected error; try again later."
