from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Optional

from playwright.async_api import Locator, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import (
    DETAILS_TEMP_UNAVAILABLE,
    MORE_NOT_VISIBLE,
    BrowserClosedDuringFetch,
    BrowserClosedDuringRenew,
    EngineError,
    LoginFailed,
    MoreDetailsNotFound,
    RenewDisabled,
    SessionExpired,
    is_closed_target_error,
)
from ..models import AccountSnapshot, ExtractionResult
from ..util.numbers import num_from_text
from .browser import BrowserManager
from .parsing import (
    OverviewBasics,
    OverviewDetails,
    RenewPriceStrategy,
    parse_account_overview_text,
    parse_overview_details_text,
    pick_plan_title,
    resolve_renew_price,
)
from .selectors import PortalSelectors
from .session_store import SessionStore


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://my.te.eg/echannel/"

_SIGNIN_URL_RE = re.compile(r"#/home/signin|/signin", re.I)
_OVERVIEW_URL_RE = re.compile(r"#/overview\b", re.I)


def _reraise_if_closed(e: BaseException) -> None:
    # Best-effort reads may swallow most errors, but never a dead tab.
    if is_closed_target_error(e):
        raise e


class PortalClient:
    """
    my.te.eg automation: sign-in, account overview extraction and renewal.

    Holds no per-call state of its own; browser contexts live in the BrowserManager and
    sessions in the SessionStore. Callers serialize calls per user.
    """

    def __init__(
        self,
        *,
        browser: BrowserManager,
        sessions: SessionStore,
        base_url: str = DEFAULT_BASE_URL,
        signin_path: str = "#/home/signin",
        account_overview_path: str = "#/accountoverview",
        overview_path: str = "#/overview",
        selectors: Optional[PortalSelectors] = None,
        login_timeout_ms: int = 120_000,
        renew_settle_ms: int = 4_000,
        debug_dir: str = "data/debug",
        save_debug_artifacts: bool = False,
        step_screenshots: bool = False,
        renew_price_strategy: Optional[RenewPriceStrategy] = None,
    ) -> None:
        self.browser = browser
        self.sessions = sessions
        self.selectors = selectors or PortalSelectors()

        root = base_url.rstrip("/") + "/"
        self.signin_url = root + signin_path.lstrip("/")
        self.account_overview_url = root + account_overview_path.lstrip("/")
        self.overview_url = root + overview_path.lstrip("/")

        self.login_timeout_ms = int(login_timeout_ms)
        self.renew_settle_ms = int(renew_settle_ms)
        self.debug_dir = debug_dir
        self.save_debug_artifacts = bool(save_debug_artifacts)
        self.step_screenshots = bool(step_screenshots)
        self.renew_price_strategy = renew_price_strategy

    # --- public flows ---

    async def login(self, user_id: str, service_number: str, password: str) -> None:
        """
        Sign in on a throwaway context and persist the resulting storage_state for `user_id`.

        Raises LoginFailed when the portal keeps us on sign-in. Timeouts and closed-target
        errors propagate unchanged so the caller can decide to retry.
        """
        ctx = await self.browser.new_context()
        ctx.set_default_timeout(self.login_timeout_ms)
        ctx.set_default_navigation_timeout(self.login_timeout_ms)
        try:
            page = await ctx.new_page()
            try:
                await self._sign_in(page, service_number=service_number, password=password)
            except Exception:
                await self._save_debug(page, name_prefix=f"login_failure_{user_id}")
                raise

            blob = json.dumps(await ctx.storage_state())
            self.sessions.save(user_id, blob)
            # The cached per-user context still carries the old cookies.
            await self.browser.discard_user(user_id)
            logger.info("Portal login OK for user=%s (url=%s)", user_id, page.url)
        finally:
            try:
                await ctx.close()
            except Exception:
                logger.debug("Failed to close login context.", exc_info=True)

    async def goto_account_overview(
        self,
        user_id: str,
        *,
        closed_error: type[EngineError] = BrowserClosedDuringFetch,
    ) -> Page:
        """
        Open `#/accountoverview` on the user's cached tab and make sure it is authenticated.

        A redirect to sign-in or a closed tab each earn one context rebuild from the stored session.
        """
        state_path = self.sessions.restore(user_id)
        fresh = False
        recreated_for_signin = False
        recreated_for_closed = False

        while True:
            try:
                page = await self.browser.user_page(user_id, storage_state_path=state_path, fresh=fresh)
                await page.goto(self.account_overview_url, wait_until="domcontentloaded")
                await self._wait_overview_ready(page)
                if await self._looks_like_browser_error(page):
                    await self._save_debug(page, name_prefix=f"browser_error_{user_id}")
                    raise RuntimeError(f"Navigation failed: browser error page at {page.url}")
            except Exception as e:
                if not is_closed_target_error(e):
                    raise
                if recreated_for_closed:
                    await self.browser.discard_user(user_id)
                    raise closed_error() from e
                logger.warning("Browser tab closed during navigation for user=%s; recreating context.", user_id)
                recreated_for_closed = True
                fresh = True
                continue

            if self._is_signin_url(page.url):
                if recreated_for_signin:
                    await self._save_debug(page, name_prefix=f"session_expired_{user_id}")
                    await self.browser.discard_user(user_id)
                    raise SessionExpired()
                logger.info("Stored session landed on sign-in for user=%s; recreating context once.", user_id)
                recreated_for_signin = True
                fresh = True
                state_path = self.sessions.restore(user_id)
                continue

            await self._step(page, name="account_overview_ready")
            return page

    async def fetch(self, user_id: str) -> ExtractionResult:
        page = await self.goto_account_overview(user_id, closed_error=BrowserClosedDuringFetch)
        try:
            return await self._extract(user_id, page)
        except Exception as e:
            await self._save_debug(page, name_prefix=f"fetch_failure_{user_id}")
            if not isinstance(e, EngineError) and is_closed_target_error(e):
                await self.browser.discard_user(user_id)
                raise BrowserClosedDuringFetch() from e
            raise

    async def renew(self, user_id: str) -> None:
        """
        Click the portal's Renew button. Success means the click was accepted; the portal
        gives no structured confirmation.
        """
        page = await self.goto_account_overview(user_id, closed_error=BrowserClosedDuringRenew)
        try:
            opened, reason = await self._open_more_details(page)
            if not opened:
                raise MoreDetailsNotFound(reason=reason)

            btn = self._renew_button(page)
            await btn.wait_for(state="visible", timeout=20_000)
            if await btn.get_attribute("disabled") is not None:
                raise RenewDisabled()

            await btn.click(force=True)
            await self._step(page, name="renew_clicked")
            try:
                await page.wait_for_timeout(self.renew_settle_ms)
            except Exception as e:
                # Past the click a retry would renew twice; a dead tab here is not a failure.
                if not is_closed_target_error(e):
                    raise
                logger.warning("Tab closed after the Renew click for user=%s; treating the click as accepted.", user_id)
            logger.info("Renew click accepted for user=%s", user_id)
        except Exception as e:
            await self._save_debug(page, name_prefix=f"renew_failure_{user_id}")
            if not isinstance(e, EngineError) and is_closed_target_error(e):
                await self.browser.discard_user(user_id)
                raise BrowserClosedDuringRenew() from e
            raise

    def current_url(self, user_id: str) -> Optional[str]:
        return self.browser.current_url(user_id)

    async def close_user(self, user_id: str) -> None:
        await self.browser.discard_user(user_id)

    async def shutdown(self) -> None:
        await self.browser.shutdown()

    # --- sign-in ---

    async def _sign_in(self, page: Page, *, service_number: str, password: str) -> None:
        sel = self.selectors
        await page.goto(self.signin_url, wait_until="domcontentloaded")
        await self._step(page, name="signin_loaded")

        svc = page.locator(sel.service_number_input).first
        await svc.wait_for(state="visible")
        await svc.click()
        await svc.fill(str(service_number))
        await self._step(page, name="service_number_filled")

        await self._select_service_type(page)
        await self._step(page, name="service_type_selected")

        pwd = page.locator(sel.password_input).first
        await pwd.wait_for(state="visible")
        await pwd.click()
        await pwd.fill(str(password))

        btn = page.locator(sel.login_button).first
        await btn.wait_for(state="visible")
        if not await self._wait_enabled(btn, timeout_ms=30_000):
            logger.warning("Login button still disabled after 30s; clicking anyway.")
        # Field validation left over from filling the form is not a rejection.
        stale_errors = frozenset(await self._visible_login_errors(page))
        await btn.click(force=True)
        await self._step(page, name="login_clicked")

        await self._wait_for_login_outcome(page, stale_errors=stale_errors)
        await self._wait_overview_ready(page)

    async def _select_service_type(self, page: Page) -> None:
        """
        Pick "Internet" in the ant-design service-type select.

        The option list is sometimes unresponsive to pointer clicks, so a click that does not
        stick falls back to keyboard selection (type to filter, Enter, then ArrowDown scan).
        """
        sel = self.selectors
        wanted = sel.service_type_text
        trigger = page.locator(sel.service_type_trigger).first
        await trigger.wait_for(state="visible")
        await trigger.click(force=True)

        dropdown = page.locator(sel.service_type_dropdown).first
        await dropdown.wait_for(state="visible", timeout=15_000)

        try:
            options = dropdown.locator(sel.service_type_option)
            option = options.filter(has_text=re.compile(rf"^\s*{re.escape(wanted)}\s*$", re.I)).first
            if await option.count() == 0:
                option = options.filter(has_text=re.compile(re.escape(wanted), re.I)).first
            await option.click(timeout=5_000)
            await page.wait_for_timeout(250)
            if await self._service_type_is_selected(page):
                return
            logger.info("Service-type option click did not stick; falling back to keyboard selection.")
        except Exception as e:
            _reraise_if_closed(e)
            logger.info("Service-type option click failed; falling back to keyboard selection. (%s)", e)

        if not await dropdown.is_visible():
            await trigger.click(force=True)
            await dropdown.wait_for(state="visible", timeout=15_000)

        await page.keyboard.type(wanted.lower(), delay=35)
        await page.wait_for_timeout(250)
        await page.keyboard.press("Enter")
        await page.wait_for_timeout(250)

        if await dropdown.is_visible() and not await self._service_type_is_selected(page):
            active = dropdown.locator(sel.service_type_active_option).first
            for _ in range(20):
                try:
                    txt = await active.inner_text(timeout=1_000)
                except PlaywrightTimeoutError:
                    txt = ""
                if re.search(re.escape(wanted), txt, re.I):
                    await page.keyboard.press("Enter")
                    break
                await page.keyboard.press("ArrowDown")
                await page.wait_for_timeout(120)

        try:
            await dropdown.wait_for(state="hidden", timeout=15_000)
        except PlaywrightTimeoutError:
            logger.debug("Service-type dropdown did not close.")

        if not await self._service_type_is_selected(page):
            await self._save_debug(page, name_prefix="service_type_not_selected")
            raise TimeoutError(f"Could not select service type {wanted!r} on the sign-in form.")

    async def _service_type_is_selected(self, page: Page) -> bool:
        loc = page.locator(self.selectors.service_type_selected).first
        try:
            if await loc.count() == 0:
                return False
            txt = await loc.inner_text(timeout=2_000)
        except Exception as e:
            _reraise_if_closed(e)
            return False
        return self.selectors.service_type_text.lower() in (txt or "").lower()

    async def _wait_enabled(self, loc: Locator, *, timeout_ms: int) -> bool:
        deadline = time.monotonic() + timeout_ms / 1000
        while time.monotonic() < deadline:
            try:
                if await loc.is_enabled():
                    return True
            except Exception as e:
                _reraise_if_closed(e)
            await asyncio.sleep(0.25)
        return False

    async def _wait_for_login_outcome(self, page: Page, *, stale_errors: frozenset[str] = frozenset()) -> None:
        """
        Poll until the URL leaves sign-in, a post-login marker renders, or the form shows an error.

        Only inline errors that were not on the form before the click count while polling
        (`stale_errors`). The body-text wording check runs once, after the wait runs out.
        """
        deadline = time.monotonic() + self.login_timeout_ms / 1000
        while time.monotonic() < deadline:
            if not self._is_signin_url(page.url):
                return
            if await self._any_text_visible(page, self.selectors.login_success_texts):
                return
            for txt in await self._visible_login_errors(page):
                if txt not in stale_errors:
                    raise LoginFailed(reason=txt)
            await page.wait_for_timeout(500)

        if self._is_signin_url(page.url):
            errors = await self._visible_login_errors(page)
            reason = errors[0] if errors else await self._best_effort_login_failure_reason(page)
            raise LoginFailed(reason=reason)

    async def _visible_login_errors(self, page: Page) -> list[str]:
        loc = page.locator(self.selectors.login_error_message)
        out: list[str] = []
        try:
            n = min(await loc.count(), 10)
            for i in range(n):
                cand = loc.nth(i)
                if not await cand.is_visible():
                    continue
                txt = (await cand.inner_text(timeout=2_000) or "").strip()
                if txt:
                    out.append(txt)
        except Exception as e:
            _reraise_if_closed(e)
        return out

    async def _best_effort_login_failure_reason(self, page: Page) -> Optional[str]:
        """
        Look for wrong-credential / lockout wording in the page body. Conservative: None when unsure.
        """
        txt = await self._body_text(page)
        if not txt:
            return None

        if re.search(r"(invalid|incorrect|wrong).{0,40}(password|service\s*number|credentials)", txt, re.I):
            return "The portal rejected the service number / password."
        if re.search(r"(كلمة\s*(المرور|السر)).{0,30}(غير\s*صحيحة|خطأ|خاطئة)", txt):
            return "The portal rejected the service number / password."
        if re.search(r"account\s+(is\s+)?locked|too\s+many\s+(failed\s+)?attempts|temporarily\s+blocked", txt, re.I):
            return "The portal reports the account is locked or out of sign-in attempts."
        return None

    # --- overview ---

    async def _wait_overview_ready(self, page: Page) -> bool:
        # Up to 18 x 400ms for any authenticated-overview marker.
        for _ in range(18):
            if await self._any_text_visible(page, self.selectors.overview_ready_texts):
                return True
            if self._is_signin_url(page.url) and await self._signin_form_visible(page):
                return False
            await page.wait_for_timeout(400)
        return False

    async def _signin_form_visible(self, page: Page) -> bool:
        try:
            return await page.locator(self.selectors.service_number_input).first.is_visible()
        except Exception as e:
            _reraise_if_closed(e)
            return False

    async def _extract(self, user_id: str, page: Page) -> ExtractionResult:
        basics, method = await self._extract_basics(page)
        if not basics.is_complete():
            logger.info("Overview basics incomplete for user=%s (%s); reloading once.", user_id, basics)
            await self._save_debug(page, name_prefix=f"basics_incomplete_{user_id}")
            try:
                await page.reload(wait_until="domcontentloaded")
            except PlaywrightTimeoutError:
                logger.debug("Reload timed out for user=%s", user_id)
            await self._wait_overview_ready(page)
            await page.wait_for_timeout(1_200)
            again, method = await self._extract_basics(page)
            basics = again.merged_with(basics)

        if basics.is_empty():
            raise SessionExpired("Account overview rendered no readable data after a reload.")

        details = OverviewDetails()
        details_text = ""
        opened, reason = await self._open_more_details(page)
        if opened:
            details_text = await self._body_text(page)
            details = parse_overview_details_text(details_text)
        else:
            logger.info("More Details unavailable for user=%s (%s); returning basics only.", user_id, reason)

        renew_price = None
        if opened:
            renew_price = resolve_renew_price(
                details_text,
                labelled=details.renew_price_egp,
                balance_egp=basics.balance_egp,
                router_monthly_egp=details.router_monthly_egp,
                strategy=self.renew_price_strategy,
            )

        snapshot = AccountSnapshot(
            plan=basics.plan,
            remaining_gb=basics.remaining_gb,
            used_gb=basics.used_gb,
            balance_egp=basics.balance_egp,
            renewal_date=details.renewal_date,
            remaining_days=details.remaining_days,
            renew_price_egp=renew_price,
            router_name=details.router_name,
            router_monthly_egp=details.router_monthly_egp,
            router_renewal_date=details.router_renewal_date,
            renew_btn_enabled=await self._renew_button_enabled(page),
            details_unavailable=None if opened else reason,
        )
        method_picked = f"ACCOUNTOVERVIEW({method}) + OVERVIEW" if opened else f"ACCOUNTOVERVIEW_ONLY({method})"
        logger.info("Fetched account data for user=%s via %s", user_id, method_picked)
        return ExtractionResult(
            snapshot=snapshot,
            method_picked=method_picked,
            more_details_visible=opened,
            current_url=page.url,
        )

    async def _extract_basics(self, page: Page) -> tuple[OverviewBasics, str]:
        basics = parse_account_overview_text(await self._body_text(page))
        if basics.is_complete():
            return basics, "text"
        merged = basics.merged_with(await self._basics_from_labels(page))
        return merged, ("text+labels" if merged != basics else "text")

    async def _basics_from_labels(self, page: Page) -> OverviewBasics:
        """
        Fallback: read the number next to each label via its parent element.
        """
        sel = self.selectors

        async def _number_near(label: Locator) -> Optional[float]:
            try:
                if await label.count() == 0:
                    return None
                return num_from_text(await label.locator("xpath=..").inner_text(timeout=3_000))
            except Exception as e:
                _reraise_if_closed(e)
                return None

        remaining = await _number_near(
            page.locator("span", has_text=re.compile(sel.remaining_label_text, re.I)).first
        )
        used = await _number_near(page.locator("span", has_text=re.compile(sel.used_label_text, re.I)).first)
        balance = await _number_near(page.get_by_text(sel.balance_label_text, exact=False).first)

        plan = None
        try:
            titles = await page.locator(sel.plan_title_spans).evaluate_all(
                "els => els.map(e => e.getAttribute('title'))"
            )
            plan = pick_plan_title(titles or [])
        except Exception as e:
            _reraise_if_closed(e)

        return OverviewBasics(plan=plan, balance_egp=balance, remaining_gb=remaining, used_gb=used)

    # --- More Details ---

    async def _open_more_details(self, page: Page) -> tuple[bool, Optional[str]]:
        """
        Click "More Details" (lazy-rendered; may need scrolling) and wait for the renewal block.

        Returns (opened, reason_code_when_not).
        """
        clicked = False
        for cycle in range(4):
            target = await self._find_more_details(page)
            if target is not None:
                try:
                    await target.scroll_into_view_if_needed(timeout=3_000)
                except Exception as e:
                    _reraise_if_closed(e)
                try:
                    await target.click(force=True, timeout=5_000)
                    clicked = True
                except Exception as e:
                    _reraise_if_closed(e)
                    try:
                        await target.evaluate("el => el.click()")
                        clicked = True
                    except Exception as e2:
                        _reraise_if_closed(e2)
                        logger.debug("More Details click failed (cycle %d): %s", cycle + 1, e2)
            if clicked:
                break
            await page.mouse.wheel(0, 600)
            await page.wait_for_timeout(700)

        if not clicked:
            body = (await self._body_text(page)).lower()
            if any(t.lower() in body for t in self.selectors.details_unavailable_texts):
                return False, DETAILS_TEMP_UNAVAILABLE
            return False, MORE_NOT_VISIBLE

        await page.wait_for_timeout(1_200)
        if not _OVERVIEW_URL_RE.search(page.url or ""):
            try:
                await page.goto(self.overview_url, wait_until="domcontentloaded")
            except PlaywrightTimeoutError:
                logger.debug("Navigation to overview timed out; checking current page anyway.")

        for _ in range(5):
            if await self._wait_for_body_text_contains(page, self.selectors.details_ready_text, timeout_ms=3_000):
                await self._step(page, name="more_details_open")
                return True, None
            await page.mouse.wheel(0, 800)

        await self._save_debug(page, name_prefix="more_details_timeout")
        return False, DETAILS_TEMP_UNAVAILABLE

    async def _find_more_details(self, page: Page) -> Optional[Locator]:
        attached: Optional[Locator] = None
        for text in self.selectors.more_details_texts:
            loc = page.get_by_text(text, exact=False).first
            try:
                if await loc.count() == 0:
                    continue
                if await loc.is_visible():
                    return loc
                attached = attached or loc
            except Exception as e:
                _reraise_if_closed(e)
        return attached

    def _renew_button(self, page: Page) -> Locator:
        return page.locator("button", has_text=re.compile(self.selectors.renew_button_text, re.I)).first

    async def _renew_button_enabled(self, page: Page) -> Optional[bool]:
        btn = self._renew_button(page)
        try:
            if not await btn.is_visible():
                return None
            return await btn.get_attribute("disabled") is None
        except Exception as e:
            _reraise_if_closed(e)
            return None

    # --- helpers ---

    def _is_signin_url(self, url: Optional[str]) -> bool:
        return bool(_SIGNIN_URL_RE.search(url or ""))

    async def _body_text(self, page: Page) -> str:
        try:
            return await page.locator("body").inner_text(timeout=10_000)
        except Exception as e:
            _reraise_if_closed(e)
            return ""

    async def _any_text_visible(self, page: Page, texts: tuple[str, ...]) -> bool:
        for text in texts:
            try:
                if await page.get_by_text(text, exact=False).first.is_visible():
                    return True
            except Exception as e:
                _reraise_if_closed(e)
        return False

    async def _wait_for_body_text_contains(self, page: Page, needle: str, *, timeout_ms: int) -> bool:
        """
        Browser-side polling for a substring in `document.body.innerText`.
        """
        try:
            await page.wait_for_function(
                "(needle) => (document.body && (document.body.innerText || '')).includes(needle)",
                arg=needle,
                timeout=timeout_ms,
            )
            return True
        except Exception as e:
            _reraise_if_closed(e)
            return False

    async def _looks_like_browser_error(self, page: Page) -> bool:
        """
        Detect Chromium "This site can't be reached" style error pages (DNS/connectivity).
        """
        if (page.url or "").startswith("chrome-error://"):
            return True
        body = await self._body_text(page)
        return "ERR_NAME_NOT_RESOLVED" in body or "This site can’t be reached" in body or (
            "This site can't be reached" in body
        )

    async def _save_debug(self, page: Page, *, name_prefix: str) -> None:
        if not self.save_debug_artifacts:
            return
        stamp = time.strftime("%Y%m%d_%H%M%S")
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:80] or "debug"
        prefix = f"{safe}_{stamp}"
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
            (out_dir / f"{prefix}.html").write_text(await page.content(), encoding="utf-8")
            # Also save the rendered body text so parsing can be debugged offline without DOM tooling.
            try:
                (out_dir / f"{prefix}.txt").write_text(await page.inner_text("body"), encoding="utf-8")
            except Exception:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    async def _step(self, page: Page, *, name: str) -> None:
        logger.debug("Step %s (url=%s)", name, getattr(page, "url", ""))
        if not self.step_screenshots:
            return
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            stamp = time.strftime("%Y%m%d_%H%M%S")
            await page.screenshot(path=str(out_dir / f"step_{stamp}_{name}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)
