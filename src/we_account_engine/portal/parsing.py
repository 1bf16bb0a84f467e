from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Protocol

from ..util.dates import parse_portal_date
from ..util.numbers import find_egp_amounts, num_from_text


_PLAN_RE = re.compile(r"Your Current Plan\s*([^\n]{3,80})", re.I)
_PLAN_FALLBACK_RE = re.compile(r"Super speed[^\n]{0,80}", re.I)
_BALANCE_RE = re.compile(r"Current Balance\s*([\d.,]+)\s*EGP", re.I)
_QUOTA_RE = re.compile(r"Home Internet\s*([\d.,]+)\s*Remaining\s*([\d.,]+)\s*Used", re.I)

_RENEW_COST_RE = re.compile(r"Renewal Cost:\s*([\d.,]+)\s*EGP", re.I)
_RENEWAL_LINE_RE = re.compile(
    r"Renewal Date:\s*([0-9]{2}-[0-9]{2}-[0-9]{4})\s*,?\s*(\d+)\s*Remaining Days",
    re.I,
)
_RENEWAL_DATE_ONLY_RE = re.compile(r"Renewal Date:\s*([0-9]{2}-[0-9]{2}-[0-9]{4})", re.I)
_ROUTER_PRICE_RE = re.compile(r"Price:\s*([\d.,]+)\s*EGP", re.I)

ROUTER_MARKER = "premium router"
ROUTER_NAME = "PREMIUM Router"
# How far past the router marker its price/date can appear.
ROUTER_SEGMENT_CHARS = 1600


def normalize_body_text(text: Optional[str]) -> str:
    """
    Normalize `innerText` the way both overview parsers expect it:
    NBSP -> space, runs of spaces/tabs collapsed, no carriage returns.
    """
    s = str(text or "").replace("\u00a0", " ")
    s = re.sub(r"[ \t]+", " ", s)
    return s.replace("\r", "").strip()


@dataclass(frozen=True)
class OverviewBasics:
    plan: Optional[str] = None
    balance_egp: Optional[float] = None
    remaining_gb: Optional[float] = None
    used_gb: Optional[float] = None

    def is_empty(self) -> bool:
        return self.plan is None and self.balance_egp is None and self.remaining_gb is None and self.used_gb is None

    def is_complete(self) -> bool:
        return None not in (self.plan, self.balance_egp, self.remaining_gb, self.used_gb)

    def merged_with(self, other: "OverviewBasics") -> "OverviewBasics":
        """
        Fill our unknown fields from `other`; known values are never overwritten.
        """
        return OverviewBasics(
            plan=self.plan if self.plan is not None else other.plan,
            balance_egp=self.balance_egp if self.balance_egp is not None else other.balance_egp,
            remaining_gb=self.remaining_gb if self.remaining_gb is not None else other.remaining_gb,
            used_gb=self.used_gb if self.used_gb is not None else other.used_gb,
        )


@dataclass(frozen=True)
class OverviewDetails:
    renew_price_egp: Optional[float] = None
    renewal_date: Optional[date] = None
    remaining_days: Optional[int] = None
    router_name: Optional[str] = None
    router_monthly_egp: Optional[float] = None
    router_renewal_date: Optional[date] = None


def _safe_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return parse_portal_date(raw)
    except ValueError:
        return None


def parse_account_overview_text(body_text: Optional[str]) -> OverviewBasics:
    """
    Parse the `#/accountoverview` page text.

    Example input (rendered body text):
        Your Current Plan
        Super speed 1
        Current Balance 1,250.75 EGP
        Home Internet 361.56 Remaining 38.44 Used
    """
    text = normalize_body_text(body_text)

    plan: Optional[str] = None
    m = _PLAN_RE.search(text)
    if m:
        plan = m.group(1).strip() or None
    if plan is None:
        m = _PLAN_FALLBACK_RE.search(text)
        if m:
            plan = m.group(0).strip() or None

    balance = None
    m = _BALANCE_RE.search(text)
    if m:
        balance = num_from_text(m.group(1))

    remaining = used = None
    m = _QUOTA_RE.search(text)
    if m:
        remaining = num_from_text(m.group(1))
        used = num_from_text(m.group(2))

    return OverviewBasics(plan=plan, balance_egp=balance, remaining_gb=remaining, used_gb=used)


def parse_renewal_line(text: Optional[str]) -> tuple[Optional[date], Optional[int]]:
    """
    "Renewal Date: 15-02-2026, 12 Remaining Days" -> (date(2026, 2, 15), 12)

    Both parts come from one match; either both are returned or neither.
    """
    m = _RENEWAL_LINE_RE.search(normalize_body_text(text))
    if not m:
        return None, None
    renewal = _safe_date(m.group(1))
    if renewal is None:
        return None, None
    return renewal, int(m.group(2))


def parse_overview_details_text(body_text: Optional[str]) -> OverviewDetails:
    """
    Parse the `#/overview` page text after "More Details" has been expanded.
    """
    text = normalize_body_text(body_text)

    renew_price = None
    m = _RENEW_COST_RE.search(text)
    if m:
        renew_price = num_from_text(m.group(1))

    renewal_date, remaining_days = parse_renewal_line(text)

    router_name = None
    router_price = None
    router_date = None
    idx = text.lower().find(ROUTER_MARKER)
    if idx >= 0:
        seg = text[idx : idx + ROUTER_SEGMENT_CHARS]
        router_name = ROUTER_NAME
        m = _ROUTER_PRICE_RE.search(seg)
        if m:
            router_price = num_from_text(m.group(1))
        m = _RENEWAL_DATE_ONLY_RE.search(seg)
        if m:
            router_date = _safe_date(m.group(1))

    return OverviewDetails(
        renew_price_egp=renew_price,
        renewal_date=renewal_date,
        remaining_days=remaining_days,
        router_name=router_name,
        router_monthly_egp=router_price,
        router_renewal_date=router_date,
    )


def pick_plan_title(titles: Iterable[Optional[str]]) -> Optional[str]:
    """
    Pick the plan name out of `span[title]` attribute values.

    The overview renders several titled spans (buttons, links); the plan is the
    first short one that is not a "More Details"-style control label.
    """
    for raw in titles:
        t = (raw or "").strip()
        if not (3 < len(t) < 50):
            continue
        if "Details" in t or "More" in t:
            continue
        return t
    return None


class RenewPriceStrategy(Protocol):
    def pick(
        self,
        amounts: list[float],
        *,
        balance_egp: Optional[float],
        router_monthly_egp: Optional[float],
    ) -> Optional[float]: ...


def _same_amount(a: float, b: Optional[float]) -> bool:
    return b is not None and math.isclose(a, b, abs_tol=0.005)


class ExcludeKnownLargestStrategy:
    """
    Heuristic used when the portal does not label the renewal cost.

    Drop every amount equal to the balance or the router price; of what is left,
    a single value wins, several -> the largest, none -> unknown. This can pick
    the wrong number if the page adds other EGP amounts (offers, add-ons).
    """

    def pick(
        self,
        amounts: list[float],
        *,
        balance_egp: Optional[float],
        router_monthly_egp: Optional[float],
    ) -> Optional[float]:
        left = [
            a
            for a in amounts
            if not _same_amount(a, balance_egp) and not _same_amount(a, router_monthly_egp)
        ]
        if not left:
            return None
        if len(left) == 1:
            return left[0]
        return max(left)


def resolve_renew_price(
    details_text: Optional[str],
    *,
    labelled: Optional[float],
    balance_egp: Optional[float],
    router_monthly_egp: Optional[float],
    strategy: Optional[RenewPriceStrategy] = None,
) -> Optional[float]:
    if labelled is not None:
        return labelled
    amounts = find_egp_amounts(normalize_body_text(details_text))
    if not amounts:
        return None
    strat = strategy or ExcludeKnownLargestStrategy()
    return strat.pick(amounts, balance_egp=balance_egp, router_monthly_egp=router_monthly_egp)
