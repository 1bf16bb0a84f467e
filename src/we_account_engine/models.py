from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def _round2(value: float) -> float:
    return round(value, 2)


class AccountSnapshot(BaseModel):
    """
    One extraction of the account overview. Unknown values are always None (never 0 or "").
    """

    model_config = ConfigDict(frozen=True)

    plan: Optional[str] = None
    remaining_gb: Optional[float] = None
    used_gb: Optional[float] = None
    balance_egp: Optional[float] = None

    renewal_date: Optional[date] = None
    remaining_days: Optional[int] = None
    renew_price_egp: Optional[float] = None

    router_name: Optional[str] = None
    router_monthly_egp: Optional[float] = None
    router_renewal_date: Optional[date] = None

    renew_btn_enabled: Optional[bool] = None
    # MORE_NOT_VISIBLE / DETAILS_TEMP_UNAVAILABLE when the details panel could not be opened.
    details_unavailable: Optional[str] = None

    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("plan", "router_name", "details_unavailable", mode="before")
    @classmethod
    def _blank_is_unknown(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_gb(self) -> Optional[float]:
        if self.used_gb is None or self.remaining_gb is None:
            return None
        return _round2(self.used_gb + self.remaining_gb)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_renew_egp(self) -> Optional[float]:
        if self.renew_price_egp is None and self.router_monthly_egp is None:
            return None
        return _round2((self.renew_price_egp or 0.0) + (self.router_monthly_egp or 0.0))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def can_afford(self) -> Optional[bool]:
        total = self.total_renew_egp
        if self.balance_egp is None or total is None:
            return None
        return self.balance_egp >= total


@dataclass(frozen=True)
class Credentials:
    service_number: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SessionDiagnostics:
    has_session: bool = False
    last_fetch_at: Optional[datetime] = None
    last_error: Optional[str] = None
    current_url: Optional[str] = None
    method_picked: Optional[str] = None
    more_details_visible: Optional[bool] = None


@dataclass(frozen=True)
class ExtractionResult:
    snapshot: AccountSnapshot
    method_picked: str
    more_details_visible: bool
    current_url: Optional[str] = None
