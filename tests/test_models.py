from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from we_account_engine.models import AccountSnapshot, Credentials


def test_can_afford_plan_only() -> None:
    snap = AccountSnapshot(balance_egp=100.0, renew_price_egp=80.0, router_monthly_egp=None)
    assert snap.total_renew_egp == 80.0
    assert snap.can_afford is True


def test_can_afford_with_router_short_balance() -> None:
    snap = AccountSnapshot(balance_egp=50.0, renew_price_egp=80.0, router_monthly_egp=20.0)
    assert snap.total_renew_egp == 100.0
    assert snap.can_afford is False


def test_unknowns_propagate() -> None:
    snap = AccountSnapshot(remaining_gb=10.0)
    assert snap.total_gb is None
    assert snap.total_renew_egp is None
    assert snap.can_afford is None

    no_balance = AccountSnapshot(renew_price_egp=80.0)
    assert no_balance.total_renew_egp == 80.0
    assert no_balance.can_afford is None


def test_total_gb_is_rounded() -> None:
    snap = AccountSnapshot(used_gb=38.44, remaining_gb=361.56)
    assert snap.total_gb == 400.0
    assert AccountSnapshot(used_gb=0.1, remaining_gb=0.2).total_gb == 0.3


def test_blank_strings_become_unknown() -> None:
    snap = AccountSnapshot(plan="  ", router_name="", details_unavailable=" MORE_NOT_VISIBLE ")
    assert snap.plan is None
    assert snap.router_name is None
    assert snap.details_unavailable == "MORE_NOT_VISIBLE"


def test_snapshot_is_frozen_and_serializes_derived_fields() -> None:
    snap = AccountSnapshot(
        plan="Super speed 1",
        balance_egp=1000.0,
        renew_price_egp=910.0,
        router_monthly_egp=63.0,
        renewal_date=date(2026, 2, 15),
    )
    with pytest.raises(ValidationError):
        snap.balance_egp = 1.0  # type: ignore[misc]

    data = snap.model_dump()
    assert data["total_renew_egp"] == 973.0
    assert data["can_afford"] is True
    assert data["renewal_date"] == date(2026, 2, 15)
    assert data["captured_at"].tzinfo is not None


def test_credentials_repr_hides_password() -> None:
    creds = Credentials(service_number="0223456789", password="hunter2")
    assert "hunter2" not in repr(creds)
    assert "0223456789" in repr(creds)
