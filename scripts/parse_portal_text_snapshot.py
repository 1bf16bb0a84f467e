#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def _emit(payload: dict, out: str) -> None:
    out_json = json.dumps(payload, indent=2, sort_keys=False, default=str)
    if out:
        Path(out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from we_account_engine.portal.parsing import (
        parse_account_overview_text,
        parse_overview_details_text,
        resolve_renew_price,
    )

    p = argparse.ArgumentParser(
        prog="parse_portal_text_snapshot",
        description=(
            "Parse Playwright-saved portal text snapshots (from data/debug/*.txt) into structured JSON.\n"
            "This is intended for debugging parsing regressions offline (no Playwright, no secrets)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    overview = sub.add_parser("overview", help="Parse an #/accountoverview text snapshot (plan, balance, quota)")
    overview.add_argument("--file", required=True, help="Path to a debug .txt file captured from the account overview")
    overview.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    details = sub.add_parser("details", help="Parse an #/overview text snapshot after More Details was opened")
    details.add_argument("--file", required=True, help="Path to a debug .txt file captured from the overview page")
    details.add_argument("--balance", type=float, default=None, help="Known balance (EGP) for renew-price guessing")
    details.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)

    if args.cmd == "overview":
        basics = parse_account_overview_text(_read_text(args.file))
        _emit({"basics": dataclasses.asdict(basics), "complete": basics.is_complete()}, args.out)
        return 0

    if args.cmd == "details":
        body_text = _read_text(args.file)
        parsed = parse_overview_details_text(body_text)
        renew_price = resolve_renew_price(
            body_text,
            labelled=parsed.renew_price_egp,
            balance_egp=args.balance,
            router_monthly_egp=parsed.router_monthly_egp,
        )
        _emit({"details": dataclasses.asdict(parsed), "renew_price_egp": renew_price}, args.out)
        return 0

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
