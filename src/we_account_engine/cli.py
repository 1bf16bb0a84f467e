from __future__ import annotations

import argparse
import asyncio
import dataclasses
import getpass
import json
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .engine import AccountEngine
from .errors import EngineError, describe_error
from .logging_config import configure_logging
from .models import AccountSnapshot, Credentials, SessionDiagnostics
from .state import StateStore
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("we_account_engine")

T = TypeVar("T")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="we_account_engine")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Optional YAML config override (default: config.yaml)")
    p.add_argument("--user-id", default="", help="Account key (default: account.user_id / WE_USER_ID)")

    sub = p.add_subparsers(dest="cmd", required=True)

    link = sub.add_parser("link", help="Sign in to my.te.eg, store the session and the credentials for auto-relogin")
    link.add_argument("--service-number", default="", help="Service number (default: WE_SERVICE_NUMBER)")
    link.add_argument("--password", default="", help="Password (default: WE_PASSWORD, else prompt)")
    link.add_argument(
        "--no-save-credentials",
        action="store_true",
        help="Only store the browser session; expired sessions then require `link` again.",
    )

    status = sub.add_parser("status", help="Fetch quota, balance and renewal data with the stored session")
    status.add_argument("--json", action="store_true", help="Print the snapshot as JSON")
    status.add_argument("--no-record", action="store_true", help="Do not store the snapshot in history")
    status.add_argument("--show-diag", action="store_true", help="Also print session diagnostics")

    renew = sub.add_parser("renew", help="Click Renew on the portal")
    renew.add_argument(
        "--force",
        action="store_true",
        help="Skip the pre-renew fetch that checks balance and the Renew button state",
    )

    logout = sub.add_parser("logout", help="Delete the stored session")
    logout.add_argument("--forget-credentials", action="store_true", help="Also delete stored credentials")

    sub.add_parser("diag", help="Print session diagnostics and the last stored snapshot")

    history = sub.add_parser("history", help="Daily usage and recent renew attempts from stored snapshots")
    history.add_argument("--days", type=int, default=7, help="Number of days (default: 7)")

    bundle = sub.add_parser("debug-bundle", help="Zip debug artifacts + log for sharing (no secrets)")
    bundle.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    user_id = (args.user_id or cfg.account.user_id or "default").strip()

    if args.cmd == "debug-bundle":
        out = create_debug_bundle(
            debug_dir=cfg.debug.dir,
            log_file=cfg.logging.file_path,
            out_dir=args.out_dir,
            user_id=user_id,
        )
        print(f"Debug bundle written: {out}")
        return 0

    state = StateStore(cfg.state.db_path)
    run_id = state.record_run_start(args.cmd)
    t0 = time.time()
    try:
        rc = _dispatch(args, cfg, state, user_id)
        state.record_run_finish(run_id, ok=rc == 0)
        logger.info("Command %s finished (rc=%d seconds=%.2f)", args.cmd, rc, time.time() - t0)
        return rc
    except EngineError as e:
        state.record_run_finish(run_id, ok=False, message=f"{e.code}: {e}")
        logger.error("Command %s failed for user=%s: %s", args.cmd, user_id, e)
        _auto_bundle(cfg, user_id)
        print(f"Error: {describe_error(e)}")
        return 1
    except KeyboardInterrupt:
        state.record_run_finish(run_id, ok=False, message="interrupted")
        return 130
    except Exception as e:
        state.record_run_finish(run_id, ok=False, message=str(e))
        logger.exception("Command %s crashed for user=%s", args.cmd, user_id)
        _auto_bundle(cfg, user_id)
        print(f"Error: {describe_error(e)}")
        return 1
    finally:
        state.close()


def _dispatch(args: argparse.Namespace, cfg: AppConfig, state: StateStore, user_id: str) -> int:
    if args.cmd == "link":
        service_number = (args.service_number or cfg.account.service_number or "").strip()
        if not service_number:
            print("A service number is required (--service-number or WE_SERVICE_NUMBER).")
            return 2
        password = args.password or cfg.account.password or getpass.getpass("WE portal password: ")
        if not password:
            print("A password is required.")
            return 2

        _run_engine(cfg, state, lambda eng: eng.login_and_save(user_id, service_number, password))
        if not args.no_save_credentials:
            state.save_credentials(user_id, Credentials(service_number=service_number, password=password))
        print(f"Linked {service_number} (user={user_id}).")
        return 0

    if args.cmd == "status":
        async def _status(eng: AccountEngine) -> tuple[AccountSnapshot, SessionDiagnostics]:
            snap = await eng.fetch_with_session(user_id)
            return snap, eng.get_session_diagnostics(user_id)

        snap, diag = _run_engine(cfg, state, _status)
        if not args.no_record:
            state.record_snapshot(
                user_id,
                snap,
                min_interval_minutes=cfg.state.snapshot_min_interval_minutes,
            )
        if args.json:
            print(snap.model_dump_json(indent=2))
        else:
            print(format_snapshot(snap))
        if args.show_diag:
            print(_format_diag(diag))
        return 0

    if args.cmd == "renew":
        async def _renew(eng: AccountEngine) -> Optional[AccountSnapshot]:
            if not args.force:
                snap = await eng.fetch_with_session(user_id)
                if snap.renew_btn_enabled is False or snap.can_afford is False:
                    return snap
            await eng.renew_with_session(user_id)
            return None

        try:
            skipped = _run_engine(cfg, state, _renew)
        except EngineError as e:
            state.log_renew_action(user_id, "FAILED", details=f"{e.code}: {e}"[:500])
            raise

        if skipped is not None:
            state.log_renew_action(
                user_id,
                "SKIPPED",
                amount_egp=skipped.total_renew_egp,
                details=f"renew_btn_enabled={skipped.renew_btn_enabled} can_afford={skipped.can_afford}",
            )
            print("Renewal is not available right now (insufficient balance or Renew disabled).")
            print(format_snapshot(skipped))
            return 1

        state.log_renew_action(user_id, "CLICKED")
        print("Renew clicked. Check `status` in a minute to confirm the new quota.")
        return 0

    if args.cmd == "logout":
        _run_engine(cfg, state, lambda eng: eng.delete_session(user_id))
        if args.forget_credentials:
            state.delete_credentials(user_id)
        print(f"Logged out (user={user_id}).")
        return 0

    if args.cmd == "diag":
        sessions_dir = Path(cfg.state.sessions_dir)
        has_session = state.get_session(user_id) is not None
        has_creds = state.get_credentials(user_id) is not None
        last = state.latest_snapshot(user_id)
        print(f"user: {user_id}")
        print(f"session stored: {'yes' if has_session else 'no'} (mirror dir: {sessions_dir})")
        print(f"credentials stored: {'yes' if has_creds else 'no'}")
        print(f"last snapshot: {last.captured_at if last else 'none'}")
        return 0

    if args.cmd == "history":
        days = state.daily_usage(user_id, days=max(1, int(args.days)))
        if not days:
            print("No usage history yet. Run `status` a few times a day to build it.")
        for d in days:
            print(f"{d.day}\t{d.used_gb:.2f} GB")
        logs = state.renew_logs(user_id, limit=5)
        if logs:
            print()
            print("Recent renew attempts:")
            for entry in logs:
                amount = f"{entry.amount_egp:.2f} EGP" if entry.amount_egp is not None else "-"
                print(f"- {entry.created_at}\t{entry.status}\t{amount}\t{entry.details}")
        return 0

    raise AssertionError("Unhandled command")


def _auto_bundle(cfg: AppConfig, user_id: str) -> None:
    # Only worth it when page artifacts were captured.
    if not cfg.debug.save_artifacts:
        return
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.debug.dir,
            log_file=cfg.logging.file_path,
            out_dir=str(Path(cfg.debug.dir).parent),
            user_id=user_id,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)


def _run_engine(cfg: AppConfig, state: StateStore, fn: Callable[[AccountEngine], Awaitable[T]]) -> T:
    async def _go() -> T:
        engine = AccountEngine.from_config(cfg, state)
        try:
            return await fn(engine)
        finally:
            await engine.shutdown()

    return asyncio.run(_go())


def _fmt(value: Optional[float], unit: str) -> str:
    return f"{value:.2f} {unit}" if value is not None else "unknown"


def format_snapshot(snap: AccountSnapshot) -> str:
    afford = {True: "yes", False: "no", None: "unknown"}[snap.can_afford]
    lines = [
        "WE Home Internet",
        f"Plan: {snap.plan or 'unknown'}",
        f"Remaining: {_fmt(snap.remaining_gb, 'GB')}",
        f"Used: {_fmt(snap.used_gb, 'GB')} of {_fmt(snap.total_gb, 'GB')}",
        f"Balance: {_fmt(snap.balance_egp, 'EGP')}",
    ]
    if snap.renewal_date is not None:
        days = f" ({snap.remaining_days} days left)" if snap.remaining_days is not None else ""
        lines.append(f"Renewal date: {snap.renewal_date.strftime('%d-%m-%Y')}{days}")
    lines.append(f"Plan price: {_fmt(snap.renew_price_egp, 'EGP')}")
    if snap.router_name:
        router_date = (
            f" (renews {snap.router_renewal_date.strftime('%d-%m-%Y')})" if snap.router_renewal_date else ""
        )
        lines.append(f"{snap.router_name}: {_fmt(snap.router_monthly_egp, 'EGP')}{router_date}")
    lines.append(f"Expected renewal total: {_fmt(snap.total_renew_egp, 'EGP')}")
    lines.append(f"Balance covers renewal: {afford}")
    if snap.details_unavailable:
        lines.append(f"Renewal details unavailable ({snap.details_unavailable}); showing basics only.")
    return "\n".join(lines)


def _format_diag(diag: SessionDiagnostics) -> str:
    return json.dumps(dataclasses.asdict(diag), indent=2, default=str)
