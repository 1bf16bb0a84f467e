from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .models import AccountSnapshot, Credentials
from .util.dates import cairo_day


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSnapshot:
    id: int
    user_id: str
    day: str
    captured_at: str
    used_gb: Optional[float]
    remaining_gb: Optional[float]
    plan: Optional[str]
    balance_egp: Optional[float]
    renewal_date: Optional[str]
    remaining_days: Optional[int]
    renew_price_egp: Optional[float]
    router_monthly_egp: Optional[float]
    router_renewal_date: Optional[str]
    total_renew_egp: Optional[float]


@dataclass(frozen=True)
class DailyUsage:
    day: str
    used_gb: float


@dataclass(frozen=True)
class RenewLogEntry:
    id: int
    user_id: str
    status: str
    amount_egp: Optional[float]
    details: str
    created_at: str


def _iso_or_none(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


class StateStore:
    """
    Durable sqlite state: portal sessions, stored credentials, usage snapshots and renew logs.

    Credentials are stored as plaintext; keep the DB file private to the bot's host user.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.

        Losing this DB loses the stored sessions and the saved credentials; only the user can re-supply
        those, by running `link` again.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
              user_id TEXT PRIMARY KEY,
              blob TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
              user_id TEXT PRIMARY KEY,
              service_number TEXT NOT NULL,
              password TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              day TEXT NOT NULL,
              captured_at TEXT NOT NULL,
              used_gb REAL,
              remaining_gb REAL,
              plan TEXT,
              balance_egp REAL,
              renewal_date TEXT,
              remaining_days INTEGER,
              renew_price_egp REAL
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_user_day ON snapshots(user_id, day);")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS renew_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              status TEXT NOT NULL,
              amount_egp REAL,
              details TEXT,
              created_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              command TEXT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._apply_light_migrations()
        self._conn.commit()

    def _apply_light_migrations(self) -> None:
        # Router columns arrived after the first snapshot schema.
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(snapshots);").fetchall()}
        if "router_monthly_egp" not in cols:
            self._conn.execute("ALTER TABLE snapshots ADD COLUMN router_monthly_egp REAL;")
        if "router_renewal_date" not in cols:
            self._conn.execute("ALTER TABLE snapshots ADD COLUMN router_renewal_date TEXT;")
        if "total_renew_egp" not in cols:
            self._conn.execute("ALTER TABLE snapshots ADD COLUMN total_renew_egp REAL;")

    # --- sessions ---

    def save_session(self, user_id: str, blob: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """
            INSERT INTO sessions(user_id, blob, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              blob = excluded.blob,
              updated_at = excluded.updated_at;
            """,
            (str(user_id), blob, now),
        )
        self._conn.commit()

    def get_session(self, user_id: str) -> Optional[str]:
        row = self._conn.execute("SELECT blob FROM sessions WHERE user_id = ?;", (str(user_id),)).fetchone()
        return row[0] if row else None

    def delete_session(self, user_id: str) -> None:
        self._conn.execute("DELETE FROM sessions WHERE user_id = ?;", (str(user_id),))
        self._conn.commit()

    # --- credentials ---

    def save_credentials(self, user_id: str, creds: Credentials) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """
            INSERT INTO credentials(user_id, service_number, password, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              service_number = excluded.service_number,
              password = excluded.password,
              updated_at = excluded.updated_at;
            """,
            (str(user_id), creds.service_number, creds.password, now),
        )
        self._conn.commit()

    def get_credentials(self, user_id: str) -> Optional[Credentials]:
        row = self._conn.execute(
            "SELECT service_number, password FROM credentials WHERE user_id = ?;",
            (str(user_id),),
        ).fetchone()
        if not row:
            return None
        return Credentials(service_number=row[0], password=row[1])

    def delete_credentials(self, user_id: str) -> None:
        self._conn.execute("DELETE FROM credentials WHERE user_id = ?;", (str(user_id),))
        self._conn.commit()

    # --- snapshots ---

    def record_snapshot(self, user_id: str, snapshot: AccountSnapshot, *, min_interval_minutes: int = 0) -> bool:
        """
        Persist a snapshot. Returns False when skipped because the previous one is too recent.
        """
        captured = snapshot.captured_at
        if captured.tzinfo is None:
            captured = captured.replace(tzinfo=timezone.utc)

        if min_interval_minutes > 0:
            last = self.latest_snapshot(user_id)
            if last is not None:
                last_at = datetime.fromisoformat(last.captured_at)
                if last_at.tzinfo is None:
                    last_at = last_at.replace(tzinfo=timezone.utc)
                delta = captured - last_at
                if timedelta(0) <= delta < timedelta(minutes=min_interval_minutes):
                    logger.debug("Skipping snapshot for user=%s (previous is %s old)", user_id, delta)
                    return False

        self._conn.execute(
            """
            INSERT INTO snapshots(
              user_id, day, captured_at,
              used_gb, remaining_gb, plan, balance_egp,
              renewal_date, remaining_days, renew_price_egp,
              router_monthly_egp, router_renewal_date, total_renew_egp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                str(user_id),
                cairo_day(captured),
                captured.isoformat(),
                snapshot.used_gb,
                snapshot.remaining_gb,
                snapshot.plan,
                snapshot.balance_egp,
                _iso_or_none(snapshot.renewal_date),
                snapshot.remaining_days,
                snapshot.renew_price_egp,
                snapshot.router_monthly_egp,
                _iso_or_none(snapshot.router_renewal_date),
                snapshot.total_renew_egp,
            ),
        )
        self._conn.commit()
        return True

    _SNAPSHOT_COLUMNS = (
        "id, user_id, day, captured_at, used_gb, remaining_gb, plan, balance_egp, "
        "renewal_date, remaining_days, renew_price_egp, router_monthly_egp, router_renewal_date, total_renew_egp"
    )

    def latest_snapshot(self, user_id: str) -> Optional[StoredSnapshot]:
        row = self._conn.execute(
            f"SELECT {self._SNAPSHOT_COLUMNS} FROM snapshots WHERE user_id = ? ORDER BY captured_at DESC, id DESC LIMIT 1;",
            (str(user_id),),
        ).fetchone()
        return StoredSnapshot(*row) if row else None

    def recent_snapshots(self, user_id: str, *, limit: int = 20) -> list[StoredSnapshot]:
        rows = self._conn.execute(
            f"SELECT {self._SNAPSHOT_COLUMNS} FROM snapshots WHERE user_id = ? ORDER BY captured_at DESC, id DESC LIMIT ?;",
            (str(user_id), int(limit)),
        ).fetchall()
        return [StoredSnapshot(*r) for r in rows]

    def daily_usage(self, user_id: str, *, days: int = 7) -> list[DailyUsage]:
        """
        GB used per Cairo day (max - min of the cumulative counter), newest first.

        A day whose counter went down (quota renewed mid-day) reports its max instead.
        """
        rows = self._conn.execute(
            """
            SELECT day, MIN(used_gb), MAX(used_gb)
            FROM snapshots
            WHERE user_id = ? AND used_gb IS NOT NULL
            GROUP BY day
            ORDER BY day DESC
            LIMIT ?;
            """,
            (str(user_id), int(days)),
        ).fetchall()
        out: list[DailyUsage] = []
        for day, lo, hi in rows:
            diff = float(hi) - float(lo)
            out.append(DailyUsage(day=day, used_gb=round(diff if diff >= 0 else float(hi), 2)))
        return out

    # --- renew log ---

    def log_renew_action(
        self,
        user_id: str,
        status: str,
        *,
        amount_egp: Optional[float] = None,
        details: str = "",
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "INSERT INTO renew_logs(user_id, status, amount_egp, details, created_at) VALUES (?, ?, ?, ?, ?);",
            (str(user_id), str(status), amount_egp, str(details or ""), now),
        )
        self._conn.commit()

    def renew_logs(self, user_id: str, *, limit: int = 20) -> list[RenewLogEntry]:
        rows = self._conn.execute(
            """
            SELECT id, user_id, status, amount_egp, details, created_at
            FROM renew_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?;
            """,
            (str(user_id), int(limit)),
        ).fetchall()
        return [RenewLogEntry(*r) for r in rows]

    # --- runs ---

    def record_run_start(self, command: str = "") -> int:
        now = datetime.now(timezone.utc).isoformat()
        cur = self._conn.execute("INSERT INTO runs(command, started_at) VALUES (?, ?);", (command or None, now))
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
            (now, 1 if ok else 0, message, run_id),
        )
        self._conn.commit()

        # Only refresh backups after a successful run (avoid snapshotting a potentially bad state).
        if ok:
            self._maybe_backup(if_missing=False)
