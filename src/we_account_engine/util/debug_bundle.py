from __future__ import annotations

import time
import zipfile
from pathlib import Path


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    user_id: str = "",
) -> Path:
    """
    Zip the saved page artifacts (png/html/txt) and the log file for sharing.

    Session mirrors, the state DB and `.env` are never included: they hold cookies and passwords.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    uid = "".join(ch for ch in (user_id or "").strip() if ch.isalnum() or ch in "-_")
    uid_part = f"_{uid}" if uid else ""
    out_path = out_root / f"we_debug_bundle{uid_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if _looks_secret(file_path):
            return
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # best-effort; a file rotated away mid-bundle is fine
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)

        if dbg.exists() and dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(dbg)
                _add_file(z, p, arcname=str(Path("debug") / rel))

    return out_path


def _looks_secret(path: Path) -> bool:
    name = path.name.lower()
    if name == ".env" or (name.startswith("state-") and name.endswith(".json")):
        return True
    return name.endswith((".db", ".db.bak", ".db-wal", ".db-shm"))
