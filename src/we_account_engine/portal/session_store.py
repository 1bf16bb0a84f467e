from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from ..errors import NoSession
from ..state import StateStore


logger = logging.getLogger(__name__)


def _looks_like_storage_state(raw: str) -> bool:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return False
    return isinstance(data, dict)


class SessionStore:
    """
    Per-user Playwright storage_state persistence.

    The sqlite row is the source of truth; the JSON file under `sessions_dir` is a mirror
    because Playwright's `new_context(storage_state=...)` wants a path.
    """

    def __init__(self, state: StateStore, sessions_dir: str) -> None:
        self.state = state
        self.sessions_dir = Path(sessions_dir)

    def mirror_path(self, user_id: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in str(user_id))
        return self.sessions_dir / f"state-{safe}.json"

    def save(self, user_id: str, blob: str) -> Path:
        self.state.save_session(user_id, blob)
        path = self.mirror_path(user_id)
        self._write_mirror(path, blob)
        logger.info("Saved portal session for user=%s", user_id)
        return path

    def read(self, user_id: str) -> Optional[str]:
        blob = self.state.get_session(user_id)
        if blob:
            return blob
        path = self.mirror_path(user_id)
        try:
            if path.exists():
                return path.read_text(encoding="utf-8") or None
        except OSError:
            logger.debug("Failed to read session mirror path=%s", path, exc_info=True)
        return None

    def exists(self, user_id: str) -> bool:
        try:
            return self.read(user_id) is not None
        except Exception:
            logger.debug("Session existence check failed for user=%s", user_id, exc_info=True)
            return False

    def delete(self, user_id: str) -> None:
        self.state.delete_session(user_id)
        path = self.mirror_path(user_id)
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.debug("Failed to remove session mirror path=%s", path, exc_info=True)

    def restore(self, user_id: str) -> Path:
        """
        Return a usable mirror path for the user, rebuilding it from the durable copy when
        it is missing or does not look like a storage_state JSON object.
        """
        path = self.mirror_path(user_id)
        current: Optional[str] = None
        try:
            if path.exists():
                current = path.read_text(encoding="utf-8")
        except OSError:
            current = None
        mirror_ok = current is not None and _looks_like_storage_state(current)

        durable = self.state.get_session(user_id)
        if durable and current != durable:
            self._write_mirror(path, durable)
            logger.debug("Rebuilt session mirror for user=%s", user_id)
            return path

        if mirror_ok:
            return path

        raise NoSession()

    def _write_mirror(self, path: Path, blob: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(blob, encoding="utf-8")
        tmp.replace(path)
