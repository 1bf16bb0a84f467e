from __future__ import annotations

import json
from pathlib import Path

import pytest

from we_account_engine.errors import NoSession
from we_account_engine.portal.session_store import SessionStore
from we_account_engine.state import StateStore


BLOB = json.dumps({"cookies": [{"name": "sid", "value": "abc"}], "origins": []})


def _store(tmp_path: Path) -> tuple[SessionStore, StateStore]:
    state = StateStore(str(tmp_path / "state.db"))
    return SessionStore(state, str(tmp_path / "sessions")), state


def test_save_writes_durable_copy_and_mirror(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        path = sessions.save("42", BLOB)
        assert path == tmp_path / "sessions" / "state-42.json"
        assert path.read_text(encoding="utf-8") == BLOB
        assert state.get_session("42") == BLOB
        assert sessions.exists("42")
    finally:
        state.close()


def test_restore_rebuilds_missing_mirror(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        path = sessions.save("42", BLOB)
        path.unlink()
        assert sessions.restore("42") == path
        assert path.read_text(encoding="utf-8") == BLOB
    finally:
        state.close()


def test_restore_rewrites_corrupt_mirror(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        path = sessions.save("42", BLOB)
        path.write_text("{not json", encoding="utf-8")
        sessions.restore("42")
        assert json.loads(path.read_text(encoding="utf-8"))["cookies"][0]["name"] == "sid"
    finally:
        state.close()


def test_restore_without_any_session_raises(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        with pytest.raises(NoSession):
            sessions.restore("nobody")
        assert not sessions.exists("nobody")
    finally:
        state.close()


def test_restore_accepts_mirror_only_session(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        path = sessions.mirror_path("42")
        path.parent.mkdir(parents=True)
        path.write_text(BLOB, encoding="utf-8")
        assert sessions.restore("42") == path
    finally:
        state.close()


def test_delete_is_idempotent(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        path = sessions.save("42", BLOB)
        sessions.delete("42")
        sessions.delete("42")
        assert not path.exists()
        assert state.get_session("42") is None
        assert not sessions.exists("42")
    finally:
        state.close()


def test_mirror_path_is_filesystem_safe(tmp_path: Path) -> None:
    sessions, state = _store(tmp_path)
    try:
        assert sessions.mirror_path("../x y").name == "state-___x_y.json"
    finally:
        state.close()
