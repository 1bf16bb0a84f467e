from __future__ import annotations

from pathlib import Path

import pytest

from we_account_engine.config import load_config


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_yaml(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for var in ("WE_BASE_URL", "WE_HEADLESS", "WE_USER_ID", "DEBUG_WE", "WE_MAX_AUTO_RELOGIN"):
        monkeypatch.delenv(var, raising=False)

    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.portal.base_url == "https://my.te.eg/echannel/"
    assert cfg.portal.signin_path == "#/home/signin"
    assert cfg.portal.headless is True
    assert cfg.portal.login_timeout_ms == 120_000
    assert cfg.portal.page_timeout_ms == 90_000
    assert cfg.engine.max_auto_relogin == 2
    assert cfg.account.user_id == "default"
    assert cfg.debug.save_artifacts is False


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WE_HEADLESS", "0")
    monkeypatch.setenv("WE_SERVICE_NUMBER", "0223456789")
    monkeypatch.setenv("WE_PASSWORD", "secret")
    monkeypatch.setenv("WE_MAX_LOGIN_ATTEMPTS", "5")
    monkeypatch.setenv("DEBUG_WE", "yes")

    cfg = load_config(None)
    assert cfg.portal.headless is False
    assert cfg.account.service_number == "0223456789"
    assert cfg.engine.max_login_attempts == 5
    assert cfg.debug.save_artifacts is True
    assert "secret" not in repr(cfg.account)


def test_yaml_overrides_env_and_expands_vars(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WE_SERVICE_NUMBER", "from-env")
    monkeypatch.setenv("MY_WE_PASSWORD", "from-yaml-env")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
portal:
  base_url: "https://my.te.eg/echannel"
  page_timeout_ms: 30000
account:
  user_id: "12345"
  password: "${MY_WE_PASSWORD}"
state:
  snapshot_min_interval_minutes: 15
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.portal.base_url == "https://my.te.eg/echannel/"
    assert cfg.portal.page_timeout_ms == 30000
    # Deep merge keeps env values the YAML does not mention.
    assert cfg.account.service_number == "from-env"
    assert cfg.account.password == "from-yaml-env"
    assert cfg.account.user_id == "12345"
    assert cfg.state.snapshot_min_interval_minutes == 15


def test_invalid_base_url_rejected(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
portal:
  base_url: "my.te.eg"
""",
    )
    with pytest.raises(Exception):
        _ = load_config(cfg_path)


def test_negative_relogin_bound_rejected(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
engine:
  max_auto_relogin: -1
""",
    )
    with pytest.raises(Exception):
        _ = load_config(cfg_path)
