from __future__ import annotations

from pathlib import Path

import pytest

from refund_monitor.config import load_config


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "PLAYWRIGHT_ENGINES",
        "FEDERAL_AUTO_APPLY",
        "STATE_AUTO_APPLY",
        "STATE_PORTAL_STATE_CODES",
        "SCHEDULE_TIME",
        "STORAGE_BACKEND",
        "OPENAI_API_KEY",
        "CHECK_RETRY_DELAY_S",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_yaml(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.browser.engines == ["chromium-stealth", "firefox", "chrome"]
    assert cfg.portals.federal.auto_apply is True
    assert cfg.portals.state.auto_apply is False
    assert cfg.portals.state.state_codes == ["CO", "Colorado"]
    assert cfg.monitor.retry_delay_s == 5.0
    assert cfg.monitor.check_timeout_s == 120.0
    assert cfg.monitor.schedule_hour_minute == (8, 0)
    assert cfg.storage.backend == "local"
    assert cfg.vision.usable is False


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLAYWRIGHT_ENGINES", "firefox, chrome")
    monkeypatch.setenv("STATE_AUTO_APPLY", "yes")
    monkeypatch.setenv("STATE_PORTAL_STATE_CODES", "CO")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.browser.engines == ["firefox", "chrome"]
    assert cfg.portals.state.auto_apply is True
    assert cfg.portals.state.state_codes == ["CO"]
    assert cfg.vision.usable is True


def test_yaml_merges_over_env_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MY_BUCKET", "from-env")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
portals:
  federal:
    bucket: "${MY_BUCKET}"
monitor:
  schedule_time: "06:30"
storage:
  backend: "S3"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.portals.federal.bucket == "from-env"
    # Untouched keys keep their env/default values.
    assert cfg.portals.federal.url == "https://sa.www4.irs.gov/wmr/"
    assert cfg.monitor.schedule_hour_minute == (6, 30)
    assert cfg.storage.backend == "s3"


def test_unknown_engine_rejected(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", "browser:\n  engines: [chromium-stealth, safari]\n")
    with pytest.raises(ValueError):
        load_config(cfg_path)


def test_bad_schedule_time_rejected(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", 'monitor:\n  schedule_time: "25:00"\n')
    with pytest.raises(ValueError):
        load_config(cfg_path)


def test_portal_url_must_be_absolute(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", 'portals:\n  state:\n    url: "colorado.gov"\n')
    with pytest.raises(ValueError):
        load_config(cfg_path)
