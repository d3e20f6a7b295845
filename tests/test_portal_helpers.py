from __future__ import annotations

import random
from pathlib import Path

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from refund_monitor.errors import AutomationTimeout, EngineUnavailableError
from refund_monitor.portal import engines
from refund_monitor.portal.client import Deadline, classify_exception
from refund_monitor.portal.humanize import JITTER_SPREAD_MS, jitter_ms, target_point
from refund_monitor.portal.selectors import FederalSelectors


def test_jitter_stays_in_range() -> None:
    rng = random.Random(7)
    for _ in range(200):
        v = jitter_ms(500, rng)
        assert 500 <= v < 500 + JITTER_SPREAD_MS


def test_target_point_inside_box_and_off_center() -> None:
    rng = random.Random(1)
    box = {"x": 100.0, "y": 50.0, "width": 200.0, "height": 40.0}
    for _ in range(200):
        x, y = target_point(box, rng)
        assert 100 + 200 * 0.3 <= x <= 100 + 200 * 0.75
        assert 50 + 40 * 0.3 <= y <= 50 + 40 * 0.7
        assert (x, y) != (200.0, 70.0)


def test_deadline_clips_and_expires() -> None:
    now = [0.0]
    d = Deadline(10, clock=lambda: now[0])
    assert d.remaining_ms() == 10_000
    assert d.clip(30_000) == 10_000
    assert d.clip(500) == 500
    now[0] = 11.0
    assert d.remaining_ms() == 0
    assert d.clip(500) == 1
    with pytest.raises(AutomationTimeout):
        d.check("waiting for the result page")


def test_classify_exception() -> None:
    assert classify_exception(AutomationTimeout("x")) == "timeout"
    assert classify_exception(PlaywrightTimeoutError("Timeout 5000ms exceeded")) == "timeout"
    assert classify_exception(RuntimeError("navigation timeout")) == "timeout"
    assert classify_exception(RuntimeError("selector not found")) == "error"


def test_filing_status_ids() -> None:
    s = FederalSelectors()
    ids = {s.filing_status_id(fs) for fs in ("single", "married_joint", "married_separate", "head_of_household")}
    assert len(ids) == 4


class _FakeBrowserType:
    def __init__(self, exe: str) -> None:
        self.executable_path = exe


class _FakePlaywright:
    def __init__(self, chromium: str, firefox: str) -> None:
        self.chromium = _FakeBrowserType(chromium)
        self.firefox = _FakeBrowserType(firefox)


@pytest.fixture(autouse=True)
def _reset_engine_cache():
    engines.forget_resolved_engines()
    yield
    engines.forget_resolved_engines()


def test_resolve_engine_falls_through_and_caches(tmp_path: Path) -> None:
    firefox = tmp_path / "firefox"
    firefox.write_text("")
    p = _FakePlaywright(chromium=str(tmp_path / "missing-chromium"), firefox=str(firefox))

    engine = engines.resolve_engine(p, ["chromium-stealth", "firefox"])
    assert engine.name == "firefox"

    # Cached for the process even if the executable disappears.
    firefox.unlink()
    assert engines.resolve_engine(p, ["chromium-stealth", "firefox"]).name == "firefox"


def test_resolve_engine_none_installed(tmp_path: Path) -> None:
    p = _FakePlaywright(chromium=str(tmp_path / "a"), firefox=str(tmp_path / "b"))
    with pytest.raises(EngineUnavailableError, match="playwright install"):
        engines.resolve_engine(p, ["chromium-stealth", "firefox"])
