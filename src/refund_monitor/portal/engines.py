from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Sequence

from ..errors import EngineUnavailableError


logger = logging.getLogger(__name__)

ENGINE_NAMES: tuple[str, ...] = ("chromium-stealth", "firefox", "chrome")

INSTALL_HINT = "Run: pip install playwright && playwright install chromium firefox"

_CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)
_FIREFOX_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0"

# Executables Playwright looks for when launching with channel="chrome".
_CHROME_CHANNEL_PATHS = (
    "/opt/google/chrome/chrome",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
)


WEBDRIVER_ONLY_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
"""

STEALTH_SCRIPT = """
(() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
  Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
  window.chrome = window.chrome || { runtime: {} };
  try {
    const query = window.navigator.permissions && window.navigator.permissions.query;
    if (query) {
      window.navigator.permissions.query = (params) =>
        params && params.name === 'notifications'
          ? Promise.resolve({ state: Notification.permission })
          : query(params);
    }
  } catch (_) {}
})();
"""


@dataclass(frozen=True)
class Engine:
    name: str
    browser: Literal["chromium", "firefox"]
    user_agent: str
    init_script: str
    channel: Optional[str] = None

    def browser_type(self, p):
        return getattr(p, self.browser)

    def is_installed(self, p) -> bool:
        if self.channel == "chrome":
            return any(Path(x).exists() for x in _CHROME_CHANNEL_PATHS) or bool(
                shutil.which("google-chrome") or shutil.which("google-chrome-stable")
            )
        try:
            exe = self.browser_type(p).executable_path
        except Exception:
            logger.debug("Could not read executable path for engine %s.", self.name, exc_info=True)
            return False
        return bool(exe) and Path(exe).exists()

    def launch(self, p, *, headless: bool, slow_mo_ms: int = 0):
        kwargs: dict = {"headless": headless, "slow_mo": int(slow_mo_ms or 0)}
        if self.channel:
            kwargs["channel"] = self.channel
        return self.browser_type(p).launch(**kwargs)


ENGINES: dict[str, Engine] = {
    "chromium-stealth": Engine(
        name="chromium-stealth",
        browser="chromium",
        user_agent=_CHROME_UA,
        init_script=STEALTH_SCRIPT,
    ),
    "firefox": Engine(
        name="firefox",
        browser="firefox",
        user_agent=_FIREFOX_UA,
        init_script=WEBDRIVER_ONLY_SCRIPT,
    ),
    "chrome": Engine(
        name="chrome",
        browser="chromium",
        user_agent=_CHROME_UA,
        init_script=STEALTH_SCRIPT,
        channel="chrome",
    ),
}


_resolved: dict[tuple[str, ...], Engine] = {}
_resolve_lock = threading.Lock()


def resolve_engine(p, names: Sequence[str]) -> Engine:
    """
    First engine in `names` whose browser is installed.

    Resolved once per process per engine list and reused; raises EngineUnavailableError when none is installed.
    """
    key = tuple(names)
    with _resolve_lock:
        cached = _resolved.get(key)
        if cached is not None:
            return cached

        for name in key:
            engine = ENGINES.get(name)
            if engine is None:
                continue
            if engine.is_installed(p):
                logger.info("Using browser engine %s.", engine.name)
                _resolved[key] = engine
                return engine
            logger.warning("Browser engine %s is not installed; trying the next one.", name)

    raise EngineUnavailableError(f"No browser engine available (tried {', '.join(key)}). {INSTALL_HINT}")


def forget_resolved_engines() -> None:
    with _resolve_lock:
        _resolved.clear()
