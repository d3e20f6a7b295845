from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from ..config import BrowserConfig, PortalConfig
from ..errors import AutomationTimeout, EngineUnavailableError, PreSubmitGateError
from ..extraction.extractor import PageCapture
from ..identifiers import format_dashed, mask_identifier, normalize_identifier
from ..models import CheckResult, FilingStatus, Track
from ..storage import ObjectStorage, screenshot_path, slugify
from .engines import Engine, resolve_engine
from .humanize import clear_focused_input, human_click, human_type, pause, warm_up
from .selectors import FederalSelectors, StateSelectors


logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1366, "height": 768}
LOCALE = "en-US"


@dataclass(frozen=True)
class PortalRequest:
    identifier: str
    refund_amount: int
    tax_year: int
    filing_status: FilingStatus = "single"
    client_name: str = ""

    def __repr__(self) -> str:
        return (
            f"PortalRequest(identifier={mask_identifier(self.identifier)!r}, refund_amount={self.refund_amount}, "
            f"tax_year={self.tax_year}, filing_status={self.filing_status!r}, client_name={self.client_name!r})"
        )


@dataclass
class AutomationOutcome:
    result: CheckResult
    capture: Optional[PageCapture] = None
    screenshot_path: Optional[str] = None
    error_message: Optional[str] = None
    engine: Optional[str] = None


class PortalAutomator(Protocol):
    track: Track

    def check_refund_status(self, request: PortalRequest) -> AutomationOutcome: ...


class Deadline:
    """Wall-clock bound for one check; Playwright waits are clipped to what is left."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + float(seconds)
        self.seconds = float(seconds)

    def remaining_ms(self) -> int:
        return max(0, int((self._expires_at - self._clock()) * 1000))

    def clip(self, timeout_ms: int) -> int:
        return max(1, min(int(timeout_ms), self.remaining_ms()))

    def check(self, stage: str) -> None:
        if self.remaining_ms() <= 0:
            raise AutomationTimeout(f"Check exceeded {self.seconds:.0f}s while {stage}")


def classify_exception(e: BaseException) -> CheckResult:
    if isinstance(e, (AutomationTimeout, PlaywrightTimeoutError)):
        return "timeout"
    if "timeout" in str(e).lower():
        return "timeout"
    return "error"


class PortalClient:
    """
    One fresh browser per check, driven through a portal's lookup form up to the result page.

    `check_refund_status` never raises: every fault becomes an `error` / `timeout` outcome.
    """

    track: Track = "federal"

    def __init__(
        self,
        *,
        portal: PortalConfig,
        browser: BrowserConfig,
        storage: Optional[ObjectStorage] = None,
        check_timeout_s: float = 120.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.portal = portal
        self.browser_cfg = browser
        self.storage = storage
        self.check_timeout_s = float(check_timeout_s)
        self.rng = rng or random.Random()

        self._step_counter = 0
        self._client_label = ""

    def check_refund_status(self, request: PortalRequest) -> AutomationOutcome:
        self._step_counter = 0
        self._client_label = request.client_name or "client"
        deadline = Deadline(self.check_timeout_s)
        engine_name: Optional[str] = None

        try:
            with sync_playwright() as p:
                engine = resolve_engine(p, self.browser_cfg.engines)
                engine_name = engine.name
                capture = self._run(p, engine, request, deadline)
        except (EngineUnavailableError, PreSubmitGateError) as e:
            logger.error("[%s] %s", self._client_label, e)
            return AutomationOutcome(result="error", error_message=str(e), engine=engine_name)
        except Exception as e:
            result = classify_exception(e)
            logger.error("[%s] %s check failed (%s): %s", self._client_label, self.track, result, e)
            return AutomationOutcome(result=result, error_message=f"{type(e).__name__}: {e}", engine=engine_name)

        stored_path = self._upload_screenshot(capture.screenshot, request.client_name)
        return AutomationOutcome(result="success", capture=capture, screenshot_path=stored_path, engine=engine_name)

    def _run(self, p, engine: Engine, request: PortalRequest, deadline: Deadline) -> PageCapture:
        logger.info("[%s] Launching %s for the %s portal...", self._client_label, engine.name, self.track)
        browser = engine.launch(p, headless=self.browser_cfg.headless, slow_mo_ms=self.browser_cfg.slow_mo_ms)
        try:
            ctx = browser.new_context(**self._context_kwargs(engine))
            try:
                ctx.add_init_script(engine.init_script)
                page = ctx.new_page()
                page.set_default_timeout(deadline.clip(15_000))
                try:
                    self._fill_and_submit(page, request, deadline)
                    deadline.check("waiting for the result page")
                    return self._capture(page)
                except Exception:
                    self._save_debug(page, name_prefix=f"{self.track}_{slugify(request.client_name)}_failed")
                    raise
                finally:
                    page.close()
            finally:
                ctx.close()
        finally:
            browser.close()

    def _context_kwargs(self, engine: Engine) -> dict:
        kwargs: dict = {
            "user_agent": engine.user_agent,
            "viewport": dict(VIEWPORT),
            "locale": LOCALE,
            "timezone_id": self.portal.timezone,
            "color_scheme": "light",
        }
        if self.browser_cfg.proxy_url:
            kwargs["proxy"] = {"server": self.browser_cfg.proxy_url}
        return kwargs

    def _fill_and_submit(self, page: Page, request: PortalRequest, deadline: Deadline) -> None:  # pragma: no cover
        raise NotImplementedError

    def _result_heading_selector(self) -> str:  # pragma: no cover
        raise NotImplementedError

    def _goto_portal(self, page: Page, deadline: Deadline) -> None:
        page.goto(self.portal.url, timeout=deadline.clip(30_000))
        self._wait_for_settle(page, deadline, timeout_ms=15_000)
        pause(page, 2000, self.rng)

    def _wait_for_settle(self, page: Page, deadline: Deadline, *, timeout_ms: int) -> None:
        # Government portals keep long-polling; networkidle is best-effort only.
        try:
            page.wait_for_load_state("networkidle", timeout=deadline.clip(timeout_ms))
        except PlaywrightTimeoutError:
            pass
        deadline.check("waiting for the page to settle")

    def _capture(self, page: Page) -> PageCapture:
        screenshot: Optional[bytes] = None
        try:
            screenshot = page.screenshot(type="png", full_page=False)
        except PlaywrightError as e:
            logger.warning("[%s] Result screenshot failed: %s", self._client_label, e)

        try:
            text = page.inner_text("body")
        except PlaywrightError:
            text = ""

        try:
            headings = tuple(h for h in page.locator(self._result_heading_selector()).all_inner_texts() if h.strip())
        except PlaywrightError:
            headings = ()

        return PageCapture(screenshot=screenshot, text=text, headings=headings, url=page.url)

    def _upload_screenshot(self, screenshot: Optional[bytes], client_name: str) -> Optional[str]:
        if not screenshot or self.storage is None:
            return None
        path = screenshot_path(client_name, datetime.now(timezone.utc))
        try:
            self.storage.upload(self.portal.bucket, path, screenshot, "image/png")
        except Exception as e:
            logger.warning("[%s] Screenshot upload failed (non-fatal): %s", self._client_label, e)
            return None
        logger.info("[%s] Screenshot saved: %s/%s", self._client_label, self.portal.bucket, path)
        return path

    def _gate(self, checks: list[tuple[bool, str]]) -> None:
        """Every (ok, message) pair must hold before the form is submitted."""
        for ok, message in checks:
            if not ok:
                raise PreSubmitGateError(f"Pre-submit gate FAILED: {message}")
        logger.info("[%s] Pre-submit gate PASSED (%d fields).", self._client_label, len(checks))

    def _input_value(self, page: Page, selector: str) -> str:
        try:
            return page.locator(selector).first.input_value(timeout=5_000)
        except PlaywrightError:
            return ""

    def _is_checked(self, page: Page, selector: str) -> bool:
        try:
            return page.locator(selector).first.is_checked(timeout=5_000)
        except PlaywrightError:
            return False

    def _save_debug(self, page: Page, *, name_prefix: str) -> None:
        try:
            out_dir = Path(self.browser_cfg.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
            prefix = f"{name_prefix}_{stamp}"
            page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
            (out_dir / f"{prefix}.html").write_text(page.content(), encoding="utf-8")
            # Also save the rendered body text so extraction can be debugged offline without DOM tooling.
            try:
                (out_dir / f"{prefix}.txt").write_text(page.inner_text("body"), encoding="utf-8")
            except PlaywrightError:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    def _step(self, page: Page, name: str) -> None:
        self._step_counter += 1
        logger.info("[%s] Step %02d %s (url=%s)", self._client_label, self._step_counter, name, getattr(page, "url", ""))

        if not self.browser_cfg.step_debug:
            return
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "step"
        try:
            out_dir = Path(self.browser_cfg.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"{self.track}_step_{self._step_counter:02d}_{safe}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)


class FederalPortalClient(PortalClient):
    """IRS "Where's My Refund": identifier, tax-year radio, filing-status radio, refund amount."""

    track: Track = "federal"

    def __init__(self, *, selectors: Optional[FederalSelectors] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.selectors = selectors or FederalSelectors()

    def _result_heading_selector(self) -> str:
        return self.selectors.result_headings

    def _fill_and_submit(self, page: Page, request: PortalRequest, deadline: Deadline) -> None:
        s = self.selectors
        identifier = normalize_identifier(request.identifier)
        amount = str(int(request.refund_amount))
        year = str(int(request.tax_year))
        filing_id = s.filing_status_id(request.filing_status)

        self._step(page, "navigate")
        self._goto_portal(page, deadline)
        warm_up(page, self.rng)

        self._step(page, "identifier")
        human_click(page, s.identifier_input, self.rng, timeout_ms=deadline.clip(15_000))
        human_type(page, identifier, self.rng, base_delay_ms=60)
        pause(page, 700, self.rng)
        deadline.check("filling the identifier")

        self._step(page, f"tax_year_{year}")
        human_click(page, s.tax_year_label.format(year=year), self.rng, timeout_ms=deadline.clip(10_000))
        pause(page, 700, self.rng)

        self._step(page, f"filing_status_{filing_id}")
        human_click(page, s.filing_status_label.format(id=filing_id), self.rng, timeout_ms=deadline.clip(10_000))
        pause(page, 700, self.rng)
        deadline.check("selecting radios")

        self._step(page, "refund_amount")
        amount_input = page.get_by_label(re.compile(s.refund_amount_label, re.IGNORECASE)).first
        human_click(page, amount_input, self.rng, timeout_ms=deadline.clip(10_000))
        clear_focused_input(page)
        human_type(page, amount, self.rng, base_delay_ms=70)
        pause(page, 700, self.rng)

        typed_identifier = re.sub(r"\D", "", self._input_value(page, s.identifier_input))
        try:
            typed_amount = amount_input.input_value(timeout=5_000)
        except PlaywrightError:
            typed_amount = ""

        self._gate(
            [
                (
                    typed_identifier == identifier,
                    f"identifier field holds {mask_identifier(typed_identifier)!r}, "
                    f"expected {mask_identifier(identifier)!r}",
                ),
                (
                    self._is_checked(page, s.tax_year_radio.format(year=year)),
                    f"tax year {year} is not selected",
                ),
                (
                    self._is_checked(page, s.filing_status_radio.format(id=filing_id)),
                    f'filing status "{filing_id}" is not selected',
                ),
                (typed_amount == amount, f'refund amount is "{typed_amount}", expected "{amount}"'),
            ]
        )
        deadline.check("verifying the form")

        self._step(page, "submit")
        human_click(page, s.submit, self.rng, timeout_ms=deadline.clip(10_000))
        logger.info("[%s] Form submitted; waiting for the federal result...", self._client_label)

        # SPA: the URL does not change, so wait for the result heading instead.
        try:
            page.wait_for_selector(s.result_headings, timeout=deadline.clip(15_000))
        except PlaywrightTimeoutError:
            logger.warning("[%s] Result heading did not appear; capturing the page as-is.", self._client_label)
        self._wait_for_settle(page, deadline, timeout_ms=10_000)
        pause(page, 1500, self.rng)


class StatePortalClient(PortalClient):
    """Colorado Revenue Online "Where's My Refund": entry link, dashed identifier, refund amount."""

    track: Track = "state"

    def __init__(self, *, selectors: Optional[StateSelectors] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.selectors = selectors or StateSelectors()

    def _result_heading_selector(self) -> str:
        return self.selectors.result_headings

    def _fill_and_submit(self, page: Page, request: PortalRequest, deadline: Deadline) -> None:
        s = self.selectors
        dashed = format_dashed(request.identifier)
        amount = str(int(request.refund_amount))

        self._step(page, "navigate")
        self._goto_portal(page, deadline)
        warm_up(page, self.rng)

        self._step(page, "open_refund_form")
        human_click(page, s.entry_link, self.rng, timeout_ms=deadline.clip(15_000))
        pause(page, 1500, self.rng)
        page.wait_for_selector(s.identifier_input, timeout=deadline.clip(15_000))
        deadline.check("opening the refund form")

        self._step(page, "identifier")
        human_click(page, s.identifier_input, self.rng, timeout_ms=deadline.clip(10_000))
        human_type(page, dashed, self.rng, base_delay_ms=60)
        pause(page, 700, self.rng)

        self._step(page, "refund_amount")
        human_click(page, s.refund_amount_input, self.rng, timeout_ms=deadline.clip(10_000))
        human_type(page, amount, self.rng, base_delay_ms=50)
        pause(page, 700, self.rng)

        typed_identifier = self._input_value(page, s.identifier_input)
        typed_amount = self._input_value(page, s.refund_amount_input)
        self._gate(
            [
                (
                    typed_identifier == dashed,
                    f"identifier field holds {mask_identifier(typed_identifier)!r}, expected {mask_identifier(dashed)!r}",
                ),
                (typed_amount == amount, f'refund amount is "{typed_amount}", expected "{amount}"'),
            ]
        )
        deadline.check("verifying the form")

        page.mouse.move(400 + self.rng.random() * 500, 500 + self.rng.random() * 100, steps=10)
        pause(page, 600, self.rng)

        self._step(page, "submit")
        human_click(page, s.submit, self.rng, timeout_ms=deadline.clip(10_000))
        logger.info("[%s] Form submitted; waiting for the state result...", self._client_label)
        self._wait_for_settle(page, deadline, timeout_ms=20_000)
        pause(page, 2000, self.rng)
