from __future__ import annotations

import random
from typing import Union

from playwright.sync_api import Locator, Page


JITTER_SPREAD_MS = 350


def jitter_ms(base_ms: int, rng: random.Random) -> int:
    return int(base_ms) + rng.randrange(JITTER_SPREAD_MS)


def pause(page: Page, base_ms: int, rng: random.Random) -> None:
    page.wait_for_timeout(jitter_ms(base_ms, rng))


def target_point(box: dict, rng: random.Random) -> tuple[float, float]:
    """A random point in the central 30-70% of an element box, never its exact center."""
    fx = 0.3 + rng.random() * 0.4
    fy = 0.3 + rng.random() * 0.4
    if abs(fx - 0.5) < 1e-3 and abs(fy - 0.5) < 1e-3:
        fx += 0.05
    return box["x"] + box["width"] * fx, box["y"] + box["height"] * fy


def human_click(
    page: Page,
    target: Union[str, Locator],
    rng: random.Random,
    *,
    timeout_ms: int = 15_000,
) -> None:
    loc = page.locator(target).first if isinstance(target, str) else target
    loc.wait_for(state="visible", timeout=timeout_ms)
    loc.scroll_into_view_if_needed(timeout=timeout_ms)
    box = loc.bounding_box()
    if not box:
        loc.click(timeout=timeout_ms)
        return
    x, y = target_point(box, rng)
    page.mouse.move(x, y, steps=8)
    pause(page, 120, rng)
    page.mouse.click(x, y)


def human_type(page: Page, text: str, rng: random.Random, *, base_delay_ms: int = 60) -> None:
    page.keyboard.type(text, delay=jitter_ms(base_delay_ms, rng))


def clear_focused_input(page: Page) -> None:
    page.keyboard.press("Control+A")
    page.keyboard.press("Delete")


def warm_up(page: Page, rng: random.Random) -> None:
    """A few wandering mouse moves and a short scroll before touching the form."""
    for _ in range(2 + rng.randrange(2)):
        page.mouse.move(
            200 + rng.random() * 900,
            150 + rng.random() * 400,
            steps=8 + rng.randrange(10),
        )
        page.wait_for_timeout(300 + rng.randrange(400))
    page.mouse.wheel(0, 80 + rng.randrange(120))
    pause(page, 1000, rng)
