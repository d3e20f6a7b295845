from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import VisionConfig
from ..errors import VisionError


logger = logging.getLogger(__name__)


class VisionVerdict(BaseModel):
    """
    What the vision model read off a result-page screenshot.

    Strict: a reply that omits a field or sends the wrong type (e.g. `"found": "yes"`) is rejected, never coerced.
    """

    model_config = ConfigDict(strict=True, extra="ignore")

    status: str
    details: str
    found: bool


def parse_verdict(content: str) -> Optional[VisionVerdict]:
    """
    Decode the first JSON object embedded in a free-text model reply.

    Returns None for no object, malformed JSON, or a missing/mistyped field.
    """
    if not isinstance(content, str):
        return None
    start = content.find("{")
    if start < 0:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(content[start:])
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    try:
        verdict = VisionVerdict.model_validate(obj)
    except ValidationError:
        return None
    if not verdict.status.strip():
        return None
    return verdict


def _system_prompt(portal_title: str, labels: tuple[str, ...]) -> str:
    quoted = ", ".join(f'"{label}"' for label in labels)
    return (
        f'You read screenshots of the {portal_title} page and extract the refund status.\n'
        "Return ONLY valid JSON with these fields:\n"
        f'- "status": the main status shown, one of: {quoted}\n'
        '- "details": a short human-readable summary of any additional info on the page '
        "(dates, amounts, instructions). If the page shows an error or is unavailable, describe that briefly.\n"
        '- "found": true if a refund status was found, false if the return was not found, '
        "the page errored, or the service was unavailable."
    )


class VisionClient:
    """
    Single-turn chat completion against an OpenAI-compatible endpoint with one image part.
    """

    def __init__(self, cfg: VisionConfig, *, http: Optional[httpx.Client] = None) -> None:
        self.cfg = cfg
        self._http = http

    @property
    def available(self) -> bool:
        return self.cfg.usable

    def read_status(
        self,
        screenshot_png: bytes,
        *,
        portal_title: str,
        labels: tuple[str, ...],
        client_name: str = "",
    ) -> Optional[VisionVerdict]:
        """
        Ask the model for `{status, details, found}`.

        Raises VisionError on transport/HTTP failure; returns None when the reply cannot be parsed.
        """
        if not self.available:
            raise VisionError("Vision model is not configured (set OPENAI_API_KEY or disable vision)")

        b64 = base64.b64encode(screenshot_png).decode("ascii")
        payload: dict[str, Any] = {
            "model": self.cfg.model,
            "temperature": 0,
            "max_tokens": 300,
            "messages": [
                {"role": "system", "content": _system_prompt(portal_title, labels)},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": f"Extract the refund status from this screenshot for client {client_name or 'unknown'}.",
                        },
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{b64}", "detail": "low"}},
                    ],
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.cfg.api_key}",
            "Content-Type": "application/json",
        }
        url = self.cfg.base_url.rstrip("/") + "/chat/completions"

        try:
            if self._http is not None:
                resp = self._http.post(url, headers=headers, json=payload, timeout=self.cfg.timeout_s)
            else:
                resp = httpx.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=self.cfg.timeout_s,
                    follow_redirects=True,
                )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise VisionError(f"Vision request failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise VisionError(f"Vision request failed: {type(e).__name__}: {e}") from e

        try:
            raw = resp.json()
            msg = raw["choices"][0]["message"]
            content = msg.get("content") if isinstance(msg, dict) else None
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise VisionError(f"Unexpected vision response shape: {e}") from e

        if not isinstance(content, str) or not content.strip():
            logger.debug("Vision reply had no text content.")
            return None

        verdict = parse_verdict(content)
        if verdict is None:
            logger.debug("Unparseable vision reply: %r", content[:200])
        return verdict
