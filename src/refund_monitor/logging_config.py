import logging
import os
import re
from pathlib import Path
from typing import Optional


# 9-digit taxpayer ids, bare or dashed. Anything that slips into a log line is masked to the last four.
_IDENTIFIER_RE = re.compile(r"\b(\d{3})-?(\d{2})-?(\d{4})\b")


class IdentifierRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = _IDENTIFIER_RE.sub(lambda m: f"***-**-{m.group(3)}", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    redaction = IdentifierRedactionFilter()
    for handler in handlers:
        handler.addFilter(redaction)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # the scheduler re-runs configure_logging() after reloading config
    )

    # Reduce noise from chatty libraries
    for noisy in ("playwright", "httpx", "httpcore", "botocore", "boto3", "s3transfer", "urllib3"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
