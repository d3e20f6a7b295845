from __future__ import annotations

import logging
from typing import Protocol

from .state import CaseStore


logger = logging.getLogger(__name__)

STATUS_CHANGE_CATEGORY = "status_change"


class Notifier(Protocol):
    def notify(self, user_id: str, category: str, title: str, body: str) -> None: ...


class StoreNotifier:
    """Writes notifications to the `notifications` table; delivery is someone else's job."""

    def __init__(self, store: CaseStore) -> None:
        self.store = store

    def notify(self, user_id: str, category: str, title: str, body: str) -> None:
        notification_id = self.store.add_notification(user_id=user_id, category=category, title=title, body=body)
        logger.debug("Queued notification id=%s category=%s for user=%s.", notification_id, category, user_id)
