from __future__ import annotations

"""
EMBED_SUMMARY: Fire-and-forget notification providers (log and webhook) for newly surfaced insights.
EMBED_TAGS: notifications, webhook, alerts, admin, provider
"""

import json
import logging
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .models import SystemLog


logger = logging.getLogger("insights.notify")


class NotificationDispatcher:
    def send(self, topic: str, payload: dict) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def notify(self, topic: str, payload: dict) -> bool:
        """Deliver without ever raising; returns whether delivery succeeded."""
        try:
            self.send(topic, payload)
            return True
        except Exception:
            logger.exception("notification failed topic=%s", topic)
            return False


class LogNotifier(NotificationDispatcher):
    """Writes the notification to the application log and, with a session, to system_log."""

    def __init__(self, db: Optional[Session] = None) -> None:
        self.db = db

    def send(self, topic: str, payload: dict) -> None:
        logger.info("notify topic=%s payload=%s", topic, payload)
        if self.db is None:
            return
        self.db.add(
            SystemLog(
                actor="insights",
                action="notify",
                entity=topic,
                entity_id=str(payload.get("id") or payload.get("client_id") or ""),
                status="logged",
                meta_json=json.dumps(payload, default=str),
            )
        )
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


class WebhookNotifier(NotificationDispatcher):
    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def send(self, topic: str, payload: dict) -> None:
        body = {"topic": topic, "payload": payload}
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.url, content=json.dumps(body, default=str), headers={"Content-Type": "application/json"})
            resp.raise_for_status()


def get_notifier(db: Optional[Session] = None) -> NotificationDispatcher:
    settings = get_settings()
    if settings.notifications_provider == "webhook":
        if settings.notifications_webhook_url:
            return WebhookNotifier(settings.notifications_webhook_url, timeout=settings.notifications_timeout_seconds)
        logger.warning("webhook notifications selected without APP_NOTIFICATIONS_WEBHOOK_URL; logging instead")
    return LogNotifier(db)
