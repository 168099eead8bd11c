from __future__ import annotations

"""
EMBED_SUMMARY: Routes recorded events to follow-up handlers (cancellation reason collection, inactivity risk checks).
EMBED_TAGS: events, dispatch, routing, at-risk, cancellations

Handlers run after the event is committed. A failing handler is logged and its session work
rolled back; the event itself stays recorded and the caller never sees the error.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

from .at_risk import AtRiskDetector
from .cancellations import enqueue_reason_collection
from .config import Settings, get_settings
from .event_store import EventStore
from .models import SystemEvent
from .notifications import NotificationDispatcher


logger = logging.getLogger("insights.dispatcher")

INACTIVITY_EVENT_TYPES = ("client_inactivity_30", "client_inactivity_60", "client_inactivity_90")


class EventDispatcher:
    def __init__(
        self,
        db: Session,
        detector: Optional[AtRiskDetector] = None,
        notifier: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self._detector = detector
        self._notifier = notifier
        self.routes: Dict[str, Callable[[SystemEvent], None]] = {
            "class_booking_cancelled": self._on_booking_cancelled,
        }
        for event_type in INACTIVITY_EVENT_TYPES:
            self.routes[event_type] = self._on_inactivity

    @property
    def detector(self) -> AtRiskDetector:
        if self._detector is None:
            self._detector = AtRiskDetector(self.db, settings=self.settings, notifier=self._notifier)
        return self._detector

    def dispatch(self, event: SystemEvent) -> None:
        handler = self.routes.get(event.event_type)
        if handler is None:
            return
        try:
            handler(event)
        except Exception:
            self.db.rollback()
            logger.exception("handler failed for event id=%s type=%s", event.id, event.event_type)

    def _on_booking_cancelled(self, event: SystemEvent) -> None:
        enqueue_reason_collection(self.db, event)

    def _on_inactivity(self, event: SystemEvent) -> None:
        if not event.client_id:
            logger.info("inactivity event %s has no client; skipped", event.id)
            return
        if self.detector.has_active(event.client_id):
            logger.info("client %s already flagged at risk; inactivity event %s ignored", event.client_id, event.id)
            return
        assessment = self.detector.assess_client(event.client_id)
        if assessment is None:
            logger.info("client %s below risk thresholds after %s", event.client_id, event.event_type)
            return
        self.detector.upsert_detected(assessment)


def track_event(
    db: Session,
    payload: Union[BaseModel, Mapping[str, Any]],
    dispatcher: Optional[EventDispatcher] = None,
) -> str:
    """Record an event, run its follow-up handlers and return the event id."""
    event = EventStore(db).record(payload)
    (dispatcher or EventDispatcher(db)).dispatch(event)
    return event.id
