from __future__ import annotations

"""
EMBED_SUMMARY: Append-only store of typed business events with a closed event_type enumeration.
EMBED_TAGS: events, tracking, audit, validation, append-only

record() validates and appends exactly one row; there is no update or delete. Corrections are
modelled as new events. Reads order by (occurred_at, seq) so ties keep insertion order.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import SystemEvent


logger = logging.getLogger("insights.events")


EVENT_TYPES = frozenset(
    {
        "class_booking_created",
        "class_booking_cancelled",
        "class_booking_rescheduled",
        "trainer_assigned",
        "trainer_replaced",
        "trainer_reassigned",
        "client_inactivity_30",
        "client_inactivity_60",
        "client_inactivity_90",
        "payment_success",
        "payment_failure",
        "package_expired",
        "package_topup",
        "emergency_sop_activated",
        "referral_code_used",
        "referral_converted",
        "marketing_message_sent",
        "client_feedback_submitted",
        "trainer_feedback_submitted",
        "client_at_risk_detected",
        "cancellation_reason_recorded",
        "revenue_leakage_detected",
    }
)

CHANNELS = frozenset({"admin", "whatsapp", "ai_bot", "web", "mobile", "system"})
OUTCOME_STATUSES = frozenset({"success", "failure", "pending", "partial"})

_REFERENCE_FIELDS = ("client_id", "trainer_id", "class_id", "enrollment_id", "payment_id", "location")


def as_utc_naive(value: Any) -> Optional[datetime]:
    """Columns hold naive UTC; offset-aware inputs are converted before storage."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid occurred_at: {value}") from None
    if not isinstance(value, datetime):
        raise ValidationError("occurred_at must be a datetime")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def event_to_dict(event: SystemEvent) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "occurred_at": event.occurred_at,
        "recorded_at": event.recorded_at,
        "client_id": event.client_id,
        "trainer_id": event.trainer_id,
        "class_id": event.class_id,
        "enrollment_id": event.enrollment_id,
        "payment_id": event.payment_id,
        "location": event.location,
        "channel": event.channel,
        "outcome_status": event.outcome_status,
        "metadata": event.event_metadata or {},
    }


class EventStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def record(self, payload: Union[BaseModel, Mapping[str, Any]], commit: bool = True) -> SystemEvent:
        """Validate and append one event.

        With commit=False the row is only flushed, so a caller can append the event in the same
        transaction as the derived row it describes.
        """
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)

        event_type = data.get("event_type")
        if event_type is not None and not isinstance(event_type, str):
            raise ValidationError("event_type must be a string")
        event_type = (event_type or "").strip()
        if not event_type:
            raise ValidationError("event_type is required")
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Invalid event_type: {event_type}")

        channel = data.get("channel") or "web"
        if not isinstance(channel, str) or channel not in CHANNELS:
            raise ValidationError(f"Invalid channel: {channel}")
        outcome_status = data.get("outcome_status") or "success"
        if not isinstance(outcome_status, str) or outcome_status not in OUTCOME_STATUSES:
            raise ValidationError(f"Invalid outcome_status: {outcome_status}")

        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        now = datetime.utcnow()
        event = SystemEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            occurred_at=as_utc_naive(data.get("occurred_at")) or now,
            recorded_at=now,
            channel=channel,
            outcome_status=outcome_status,
            event_metadata=metadata or None,
            **{field: data.get(field) or None for field in _REFERENCE_FIELDS},
        )
        self.db.add(event)
        if commit:
            self.db.commit()
            self.db.refresh(event)
        else:
            self.db.flush()
        logger.info("event recorded id=%s type=%s client=%s", event.id, event.event_type, event.client_id)
        return event

    def get(self, event_id: str) -> SystemEvent:
        event = self.db.execute(select(SystemEvent).where(SystemEvent.id == event_id)).scalar_one_or_none()
        if event is None:
            raise NotFoundError("Event not found")
        return event

    def list(
        self,
        event_type: Optional[str] = None,
        client_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SystemEvent]:
        if event_type and event_type not in EVENT_TYPES:
            raise ValidationError(f"Invalid event_type: {event_type}")
        stmt = select(SystemEvent)
        if event_type:
            stmt = stmt.where(SystemEvent.event_type == event_type)
        if client_id:
            stmt = stmt.where(SystemEvent.client_id == client_id)
        if since:
            stmt = stmt.where(SystemEvent.occurred_at >= as_utc_naive(since))
        stmt = stmt.order_by(SystemEvent.occurred_at, SystemEvent.seq).limit(limit)
        return list(self.db.execute(stmt).scalars().all())
