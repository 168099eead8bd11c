from __future__ import annotations

"""
EMBED_SUMMARY: Cancellation reason collection: trigger queueing on booking cancellation, reason capture and analytics.
EMBED_TAGS: cancellations, reasons, feedback triggers, analytics
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .config import get_settings
from .errors import ValidationError
from .models import CancellationReason, FeedbackTrigger, SystemEvent
from .schemas import CancellationReasonIn


logger = logging.getLogger("insights.events")

UNCATEGORIZED = "uncategorized"


def enqueue_reason_collection(db: Session, event: SystemEvent, now: Optional[datetime] = None) -> Optional[FeedbackTrigger]:
    if not event.client_id:
        logger.info("booking cancellation %s has no client; no reason collection queued", event.id)
        return None
    now = now or datetime.utcnow()
    trigger = FeedbackTrigger(
        id=str(uuid.uuid4()),
        trigger_type="cancellation",
        client_id=event.client_id,
        class_id=event.class_id,
        enrollment_id=event.enrollment_id,
        event_id=event.id,
        status="pending",
        expires_at=now + timedelta(days=get_settings().feedback_trigger_ttl_days),
        created_at=now,
    )
    db.add(trigger)
    db.commit()
    logger.info("cancellation reason collection queued client=%s event=%s", event.client_id, event.id)
    return trigger


def record_cancellation_reason(db: Session, payload: CancellationReasonIn) -> CancellationReason:
    category = (payload.reason_category or "").strip() or None
    text = (payload.reason_text or "").strip() or None
    if not category and not text:
        raise ValidationError("reason_category or reason_text is required")
    if payload.hours_before_class is not None and payload.hours_before_class < 0:
        raise ValidationError("hours_before_class must not be negative")

    reason = CancellationReason(
        id=str(uuid.uuid4()),
        event_id=payload.event_id,
        class_id=payload.class_id,
        enrollment_id=payload.enrollment_id,
        client_id=payload.client_id,
        reason_category=category,
        reason_text=text,
        hours_before_class=payload.hours_before_class,
        is_rebooked=payload.is_rebooked,
        rebooked_to_class_id=payload.rebooked_to_class_id,
    )
    db.add(reason)

    if payload.event_id:
        trigger = db.execute(
            select(FeedbackTrigger).where(
                and_(
                    FeedbackTrigger.event_id == payload.event_id,
                    FeedbackTrigger.trigger_type == "cancellation",
                    FeedbackTrigger.status == "pending",
                )
            )
        ).scalars().first()
        if trigger is not None:
            trigger.status = "completed"
            trigger.completed_at = datetime.utcnow()
            db.add(trigger)
    db.commit()
    db.refresh(reason)

    from .dispatcher import track_event

    track_event(
        db,
        {
            "event_type": "cancellation_reason_recorded",
            "client_id": payload.client_id,
            "class_id": payload.class_id,
            "enrollment_id": payload.enrollment_id,
            "metadata": {"reason_id": reason.id, "reason_category": category, "source_event_id": payload.event_id},
        },
    )
    return reason


def cancellation_analytics(db: Session, days: int = 30, now: Optional[datetime] = None) -> dict:
    if days < 1:
        raise ValidationError("days must be at least 1")
    now = now or datetime.utcnow()
    rows = db.execute(
        select(CancellationReason).where(CancellationReason.created_at >= now - timedelta(days=days))
    ).scalars().all()

    groups: dict = defaultdict(list)
    for r in rows:
        groups[r.reason_category or UNCATEGORIZED].append(r)

    total = len(rows)
    by_category = []
    for category, items in groups.items():
        hours = [r.hours_before_class for r in items if r.hours_before_class is not None]
        by_category.append(
            {
                "category": category,
                "count": len(items),
                "percentage": round(len(items) / total * 100, 2),
                "average_hours_before": round(sum(hours) / len(hours), 2) if hours else None,
            }
        )
    by_category.sort(key=lambda c: (-c["count"], c["category"]))
    return {"total_cancellations": total, "period_days": days, "by_category": by_category}
