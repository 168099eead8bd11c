from __future__ import annotations

"""
EMBED_SUMMARY: Revenue leakage detection from cancelled classes, leakage summaries and recovery.
EMBED_TAGS: revenue, leakage, cancellations, recovery, recovery rate

Detection: every enrollment of a class cancelled within the last period_days, whose class has a
positive price and no unrecovered leakage row, yields one cancellation_no_show row with
amount_lost_cents = class price. The partial unique index uq_leakage_open_class_enrollment keeps
one unrecovered row per (class, enrollment) even under concurrent runs.

Summary formulas:
- total_lost_cents = sum(amount_lost_cents)
- total_recovered_cents = sum(recovery_amount_cents where recovered)
- net_loss_cents = total_lost_cents - total_recovered_cents
- recovery_rate = total_recovered_cents / total_lost_cents * 100, clamped to [0, 100]; 0 when nothing lost
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .event_store import EventStore
from .models import Enrollment, RevenueLeakage, StudioClass
from .notifications import NotificationDispatcher, get_notifier


logger = logging.getLogger("insights.leakage")

CANCELLATION_NO_SHOW = "cancellation_no_show"


def leakage_to_dict(record: RevenueLeakage) -> dict:
    return {
        "id": record.id,
        "client_id": record.client_id,
        "class_id": record.class_id,
        "enrollment_id": record.enrollment_id,
        "leakage_type": record.leakage_type,
        "amount_lost_cents": record.amount_lost_cents,
        "recovered": record.recovered,
        "recovery_amount_cents": record.recovery_amount_cents,
        "description": record.description,
        "detected_at": record.detected_at,
        "recovered_at": record.recovered_at,
    }


class LeakageDetector:
    def __init__(self, db: Session, notifier: Optional[NotificationDispatcher] = None) -> None:
        self.db = db
        self.notifier = notifier or get_notifier(db)
        self.failures: List[str] = []

    def _has_open_record(self, class_id: str, enrollment_id: str) -> bool:
        found = self.db.execute(
            select(RevenueLeakage.id).where(
                and_(
                    RevenueLeakage.class_id == class_id,
                    RevenueLeakage.enrollment_id == enrollment_id,
                    RevenueLeakage.recovered.is_(False),
                )
            )
        ).first()
        return found is not None

    def _insert(self, cls: StudioClass, enrollment: Enrollment, now: datetime) -> Optional[RevenueLeakage]:
        record = RevenueLeakage(
            id=str(uuid.uuid4()),
            client_id=enrollment.client_id,
            class_id=cls.id,
            enrollment_id=enrollment.id,
            leakage_type=CANCELLATION_NO_SHOW,
            amount_lost_cents=int(cls.price_cents or 0),
            recovered=False,
            recovery_amount_cents=0,
            description=f"Cancelled class: {cls.name or 'Unnamed class'}",
            detected_at=now,
        )
        self.db.add(record)
        try:
            EventStore(self.db).record(
                {
                    "event_type": "revenue_leakage_detected",
                    "client_id": enrollment.client_id,
                    "class_id": cls.id,
                    "enrollment_id": enrollment.id,
                    "channel": "system",
                    "metadata": {"leakage_type": CANCELLATION_NO_SHOW, "amount_cents": record.amount_lost_cents},
                },
                commit=False,
            )
            self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent run; the open row already exists.
            self.db.rollback()
            return None
        return record

    def detect_leakage(self, period_days: int = 30, now: Optional[datetime] = None) -> List[RevenueLeakage]:
        if period_days < 1:
            raise ValidationError("period_days must be at least 1")
        now = now or datetime.utcnow()
        since = (now - timedelta(days=period_days)).date()
        self.failures = []

        classes = self.db.execute(
            select(StudioClass).where(StudioClass.status == "cancelled", StudioClass.class_date >= since)
        ).scalars().all()

        created: List[RevenueLeakage] = []
        for cls in classes:
            if not cls.price_cents or cls.price_cents <= 0:
                continue
            for enrollment in list(cls.enrollments):
                try:
                    if self._has_open_record(cls.id, enrollment.id):
                        continue
                    record = self._insert(cls, enrollment, now)
                except SQLAlchemyError:
                    self.db.rollback()
                    logger.exception("leakage insert failed class=%s enrollment=%s", cls.id, enrollment.id)
                    self.failures.append(enrollment.id)
                    continue
                if record is None:
                    continue
                created.append(record)
                self.notifier.notify("revenue_leakage_detected", leakage_to_dict(record))

        logger.info(
            "leakage detection finished period_days=%s detected=%s failed=%s",
            period_days,
            len(created),
            len(self.failures),
        )
        return created

    def list_records(self, period_days: int, include_recovered: bool, now: Optional[datetime] = None) -> List[RevenueLeakage]:
        now = now or datetime.utcnow()
        stmt = select(RevenueLeakage).where(RevenueLeakage.detected_at >= now - timedelta(days=period_days))
        if not include_recovered:
            stmt = stmt.where(RevenueLeakage.recovered.is_(False))
        return list(self.db.execute(stmt.order_by(RevenueLeakage.detected_at.desc())).scalars().all())

    def summarize(self, period_days: int = 30, include_recovered: bool = False, now: Optional[datetime] = None) -> dict:
        records = self.list_records(period_days, include_recovered, now)

        total_lost = sum(int(r.amount_lost_cents or 0) for r in records)
        total_recovered = sum(int(r.recovery_amount_cents or 0) for r in records if r.recovered)
        recovery_rate = 0.0
        if total_lost > 0:
            recovery_rate = min(100.0, max(0.0, total_recovered / total_lost * 100))

        by_type: dict = defaultdict(lambda: {"count": 0, "total_cents": 0})
        for r in records:
            by_type[r.leakage_type]["count"] += 1
            by_type[r.leakage_type]["total_cents"] += int(r.amount_lost_cents or 0)

        return {
            "period_days": period_days,
            "summary": {
                "total_lost_cents": total_lost,
                "total_recovered_cents": total_recovered,
                "net_loss_cents": total_lost - total_recovered,
                "recovery_rate": round(recovery_rate, 2),
            },
            "by_type": dict(by_type),
            "records": [leakage_to_dict(r) for r in records],
        }

    def mark_recovered(self, leakage_id: str, recovery_amount_cents: int, now: Optional[datetime] = None) -> RevenueLeakage:
        """Record a recovery; terminal, a recovered row is never reopened."""
        record = self.db.get(RevenueLeakage, leakage_id)
        if record is None:
            raise NotFoundError("Leakage record not found")
        if record.recovered:
            raise ValidationError("Leakage record already recovered")
        if recovery_amount_cents < 0 or recovery_amount_cents > record.amount_lost_cents:
            raise ValidationError("Invalid recovery amount")
        record.recovered = True
        record.recovery_amount_cents = recovery_amount_cents
        record.recovered_at = now or datetime.utcnow()
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        logger.info("leakage recovered id=%s amount_cents=%s", record.id, recovery_amount_cents)
        return record
