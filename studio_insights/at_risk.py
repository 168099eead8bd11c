from __future__ import annotations

"""
EMBED_SUMMARY: At-risk client detection from attendance, enrollment and booking-event inactivity.
EMBED_TAGS: at-risk, churn, inactivity, retention, detection, thresholds

days_inactive = days since the latest of: present/late attendance, enrollment creation,
class_booking_created / class_booking_rescheduled events (falling back to join date).
risk_level buckets days_inactive by the configured thresholds (default low 14, medium 30,
high 60, critical 90). A trailing streak of cancelled enrollments adds a factor and raises the
level one step. At most one active record exists per client; the partial unique index
uq_at_risk_active_client arbitrates concurrent inserts.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .errors import NotFoundError, ValidationError
from .event_store import EventStore
from .models import AtRiskClient, Attendance, Client, Enrollment, StudioClass, SystemEvent
from .notifications import NotificationDispatcher, get_notifier


logger = logging.getLogger("insights.at_risk")

RISK_LEVELS = ["low", "medium", "high", "critical"]
ACTIVITY_EVENT_TYPES = ("class_booking_created", "class_booking_rescheduled")
ATTENDED_STATUSES = ("present", "late")


class RiskAssessment(BaseModel):
    client_id: str
    risk_level: str
    risk_factors: List[str] = Field(default_factory=list)
    days_inactive: int = 0
    revenue_at_risk_cents: int = 0
    last_activity_at: Optional[datetime] = None


def _as_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    return None


class AtRiskDetector:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.notifier = notifier or get_notifier(db)

    # Thresholds

    def risk_level_for(self, days_inactive: int) -> Optional[str]:
        for level, bound in self.settings.risk_thresholds:
            if days_inactive >= bound:
                return level
        return None

    # Signals

    def _restrict(self, stmt, column, client_ids: Optional[List[str]]):
        if client_ids is not None:
            stmt = stmt.where(column.in_(client_ids))
        return stmt

    def _last_activity(self, client_ids: Optional[List[str]]) -> Dict[str, datetime]:
        latest: Dict[str, datetime] = {}

        def merge(rows) -> None:
            for client_id, ts in rows:
                ts = _as_datetime(ts)
                if client_id and ts and (client_id not in latest or ts > latest[client_id]):
                    latest[client_id] = ts

        attended = select(Attendance.client_id, func.max(Attendance.attended_on)).where(
            Attendance.status.in_(ATTENDED_STATUSES)
        )
        attended = self._restrict(attended, Attendance.client_id, client_ids).group_by(Attendance.client_id)
        merge(self.db.execute(attended).all())

        enrolled = select(Enrollment.client_id, func.max(Enrollment.created_at))
        enrolled = self._restrict(enrolled, Enrollment.client_id, client_ids).group_by(Enrollment.client_id)
        merge(self.db.execute(enrolled).all())

        booked = select(SystemEvent.client_id, func.max(SystemEvent.occurred_at)).where(
            SystemEvent.event_type.in_(ACTIVITY_EVENT_TYPES), SystemEvent.client_id.is_not(None)
        )
        booked = self._restrict(booked, SystemEvent.client_id, client_ids).group_by(SystemEvent.client_id)
        merge(self.db.execute(booked).all())
        return latest

    def _revenue_at_risk(self, client_ids: Optional[List[str]]) -> Dict[str, int]:
        stmt = (
            select(Enrollment.client_id, func.coalesce(func.sum(StudioClass.price_cents), 0))
            .join(StudioClass, StudioClass.id == Enrollment.class_id)
            .where(Enrollment.status == "active", StudioClass.status == "scheduled")
        )
        stmt = self._restrict(stmt, Enrollment.client_id, client_ids).group_by(Enrollment.client_id)
        return {client_id: max(0, int(total or 0)) for client_id, total in self.db.execute(stmt).all()}

    def _cancellation_streaks(self, client_ids: Optional[List[str]]) -> Dict[str, bool]:
        streak = self.settings.risk_cancellation_streak
        stmt = select(Enrollment.client_id, Enrollment.status)
        stmt = self._restrict(stmt, Enrollment.client_id, client_ids).order_by(
            Enrollment.client_id, Enrollment.created_at.desc()
        )
        recent: Dict[str, List[str]] = defaultdict(list)
        for client_id, status in self.db.execute(stmt).all():
            if len(recent[client_id]) < streak:
                recent[client_id].append(status)
        return {
            client_id: len(statuses) == streak and all(s == "cancelled" for s in statuses)
            for client_id, statuses in recent.items()
        }

    # Detection

    def _assess(
        self,
        client: Client,
        last_activity: Optional[datetime],
        revenue_cents: int,
        cancelled_streak: bool,
        now: datetime,
    ) -> Optional[RiskAssessment]:
        factors: List[str] = []
        reference = last_activity or _as_datetime(client.join_date) or client.created_at
        days_inactive = max(0, (now.date() - reference.date()).days) if reference else 0

        level = self.risk_level_for(days_inactive)
        if level is not None:
            if last_activity is None:
                factors.append("no recorded activity since joining")
            else:
                factors.append(f"no activity in {days_inactive} days")
        if cancelled_streak:
            factors.append(f"cancelled last {self.settings.risk_cancellation_streak} bookings")
            level = "low" if level is None else RISK_LEVELS[min(RISK_LEVELS.index(level) + 1, len(RISK_LEVELS) - 1)]
        if level is None:
            return None
        return RiskAssessment(
            client_id=client.id,
            risk_level=level,
            risk_factors=factors,
            days_inactive=days_inactive,
            revenue_at_risk_cents=revenue_cents,
            last_activity_at=last_activity,
        )

    def _detect(self, clients: List[Client], now: datetime) -> List[RiskAssessment]:
        if not clients:
            return []
        ids = [c.id for c in clients]
        last_activity = self._last_activity(ids)
        revenue = self._revenue_at_risk(ids)
        streaks = self._cancellation_streaks(ids)
        results: List[RiskAssessment] = []
        for client in clients:
            assessment = self._assess(
                client,
                last_activity.get(client.id),
                revenue.get(client.id, 0),
                streaks.get(client.id, False),
                now,
            )
            if assessment is not None:
                results.append(assessment)
        return results

    def detect_all(self, now: Optional[datetime] = None) -> List[RiskAssessment]:
        now = now or datetime.utcnow()
        clients = list(self.db.execute(select(Client).where(Client.status == "active")).scalars().all())
        return self._detect(clients, now)

    def assess_client(self, client_id: str, now: Optional[datetime] = None) -> Optional[RiskAssessment]:
        client = self.db.get(Client, client_id)
        if client is None:
            raise NotFoundError("Client not found")
        results = self._detect([client], now or datetime.utcnow())
        return results[0] if results else None

    # Persistence

    def active_record(self, client_id: str) -> Optional[AtRiskClient]:
        return self.db.execute(
            select(AtRiskClient).where(AtRiskClient.client_id == client_id, AtRiskClient.is_active.is_(True))
        ).scalar_one_or_none()

    def has_active(self, client_id: str) -> bool:
        return self.active_record(client_id) is not None

    def _apply(self, record: AtRiskClient, assessment: RiskAssessment, now: datetime) -> None:
        record.risk_level = assessment.risk_level
        record.risk_factors = list(dict.fromkeys(assessment.risk_factors))
        record.days_inactive = assessment.days_inactive
        record.revenue_at_risk_cents = assessment.revenue_at_risk_cents
        record.updated_at = now
        self.db.add(record)

    def upsert_detected(self, assessment: RiskAssessment, now: Optional[datetime] = None) -> str:
        """Update the client's active record or insert one; returns "inserted" or "updated"."""
        if assessment.risk_level not in RISK_LEVELS:
            raise ValidationError(f"Invalid risk_level: {assessment.risk_level}")
        now = now or datetime.utcnow()

        existing = self.active_record(assessment.client_id)
        if existing is not None:
            self._apply(existing, assessment, now)
            self.db.commit()
            return "updated"

        record = AtRiskClient(
            id=str(uuid.uuid4()),
            client_id=assessment.client_id,
            risk_level=assessment.risk_level,
            risk_factors=list(dict.fromkeys(assessment.risk_factors)),
            days_inactive=assessment.days_inactive,
            revenue_at_risk_cents=assessment.revenue_at_risk_cents,
            is_active=True,
            detected_at=now,
            updated_at=now,
        )
        self.db.add(record)
        try:
            EventStore(self.db).record(
                {
                    "event_type": "client_at_risk_detected",
                    "client_id": assessment.client_id,
                    "channel": "system",
                    "outcome_status": "success",
                    "metadata": {
                        "risk_level": assessment.risk_level,
                        "days_inactive": assessment.days_inactive,
                    },
                },
                commit=False,
            )
            self.db.commit()
        except IntegrityError:
            # Another run inserted the active record first; update that one instead.
            self.db.rollback()
            existing = self.active_record(assessment.client_id)
            if existing is None:
                raise
            self._apply(existing, assessment, now)
            self.db.commit()
            return "updated"

        logger.info(
            "at-risk client inserted client=%s level=%s days_inactive=%s",
            assessment.client_id,
            assessment.risk_level,
            assessment.days_inactive,
        )
        self.notifier.notify(
            "client_at_risk_detected",
            {
                "id": record.id,
                "client_id": assessment.client_id,
                "risk_level": assessment.risk_level,
                "days_inactive": assessment.days_inactive,
            },
        )
        return "inserted"

    def resolve_reengaged(self, assessments: Iterable[RiskAssessment], now: Optional[datetime] = None) -> int:
        """Deactivate active records of active clients that are no longer flagged."""
        now = now or datetime.utcnow()
        flagged = {a.client_id for a in assessments}
        stmt = (
            select(AtRiskClient)
            .join(Client, Client.id == AtRiskClient.client_id)
            .where(AtRiskClient.is_active.is_(True), Client.status == "active")
        )
        resolved = 0
        for record in self.db.execute(stmt).scalars().all():
            if record.client_id in flagged:
                continue
            record.is_active = False
            record.resolved_at = now
            record.updated_at = now
            self.db.add(record)
            resolved += 1
        if resolved:
            self.db.commit()
            logger.info("resolved %s re-engaged at-risk clients", resolved)
        return resolved

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        assessments = self.detect_all(now)
        result = {"detected": len(assessments), "inserted": 0, "updated": 0, "resolved": 0, "failed": 0}
        for assessment in assessments:
            try:
                outcome = self.upsert_detected(assessment, now)
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("at-risk upsert failed client=%s", assessment.client_id)
                result["failed"] += 1
                continue
            result[outcome] += 1
        result["resolved"] = self.resolve_reengaged(assessments, now)
        logger.info("at-risk detection finished %s", result)
        return result

    # Reads

    def list_records(self, risk_level: Optional[str] = None, active_only: bool = True) -> List[AtRiskClient]:
        if risk_level and risk_level not in RISK_LEVELS:
            raise ValidationError(f"Invalid risk_level: {risk_level}")
        stmt = select(AtRiskClient)
        if active_only:
            stmt = stmt.where(AtRiskClient.is_active.is_(True))
        if risk_level:
            stmt = stmt.where(AtRiskClient.risk_level == risk_level)
        records = list(self.db.execute(stmt).scalars().all())
        records.sort(key=lambda r: r.detected_at, reverse=True)
        records.sort(key=lambda r: RISK_LEVELS.index(r.risk_level) if r.risk_level in RISK_LEVELS else -1, reverse=True)
        return records

    @staticmethod
    def summarize(records: List[AtRiskClient]) -> dict:
        by_level = {level: 0 for level in reversed(RISK_LEVELS)}
        for r in records:
            if r.risk_level in by_level:
                by_level[r.risk_level] += 1
        return {
            "total": len(records),
            "by_level": by_level,
            "total_revenue_at_risk_cents": sum(int(r.revenue_at_risk_cents or 0) for r in records),
        }
