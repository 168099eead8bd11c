from __future__ import annotations

"""
EMBED_SUMMARY: Per-trainer performance metrics over a closed date period, persisted with upsert semantics.
EMBED_TAGS: trainers, performance, cancellation rate, attendance rate, satisfaction, revenue

Formulas (classes with class_date in [start, end]):
- cancellation_rate = cancelled_classes / total_classes * 100
- average_attendance_rate = present attendance records / all attendance records * 100 (0 without records)
- client_satisfaction_score = avg(feedback.rating) / 5 over rated feedback for the trainer in the period
- revenue_generated_cents = sum(price_cents) over completed classes
Rates are rounded to 2 decimals. No classes in the period means no metric (None).
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import Attendance, Enrollment, Feedback, StudioClass, Trainer, TrainerPerformanceMetric


logger = logging.getLogger("insights.trainers")

_METRIC_FIELDS = (
    "total_classes",
    "completed_classes",
    "cancelled_classes",
    "cancellation_rate",
    "average_attendance_rate",
    "client_satisfaction_score",
    "revenue_generated_cents",
)


def metric_to_dict(metric: TrainerPerformanceMetric) -> dict:
    return {
        "trainer_id": metric.trainer_id,
        "measurement_period_start": metric.measurement_period_start,
        "measurement_period_end": metric.measurement_period_end,
        **{field: getattr(metric, field) for field in _METRIC_FIELDS},
    }


class TrainerPerformanceAggregator:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _attendance_counts(self, class_ids: List[str]) -> tuple[int, int]:
        total = self.db.execute(
            select(func.count())
            .select_from(Attendance)
            .join(Enrollment, Enrollment.id == Attendance.enrollment_id)
            .where(Enrollment.class_id.in_(class_ids))
        ).scalar_one() or 0
        present = self.db.execute(
            select(func.count())
            .select_from(Attendance)
            .join(Enrollment, Enrollment.id == Attendance.enrollment_id)
            .where(and_(Enrollment.class_id.in_(class_ids), Attendance.status == "present"))
        ).scalar_one() or 0
        return int(present), int(total)

    def _average_rating(self, trainer_id: str, period_start: date, period_end: date) -> Optional[float]:
        avg = self.db.execute(
            select(func.avg(Feedback.rating)).where(
                and_(
                    Feedback.trainer_id == trainer_id,
                    Feedback.rating.is_not(None),
                    Feedback.created_at >= datetime.combine(period_start, time.min),
                    Feedback.created_at <= datetime.combine(period_end, time.max),
                )
            )
        ).scalar_one()
        return float(avg) if avg is not None else None

    def compute(self, trainer_id: str, period_start: date, period_end: date) -> Optional[TrainerPerformanceMetric]:
        if period_start > period_end:
            raise ValidationError("period_start must not be after period_end")
        if self.db.get(Trainer, trainer_id) is None:
            raise NotFoundError("Trainer not found")

        classes = self.db.execute(
            select(StudioClass).where(
                and_(
                    StudioClass.trainer_id == trainer_id,
                    StudioClass.class_date >= period_start,
                    StudioClass.class_date <= period_end,
                )
            )
        ).scalars().all()
        if not classes:
            return None

        total = len(classes)
        completed = [c for c in classes if c.status == "completed"]
        cancelled = sum(1 for c in classes if c.status == "cancelled")
        present, attendance_total = self._attendance_counts([c.id for c in classes])
        avg_rating = self._average_rating(trainer_id, period_start, period_end)

        values = {
            "total_classes": total,
            "completed_classes": len(completed),
            "cancelled_classes": cancelled,
            "cancellation_rate": round(cancelled / total * 100, 2),
            "average_attendance_rate": round(present / attendance_total * 100, 2) if attendance_total else 0.0,
            "client_satisfaction_score": round(avg_rating / 5, 2) if avg_rating is not None else None,
            "revenue_generated_cents": sum(int(c.price_cents or 0) for c in completed),
        }
        return self._upsert(trainer_id, period_start, period_end, values)

    def _find(self, trainer_id: str, period_start: date, period_end: date) -> Optional[TrainerPerformanceMetric]:
        return self.db.execute(
            select(TrainerPerformanceMetric).where(
                and_(
                    TrainerPerformanceMetric.trainer_id == trainer_id,
                    TrainerPerformanceMetric.measurement_period_start == period_start,
                    TrainerPerformanceMetric.measurement_period_end == period_end,
                )
            )
        ).scalar_one_or_none()

    def _upsert(self, trainer_id: str, period_start: date, period_end: date, values: dict) -> TrainerPerformanceMetric:
        metric = self._find(trainer_id, period_start, period_end)
        if metric is None:
            metric = TrainerPerformanceMetric(
                trainer_id=trainer_id,
                measurement_period_start=period_start,
                measurement_period_end=period_end,
                **values,
            )
            self.db.add(metric)
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent recomputation inserted the row first; overwrite it.
                self.db.rollback()
                metric = self._find(trainer_id, period_start, period_end)
                if metric is None:
                    raise
                self._overwrite(metric, values)
        else:
            self._overwrite(metric, values)
        self.db.refresh(metric)
        logger.info(
            "trainer metrics computed trainer=%s period=%s..%s total_classes=%s",
            trainer_id,
            period_start,
            period_end,
            values["total_classes"],
        )
        return metric

    def _overwrite(self, metric: TrainerPerformanceMetric, values: dict) -> None:
        for field, value in values.items():
            setattr(metric, field, value)
        metric.computed_at = datetime.utcnow()
        self.db.add(metric)
        self.db.commit()

    def compute_all(self, period_start: date, period_end: date) -> List[TrainerPerformanceMetric]:
        trainer_ids = self.db.execute(select(Trainer.id).order_by(Trainer.id)).scalars().all()
        results: List[TrainerPerformanceMetric] = []
        for trainer_id in trainer_ids:
            metric = self.compute(trainer_id, period_start, period_end)
            if metric is not None:
                results.append(metric)
        return results

    def stored(
        self, trainer_id: Optional[str], period_start: date, period_end: date
    ) -> List[TrainerPerformanceMetric]:
        """Persisted metrics whose measurement period overlaps [period_start, period_end]."""
        stmt = select(TrainerPerformanceMetric).where(
            and_(
                TrainerPerformanceMetric.measurement_period_end >= period_start,
                TrainerPerformanceMetric.measurement_period_start <= period_end,
            )
        )
        if trainer_id:
            stmt = stmt.where(TrainerPerformanceMetric.trainer_id == trainer_id)
        stmt = stmt.order_by(TrainerPerformanceMetric.measurement_period_start.desc())
        return list(self.db.execute(stmt).scalars().all())

    def list_or_compute(
        self, trainer_id: Optional[str], period_days: int = 30, today: Optional[date] = None
    ) -> List[TrainerPerformanceMetric]:
        if period_days < 1:
            raise ValidationError("days must be at least 1")
        period_end = today or datetime.utcnow().date()
        period_start = period_end - timedelta(days=period_days)
        metrics = self.stored(trainer_id, period_start, period_end)
        if metrics:
            return metrics
        if trainer_id:
            metric = self.compute(trainer_id, period_start, period_end)
            return [metric] if metric is not None else []
        return self.compute_all(period_start, period_end)
