from __future__ import annotations

"""
EMBED_SUMMARY: Studio overview: daily operational trends, class utilisation, trainer rollups and cancellation hotspots.
EMBED_TAGS: analytics, overview, trends, utilisation, cancellations, hotspots, trainers

Windows:
- Trends (attendance, enrollments, revenue, occupancy) use records dated within [today - days, today].
- Utilisation by hour, trainer rollups, hotspots and the summary use every class in scope.
A trainer caller only sees classes they teach, the enrollments and attendance of those classes,
and the clients enrolled in them.

Formulas:
- daily attendance_rate = present / all attendance marks that day * 100
- revenue = sum(price_cents) of completed classes by class_date
- utilisation = live enrollments / sum(max_capacity, default 8) * 100
- cancellation_rate = cancelled classes / classes * 100
Rates are rounded to 2 decimals.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from .models import Attendance, CancellationReason, Enrollment, StudioClass, Trainer


logger = logging.getLogger("insights.overview")

DEFAULT_DAYS = 30
DEFAULT_CAPACITY = 8
DAY_ORDER = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

HOTSPOT_RATE_WARNING = 20.0
TRAINER_RATE_WARNING = 25.0
LOW_ATTENDANCE = 70.0
HIGH_ATTENDANCE = 85.0


def clamp_days(days: Optional[int]) -> int:
    return min(max(int(days or DEFAULT_DAYS), 1), 365)


def start_hour(start_time: Optional[str]) -> int:
    try:
        return int((start_time or "").split(":")[0])
    except ValueError:
        return 0


def day_name(value: date) -> str:
    # weekday() is Monday=0
    return DAY_ORDER[(value.weekday() + 1) % 7]


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _rated(counts: Dict, key_name: str) -> List[dict]:
    return [
        {key_name: key, "total": total, "cancelled": cancelled, "cancellation_rate": _rate(cancelled, total)}
        for key, (total, cancelled) in counts.items()
    ]


class StudioOverview:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _classes(self, trainer_id: Optional[str]) -> List[StudioClass]:
        stmt = select(StudioClass)
        if trainer_id:
            stmt = stmt.where(StudioClass.trainer_id == trainer_id)
        return list(self.db.execute(stmt.order_by(StudioClass.class_date, StudioClass.id)).scalars().all())

    def _enrollments(self, class_ids: List[str]) -> List[Enrollment]:
        if not class_ids:
            return []
        return list(self.db.execute(select(Enrollment).where(Enrollment.class_id.in_(class_ids))).scalars().all())

    def _attendance(
        self, class_ids: List[str], start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Attendance]:
        if not class_ids:
            return []
        stmt = select(Attendance).where(Attendance.class_id.in_(class_ids))
        if start and end:
            stmt = stmt.where(and_(Attendance.attended_on >= start, Attendance.attended_on <= end))
        return list(self.db.execute(stmt).scalars().all())

    def _trainer_names(self, trainer_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(trainer_ids))
        if not ids:
            return {}
        rows = self.db.execute(select(Trainer.id, Trainer.full_name).where(Trainer.id.in_(ids))).all()
        return {row.id: row.full_name for row in rows}

    def _average_hours_before(self, class_ids: List[str], start: date, end: date, scoped: bool) -> float:
        stmt = select(func.avg(CancellationReason.hours_before_class)).where(
            and_(
                CancellationReason.hours_before_class > 0,
                CancellationReason.hours_before_class < 720,
                CancellationReason.created_at >= datetime.combine(start, time.min),
                CancellationReason.created_at <= datetime.combine(end, time.max),
            )
        )
        if scoped:
            if not class_ids:
                return 0.0
            stmt = stmt.where(CancellationReason.class_id.in_(class_ids))
        avg = self.db.execute(stmt).scalar_one()
        return round(float(avg), 2) if avg is not None else 0.0

    def build(self, days: Optional[int] = None, trainer_id: Optional[str] = None, today: Optional[date] = None) -> dict:
        days = clamp_days(days)
        end = today or datetime.utcnow().date()
        start = end - timedelta(days=days)

        all_classes = self._classes(trainer_id)
        class_ids = [c.id for c in all_classes]
        period_classes = [c for c in all_classes if start <= c.class_date <= end]
        all_enrollments = self._enrollments(class_ids)
        period_enrollments = [e for e in all_enrollments if start <= e.created_at.date() <= end]
        attendance = self._attendance(class_ids, start, end)
        live_by_class: Dict[str, int] = defaultdict(int)
        for enrollment in all_enrollments:
            if enrollment.status != "cancelled":
                live_by_class[enrollment.class_id] += 1

        # Daily trends
        attendance_by_day: Dict[date, List[int]] = defaultdict(lambda: [0, 0])
        for mark in attendance:
            stats = attendance_by_day[mark.attended_on]
            stats[1] += 1
            if mark.status == "present":
                stats[0] += 1
        attendance_daily = [
            {"day": day, "attendance_rate": _rate(present, total), "present": present, "total": total}
            for day, (present, total) in sorted(attendance_by_day.items())
        ]
        average_attendance = (
            round(sum(d["attendance_rate"] for d in attendance_daily) / len(attendance_daily), 2) if attendance_daily else 0.0
        )

        enrollments_by_day: Dict[date, int] = defaultdict(int)
        for enrollment in period_enrollments:
            enrollments_by_day[enrollment.created_at.date()] += 1
        cancelled_period_enrollments = [e for e in period_enrollments if e.status == "cancelled"]

        revenue_by_day: Dict[date, int] = defaultdict(int)
        for cls in period_classes:
            if cls.status == "completed":
                revenue_by_day[cls.class_date] += int(cls.price_cents or 0)
        revenue_total = sum(revenue_by_day.values())
        average_daily_revenue = round(revenue_total / len(revenue_by_day), 2) if revenue_by_day else 0.0

        # Utilisation by start hour
        by_hour_capacity: Dict[int, List[int]] = defaultdict(lambda: [0, 0, 0])
        for cls in all_classes:
            if not cls.start_time:
                continue
            stats = by_hour_capacity[start_hour(cls.start_time)]
            stats[0] += 1
            stats[1] += live_by_class[cls.id]
            stats[2] += cls.max_capacity or DEFAULT_CAPACITY
        utilisation_by_hour = [
            {"hour": f"{hour}:00", "classes": n, "utilization": _rate(enrolled, capacity)}
            for hour, (n, enrolled, capacity) in sorted(by_hour_capacity.items())
        ]
        period_capacity = sum(c.max_capacity or DEFAULT_CAPACITY for c in period_classes)
        average_occupancy = _rate(sum(live_by_class[c.id] for c in period_classes), period_capacity)

        # Trainer rollups over every class in scope
        names = self._trainer_names(c.trainer_id for c in all_classes if c.trainer_id)
        trainer_counts: Dict[str, List[int]] = {}
        for cls in all_classes:
            if not cls.trainer_id:
                logger.debug("class %s has no trainer", cls.id)
                continue
            counts = trainer_counts.setdefault(cls.trainer_id, [0, 0, 0, 0])
            counts[0] += 1
            if cls.status == "cancelled":
                counts[1] += 1
        trainer_of = {c.id: c.trainer_id for c in all_classes}
        for mark in self._attendance(class_ids):
            counts = trainer_counts.get(trainer_of.get(mark.class_id) or "")
            if counts is None:
                continue
            counts[3] += 1
            if mark.status == "present":
                counts[2] += 1
        trainer_performance = [
            {
                "trainer_id": tid,
                "name": names.get(tid, "Unknown"),
                "classes": classes,
                "cancellations": cancellations,
                "cancellation_rate": _rate(cancellations, classes),
                "attendance_rate": _rate(present, marks),
            }
            for tid, (classes, cancellations, present, marks) in trainer_counts.items()
        ]

        # Cancellation hotspots
        by_hour: Dict[str, List[int]] = {}
        by_day: Dict[str, List[int]] = {}
        by_type: Dict[str, List[int]] = {}
        for cls in sorted(all_classes, key=lambda c: start_hour(c.start_time)):
            cancelled = 1 if cls.status == "cancelled" else 0
            buckets = [(by_day, day_name(cls.class_date)), (by_type, cls.class_type or "unknown")]
            if cls.start_time:
                buckets.append((by_hour, f"{start_hour(cls.start_time)}:00"))
            for table, key in buckets:
                stats = table.setdefault(key, [0, 0])
                stats[0] += 1
                stats[1] += cancelled
        by_day_ordered = {day: by_day[day] for day in DAY_ORDER if day in by_day}
        by_trainer = sorted(
            (
                {
                    "trainer_id": t["trainer_id"],
                    "trainer": t["name"],
                    "total": t["classes"],
                    "cancelled": t["cancellations"],
                    "cancellation_rate": t["cancellation_rate"],
                }
                for t in trainer_performance
            ),
            key=lambda t: -t["cancellation_rate"],
        )
        client_cancellations: Dict[str, int] = defaultdict(int)
        for enrollment in cancelled_period_enrollments:
            client_cancellations[enrollment.client_id] += 1
        top_clients = sorted(client_cancellations.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
        hours_before = self._average_hours_before(class_ids, start, end, scoped=trainer_id is not None)

        hotspots = {
            "by_time_of_day": _rated(by_hour, "hour"),
            "by_day_of_week": _rated(by_day_ordered, "day"),
            "by_class_type": _rated(dict(sorted(by_type.items())), "type"),
            "by_trainer": by_trainer,
            "by_client": [{"client_id": cid, "cancellations": n} for cid, n in top_clients],
            "average_hours_before_class": hours_before,
        }
        total_cancelled = sum(1 for c in all_classes if c.status == "cancelled")

        result = {
            "operational_trends": {
                "attendance": {"daily": attendance_daily, "average_rate": average_attendance},
                "enrollment": {
                    "daily": [{"day": d, "enrollments": n} for d, n in sorted(enrollments_by_day.items())],
                    "total": len(period_enrollments),
                    "active": sum(1 for e in period_enrollments if e.status == "active"),
                    "cancelled": len(cancelled_period_enrollments),
                },
                "revenue": {
                    "daily": [{"day": d, "revenue_cents": n} for d, n in sorted(revenue_by_day.items())],
                    "total_cents": revenue_total,
                    "average_daily_cents": average_daily_revenue,
                },
                "class_utilization": {"by_hour": utilisation_by_hour, "average_occupancy": average_occupancy},
                "trainer_performance": trainer_performance,
            },
            "cancellation_hotspots": hotspots,
            "insights": self._observations(hotspots, attendance_daily, average_attendance, average_daily_revenue),
            "summary": {
                "total_classes": len(all_classes),
                "cancelled_classes": total_cancelled,
                "total_enrollments": len(all_enrollments),
                "cancelled_enrollments": sum(1 for e in all_enrollments if e.status == "cancelled"),
                "overall_cancellation_rate": _rate(total_cancelled, len(all_classes)),
                "date_range": {"start": start, "end": end, "days": days},
            },
        }
        logger.info("overview built days=%s trainer=%s classes=%s", days, trainer_id, len(all_classes))
        return result

    @staticmethod
    def _observations(
        hotspots: dict, attendance_daily: List[dict], average_attendance: float, average_daily_revenue: float
    ) -> Dict[str, List[str]]:
        recommendations: List[str] = []
        warnings: List[str] = []
        insights: List[str] = []

        by_hour = hotspots["by_time_of_day"]
        if by_hour:
            worst = max(by_hour, key=lambda h: h["cancellation_rate"])
            if worst["cancellation_rate"] > HOTSPOT_RATE_WARNING:
                warnings.append(f"High cancellation rate ({worst['cancellation_rate']:.1f}%) at {worst['hour']}")
                recommendations.append(f"Review classes scheduled at {worst['hour']}; timing or reminders may need adjusting")

        by_day = hotspots["by_day_of_week"]
        if by_day:
            worst_day = max(by_day, key=lambda d: d["cancellation_rate"])
            if worst_day["cancellation_rate"] > HOTSPOT_RATE_WARNING:
                insights.append(
                    f"{worst_day['day']} has the highest cancellation rate ({worst_day['cancellation_rate']:.1f}%)"
                )

        flagged = next((t for t in hotspots["by_trainer"] if t["cancellation_rate"] > TRAINER_RATE_WARNING), None)
        if flagged:
            warnings.append(f"{flagged['trainer']} has a high cancellation rate ({flagged['cancellation_rate']:.1f}%)")
            recommendations.append(f"Review scheduling and communication with {flagged['trainer']}")

        if attendance_daily:
            if average_attendance < LOW_ATTENDANCE:
                warnings.append(f"Low average attendance rate: {average_attendance:.1f}%")
                recommendations.append("Consider reminders or incentives to improve attendance")
            elif average_attendance > HIGH_ATTENDANCE:
                insights.append(f"Excellent attendance rate: {average_attendance:.1f}%")

        if average_daily_revenue > 0:
            insights.append(f"Average daily revenue: {average_daily_revenue / 100:.2f}")

        hours = hotspots["average_hours_before_class"]
        if hours > 0:
            insights.append(f"Average cancellation occurs {hours / 24:.1f} days before scheduled class")
            if hours < 24:
                warnings.append("Many cancellations occur less than 24 hours before class; consider a cancellation policy")

        return {"recommendations": recommendations, "warnings": warnings, "insights": insights}
