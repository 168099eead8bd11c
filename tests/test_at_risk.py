from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import delete, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studio_insights.at_risk import AtRiskDetector, RiskAssessment
from studio_insights.config import Settings
from studio_insights.database import Base, engine, SessionLocal
from studio_insights.dispatcher import EventDispatcher, track_event
from studio_insights.errors import NotFoundError, ValidationError
from studio_insights.models import (
    AtRiskClient,
    Attendance,
    Client,
    Enrollment,
    StudioClass,
    SystemEvent,
    SystemLog,
)
from studio_insights.notifications import NotificationDispatcher


class RecordingNotifier(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent: List[Tuple[str, dict]] = []

    def send(self, topic: str, payload: dict) -> None:
        self.sent.append((topic, payload))


def _settings() -> Settings:
    return Settings(risk_low_days=14, risk_medium_days=30, risk_high_days=60, risk_critical_days=90)


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for model in (AtRiskClient, SystemLog, SystemEvent, Attendance, Enrollment, StudioClass, Client):
            db.execute(delete(model))
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def detector(db_session, notifier) -> AtRiskDetector:
    return AtRiskDetector(db_session, settings=_settings(), notifier=notifier)


def _client(db, client_id: str, joined_days_ago: int, status: str = "active") -> Client:
    now = datetime.utcnow()
    c = Client(
        id=client_id,
        full_name=f"Client {client_id}",
        status=status,
        join_date=(now - timedelta(days=joined_days_ago)).date(),
        created_at=now - timedelta(days=joined_days_ago),
    )
    db.add(c)
    db.commit()
    return c


def _class(db, class_id: str, days_from_today: int, status: str = "scheduled", price_cents: Optional[int] = 2500) -> StudioClass:
    cls = StudioClass(
        id=class_id,
        name=f"Class {class_id}",
        class_date=(datetime.utcnow() + timedelta(days=days_from_today)).date(),
        status=status,
        price_cents=price_cents,
    )
    db.add(cls)
    db.commit()
    return cls


def _enroll(db, enrollment_id: str, class_id: str, client_id: str, created_days_ago: int, status: str = "active") -> Enrollment:
    e = Enrollment(
        id=enrollment_id,
        class_id=class_id,
        client_id=client_id,
        status=status,
        created_at=datetime.utcnow() - timedelta(days=created_days_ago),
    )
    db.add(e)
    db.commit()
    return e


def test_risk_level_buckets(detector: AtRiskDetector) -> None:
    assert detector.risk_level_for(5) is None
    assert detector.risk_level_for(14) == "low"
    assert detector.risk_level_for(30) == "medium"
    assert detector.risk_level_for(59) == "medium"
    assert detector.risk_level_for(60) == "high"
    assert detector.risk_level_for(95) == "critical"


def test_thresholds_must_ascend() -> None:
    with pytest.raises(ValueError):
        Settings(risk_low_days=40, risk_medium_days=30)


def test_client_inactive_95_days_is_critical(db_session, detector: AtRiskDetector, notifier: RecordingNotifier) -> None:
    _client(db_session, "K4", joined_days_ago=200)
    _class(db_session, "C4", days_from_today=-95, status="completed")
    _enroll(db_session, "E4", "C4", "K4", created_days_ago=100, status="completed")
    db_session.add(
        Attendance(
            enrollment_id="E4",
            client_id="K4",
            class_id="C4",
            attended_on=(datetime.utcnow() - timedelta(days=95)).date(),
            status="present",
        )
    )
    db_session.commit()

    assessments = detector.detect_all()
    k4 = [a for a in assessments if a.client_id == "K4"]
    assert len(k4) == 1
    assert k4[0].risk_level == "critical"
    assert k4[0].days_inactive == 95
    assert k4[0].risk_factors == ["no activity in 95 days"]

    assert detector.upsert_detected(k4[0]) == "inserted"
    records = db_session.execute(select(AtRiskClient).where(AtRiskClient.client_id == "K4")).scalars().all()
    assert len(records) == 1 and records[0].is_active
    events = db_session.execute(
        select(SystemEvent).where(SystemEvent.event_type == "client_at_risk_detected", SystemEvent.client_id == "K4")
    ).scalars().all()
    assert len(events) == 1
    assert events[0].event_metadata["risk_level"] == "critical"
    assert [topic for topic, _ in notifier.sent] == ["client_at_risk_detected"]


def test_client_without_activity_falls_back_to_join_date(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K5", joined_days_ago=40)
    assessment = detector.assess_client("K5")
    assert assessment is not None
    assert assessment.risk_level == "medium"
    assert assessment.days_inactive == 40
    assert assessment.risk_factors == ["no recorded activity since joining"]


def test_recent_activity_is_not_flagged(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K6", joined_days_ago=300)
    _class(db_session, "C6", days_from_today=3)
    _enroll(db_session, "E6", "C6", "K6", created_days_ago=2)
    assert detector.assess_client("K6") is None
    with pytest.raises(NotFoundError):
        detector.assess_client("nobody")


def test_booking_event_counts_as_activity(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K7", joined_days_ago=120)
    db_session.add(
        SystemEvent(
            id="evt-k7",
            event_type="class_booking_created",
            client_id="K7",
            occurred_at=datetime.utcnow() - timedelta(days=35),
            recorded_at=datetime.utcnow(),
        )
    )
    db_session.commit()
    assessment = detector.assess_client("K7")
    assert assessment is not None and assessment.days_inactive == 35
    assert assessment.risk_level == "medium"


def test_cancellation_streak_escalates(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K8", joined_days_ago=300)
    for i in range(3):
        _class(db_session, f"C8{i}", days_from_today=5 + i)
        _enroll(db_session, f"E8{i}", f"C8{i}", "K8", created_days_ago=16 + i, status="cancelled")

    assessment = detector.assess_client("K8")
    assert assessment is not None
    # 16 days inactive is "low"; three straight cancellations push it to "medium"
    assert assessment.risk_level == "medium"
    assert "cancelled last 3 bookings" in assessment.risk_factors
    assert assessment.revenue_at_risk_cents == 0


def test_revenue_at_risk_sums_active_scheduled_enrollments(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K9", joined_days_ago=100)
    _class(db_session, "C91", days_from_today=10, price_cents=3000)
    _class(db_session, "C92", days_from_today=11, price_cents=4500)
    _class(db_session, "C93", days_from_today=-40, status="completed", price_cents=9900)
    _enroll(db_session, "E91", "C91", "K9", created_days_ago=65)
    _enroll(db_session, "E92", "C92", "K9", created_days_ago=65)
    _enroll(db_session, "E93", "C93", "K9", created_days_ago=70)

    assessment = detector.assess_client("K9")
    assert assessment is not None
    assert assessment.risk_level == "high"
    assert assessment.revenue_at_risk_cents == 7500


def test_detection_is_idempotent(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K10", joined_days_ago=70)
    _client(db_session, "K11", joined_days_ago=20)
    _client(db_session, "K12", joined_days_ago=100, status="paused")

    first = detector.run()
    assert first["detected"] == 2 and first["inserted"] == 2 and first["failed"] == 0
    second = detector.run()
    assert second["inserted"] == 0 and second["updated"] == 2

    active = db_session.execute(select(AtRiskClient).where(AtRiskClient.is_active.is_(True))).scalars().all()
    assert sorted(r.client_id for r in active) == ["K10", "K11"]


def test_concurrent_insert_falls_back_to_update(db_session, detector: AtRiskDetector, monkeypatch) -> None:
    _client(db_session, "K13", joined_days_ago=65)
    assessment = detector.assess_client("K13")
    assert detector.upsert_detected(assessment) == "inserted"

    # Simulate a second worker that checked before the first one committed
    real_active_record = detector.active_record
    calls = {"n": 0}

    def stale_check(client_id: str):
        calls["n"] += 1
        return None if calls["n"] == 1 else real_active_record(client_id)

    monkeypatch.setattr(detector, "active_record", stale_check)
    escalated = assessment.model_copy(update={"risk_level": "critical", "days_inactive": 91})
    assert detector.upsert_detected(escalated) == "updated"

    records = db_session.execute(select(AtRiskClient).where(AtRiskClient.client_id == "K13")).scalars().all()
    assert len(records) == 1
    assert records[0].risk_level == "critical" and records[0].days_inactive == 91
    events = db_session.execute(
        select(SystemEvent).where(SystemEvent.event_type == "client_at_risk_detected", SystemEvent.client_id == "K13")
    ).scalars().all()
    assert len(events) == 1


def test_reengaged_client_is_resolved(db_session, detector: AtRiskDetector) -> None:
    _client(db_session, "K14", joined_days_ago=45)
    assert detector.run()["inserted"] == 1

    _class(db_session, "C14", days_from_today=2)
    _enroll(db_session, "E14", "C14", "K14", created_days_ago=0)
    result = detector.run()
    assert result["resolved"] == 1

    record = db_session.execute(select(AtRiskClient).where(AtRiskClient.client_id == "K14")).scalar_one()
    assert record.is_active is False
    assert record.resolved_at is not None


def test_invalid_risk_level_rejected(detector: AtRiskDetector) -> None:
    with pytest.raises(ValidationError):
        detector.upsert_detected(RiskAssessment(client_id="K1", risk_level="extreme"))
    with pytest.raises(ValidationError):
        detector.list_records(risk_level="extreme")


def test_list_records_orders_by_severity_then_recency(db_session, detector: AtRiskDetector) -> None:
    now = datetime.utcnow()
    for cid, level, age_hours, revenue in [("A", "low", 1, 100), ("B", "critical", 5, 200), ("C", "critical", 2, 300), ("D", "medium", 0, 0)]:
        _client(db_session, cid, joined_days_ago=10)
        db_session.add(
            AtRiskClient(
                id=f"r-{cid}",
                client_id=cid,
                risk_level=level,
                risk_factors=[],
                revenue_at_risk_cents=revenue,
                detected_at=now - timedelta(hours=age_hours),
                updated_at=now,
            )
        )
    db_session.commit()

    records = detector.list_records()
    assert [r.client_id for r in records] == ["C", "B", "D", "A"]
    summary = AtRiskDetector.summarize(records)
    assert summary["total"] == 4
    assert summary["by_level"] == {"critical": 2, "high": 0, "medium": 1, "low": 1}
    assert summary["total_revenue_at_risk_cents"] == 600
    assert [r.client_id for r in detector.list_records(risk_level="critical")] == ["C", "B"]


def test_inactivity_event_flags_client_once(db_session, notifier: RecordingNotifier) -> None:
    _client(db_session, "K15", joined_days_ago=62)
    dispatcher = EventDispatcher(
        db_session, detector=AtRiskDetector(db_session, settings=_settings(), notifier=notifier)
    )

    track_event(db_session, {"event_type": "client_inactivity_60", "client_id": "K15"}, dispatcher=dispatcher)
    track_event(db_session, {"event_type": "client_inactivity_60", "client_id": "K15"}, dispatcher=dispatcher)

    records = db_session.execute(select(AtRiskClient).where(AtRiskClient.client_id == "K15")).scalars().all()
    assert len(records) == 1
    assert records[0].risk_level == "high"
    assert len(notifier.sent) == 1


def test_inactivity_event_for_recent_client_is_ignored(db_session, notifier: RecordingNotifier) -> None:
    _client(db_session, "K16", joined_days_ago=3)
    dispatcher = EventDispatcher(
        db_session, detector=AtRiskDetector(db_session, settings=_settings(), notifier=notifier)
    )
    track_event(db_session, {"event_type": "client_inactivity_30", "client_id": "K16"}, dispatcher=dispatcher)
    assert db_session.execute(select(AtRiskClient)).scalars().all() == []
