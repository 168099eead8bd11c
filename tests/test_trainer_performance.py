from __future__ import annotations

import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studio_insights.main import app
from studio_insights.config import get_settings
from studio_insights.database import Base, engine, SessionLocal
from studio_insights.errors import NotFoundError, ValidationError
from studio_insights.models import (
    Attendance,
    Client,
    Enrollment,
    Feedback,
    StudioClass,
    Trainer,
    TrainerPerformanceMetric,
)
from studio_insights.rate_limit import _window_counts as _rate_counts
from studio_insights.trainer_performance import TrainerPerformanceAggregator


API_TOKEN = "dev-token"


def _auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {API_TOKEN}"}


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for model in (TrainerPerformanceMetric, Feedback, Attendance, Enrollment, StudioClass, Trainer, Client):
            db.execute(delete(model))
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session) -> TestClient:
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
    return TestClient(app)


def _period() -> tuple[date, date]:
    today = datetime.utcnow().date()
    return today - timedelta(days=30), today


def _seed_trainer_month(db) -> None:
    """Ten classes (8 completed, 2 cancelled), 70 of 90 attendance marks present, ratings 4, 5, 3."""
    db.add(Trainer(id="T1", full_name="Trainer One"))
    db.add(Client(id="K1", full_name="Client One"))
    today = datetime.utcnow().date()
    enrollments = []
    for i in range(10):
        status = "cancelled" if i < 2 else "completed"
        db.add(
            StudioClass(
                id=f"T1C{i}",
                name=f"Session {i}",
                trainer_id="T1",
                class_date=today - timedelta(days=i + 1),
                status=status,
                price_cents=2000,
            )
        )
        if status == "completed":
            enrollments.append(f"T1E{i}")
            db.add(Enrollment(id=f"T1E{i}", class_id=f"T1C{i}", client_id="K1", status="completed"))
    db.flush()
    for i in range(90):
        enrollment_id = enrollments[i % len(enrollments)]
        db.add(
            Attendance(
                enrollment_id=enrollment_id,
                client_id="K1",
                class_id=enrollment_id.replace("T1E", "T1C"),
                attended_on=today - timedelta(days=1),
                status="present" if i < 70 else "absent",
            )
        )
    for idx, rating in enumerate([4, 5, 3]):
        db.add(
            Feedback(
                id=f"T1F{idx}",
                client_id="K1",
                trainer_id="T1",
                class_id="T1C5",
                feedback_type="rating",
                rating=rating,
                created_at=datetime.utcnow() - timedelta(days=2),
            )
        )
    db.commit()


def test_trainer_month_metrics(db_session) -> None:
    _seed_trainer_month(db_session)
    start, end = _period()
    metric = TrainerPerformanceAggregator(db_session).compute("T1", start, end)

    assert metric is not None
    assert metric.total_classes == 10
    assert metric.completed_classes == 8
    assert metric.cancelled_classes == 2
    assert metric.cancellation_rate == 20.0
    assert metric.average_attendance_rate == pytest.approx(77.78, abs=0.01)
    assert metric.client_satisfaction_score == pytest.approx(0.8)
    assert metric.revenue_generated_cents == 16000


def test_trainer_without_classes_has_no_metric(db_session) -> None:
    db_session.add(Trainer(id="T2", full_name="Trainer Two"))
    db_session.commit()
    start, end = _period()
    assert TrainerPerformanceAggregator(db_session).compute("T2", start, end) is None
    assert db_session.execute(select(TrainerPerformanceMetric)).scalars().all() == []


def test_recompute_overwrites_period_row(db_session) -> None:
    _seed_trainer_month(db_session)
    start, end = _period()
    aggregator = TrainerPerformanceAggregator(db_session)
    aggregator.compute("T1", start, end)

    cls = db_session.get(StudioClass, "T1C9")
    cls.status = "cancelled"
    db_session.commit()
    metric = aggregator.compute("T1", start, end)

    rows = db_session.execute(select(TrainerPerformanceMetric)).scalars().all()
    assert len(rows) == 1
    assert metric.cancelled_classes == 3
    assert metric.cancellation_rate == 30.0
    assert metric.revenue_generated_cents == 14000


def test_invalid_period_and_unknown_trainer(db_session) -> None:
    aggregator = TrainerPerformanceAggregator(db_session)
    start, end = _period()
    with pytest.raises(ValidationError):
        aggregator.compute("T1", end, start)
    with pytest.raises(NotFoundError):
        aggregator.compute("ghost", start, end)


def test_unrated_trainer_has_null_satisfaction(db_session) -> None:
    db_session.add(Trainer(id="T3", full_name="Trainer Three"))
    db_session.add(
        StudioClass(id="T3C1", name="Solo", trainer_id="T3", class_date=datetime.utcnow().date(), status="scheduled")
    )
    db_session.commit()
    start, end = _period()
    metric = TrainerPerformanceAggregator(db_session).compute("T3", start, end)
    assert metric.client_satisfaction_score is None
    assert metric.average_attendance_rate == 0.0
    assert metric.revenue_generated_cents == 0


def test_trainer_performance_endpoint_computes_then_reads(client: TestClient, db_session) -> None:
    _seed_trainer_month(db_session)

    r = client.get("/api/insights.trainer_performance", params={"trainer_id": "T1", "days": 30}, headers=_auth_headers())
    assert r.status_code == 200
    items = r.json()["metrics"]
    assert len(items) == 1
    assert items[0]["cancellation_rate"] == 20.0
    assert items[0]["average_attendance_rate"] == 77.78

    r2 = client.get("/api/insights.trainer_performance", params={"days": 30}, headers=_auth_headers())
    assert r2.status_code == 200
    assert [m["trainer_id"] for m in r2.json()["metrics"]] == ["T1"]
    assert len(db_session.execute(select(TrainerPerformanceMetric)).scalars().all()) == 1
