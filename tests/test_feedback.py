from __future__ import annotations

import sys
from datetime import datetime, timedelta
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
from studio_insights.errors import ValidationError
from studio_insights.feedback import SentimentConfig, advance, derive_sentiment, process_voice_feedback, submit_feedback
from studio_insights.feedback_analysis import FeedbackAnalyzer
from studio_insights.models import Client, Feedback, SystemEvent, SystemLog
from studio_insights.notifications import NotificationDispatcher
from studio_insights.rate_limit import _window_counts as _rate_counts
from studio_insights.schemas import FeedbackSubmit


API_TOKEN = "dev-token"
TRAINER_TOKEN = "trainer-token"


def _auth_headers(token: str = API_TOKEN) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class FailingNotifier(NotificationDispatcher):
    def send(self, topic: str, payload: dict) -> None:
        raise ConnectionError("mail relay down")


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for model in (Feedback, SystemLog, SystemEvent, Client):
            db.execute(delete(model))
        db.add(Client(id="K1", full_name="Client One"))
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("APP_API_KEYS", f"{TRAINER_TOKEN}:trainer-1:trainer")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
    yield TestClient(app)
    get_settings.cache_clear()  # type: ignore[attr-defined]


def test_sentiment_from_rating_and_text() -> None:
    assert derive_sentiment(5) == "positive"
    assert derive_sentiment(4, "boring and rude") == "positive"
    assert derive_sentiment(3) == "neutral"
    assert derive_sentiment(2) == "negative"
    assert derive_sentiment(None, "Great class, loved the coach!") == "positive"
    assert derive_sentiment(None, "The session was rushed and the trainer was rude") == "negative"
    assert derive_sentiment(None, "We did pads then bag work") == "neutral"
    assert derive_sentiment(None, None) == "neutral"
    # one positive and one negative word cancel out unless the thresholds say otherwise
    assert derive_sentiment(None, "great but crowded") == "neutral"
    assert derive_sentiment(None, "great but crowded", SentimentConfig(pos_threshold=0.0)) == "positive"


def test_rating_feedback_gets_sentiment_and_event(db_session) -> None:
    feedback = submit_feedback(
        db_session, FeedbackSubmit(client_id="K1", class_id="C1", trainer_id="T1", feedback_type="rating", rating=5)
    )
    assert feedback.status == "pending"
    assert feedback.ai_sentiment == "positive"

    events = db_session.execute(
        select(SystemEvent).where(SystemEvent.event_type == "client_feedback_submitted")
    ).scalars().all()
    assert len(events) == 1
    assert events[0].event_metadata["feedback_id"] == feedback.id


@pytest.mark.parametrize(
    "payload",
    [
        {"client_id": "K1", "feedback_type": "rating", "rating": 4},
        {"client_id": "K1", "class_id": "C1", "feedback_type": "voice"},
        {"client_id": "K1", "class_id": "C1", "feedback_type": "rating"},
        {"client_id": "K1", "class_id": "C1", "feedback_type": "rating", "rating": 6},
        {"client_id": "K1", "class_id": "C1", "feedback_type": "text", "text_feedback": "   "},
        {"client_id": "K1", "class_id": "C1", "feedback_type": "video"},
    ],
)
def test_invalid_submissions_rejected(db_session, payload) -> None:
    with pytest.raises(ValidationError):
        submit_feedback(db_session, FeedbackSubmit(**payload))
    assert db_session.execute(select(Feedback)).scalars().all() == []


def test_voice_feedback_lifecycle(client: TestClient) -> None:
    r = client.post(
        "/api/feedback.submit",
        json={
            "client_id": "K1",
            "class_id": "C1",
            "feedback_type": "voice",
            "voice_recording_url": "https://cdn.example.com/voice/1.m4a",
            "voice_duration_seconds": 42,
        },
        headers=_auth_headers(),
    )
    assert r.status_code == 200
    submitted = r.json()
    assert submitted["status"] == "pending"
    assert submitted["ai_sentiment"] is None

    transcription = "Great session today. The coach was really helpful with my footwork. Loved it."
    r = client.post(
        "/api/feedback.process",
        json={"feedback_id": submitted["id"], "transcription": transcription},
        headers=_auth_headers(TRAINER_TOKEN),
    )
    assert r.status_code == 403

    r = client.post(
        "/api/feedback.process",
        json={"feedback_id": submitted["id"], "transcription": transcription},
        headers=_auth_headers(),
    )
    assert r.status_code == 200
    processed = r.json()
    assert processed["status"] == "sent_to_admin"
    assert processed["admin_email_sent"] is True
    assert processed["ai_sentiment"] == "positive"
    assert processed["ai_key_points"][0] == "Great session today."

    # No way back
    r = client.post(
        "/api/feedback.process",
        json={"feedback_id": submitted["id"], "transcription": transcription},
        headers=_auth_headers(),
    )
    assert r.status_code == 400

    r = client.post(
        "/api/feedback.process", json={"feedback_id": "missing", "transcription": "x"}, headers=_auth_headers()
    )
    assert r.status_code == 404


def test_rating_feedback_cannot_be_processed(db_session) -> None:
    feedback = submit_feedback(
        db_session, FeedbackSubmit(client_id="K1", class_id="C1", feedback_type="rating", rating=2)
    )
    with pytest.raises(ValidationError):
        process_voice_feedback(db_session, feedback.id, "some text", notifier=FailingNotifier())


def test_failed_notification_leaves_feedback_processed(db_session) -> None:
    feedback = submit_feedback(
        db_session,
        FeedbackSubmit(client_id="K1", class_id="C1", feedback_type="voice", voice_recording_url="https://x/1.m4a"),
    )
    result = process_voice_feedback(db_session, feedback.id, "Too crowded and rushed.", notifier=FailingNotifier())
    assert result.status == "processed"
    assert result.admin_email_sent is False
    assert result.ai_sentiment == "negative"


def test_feedback_analysis(db_session) -> None:
    now = datetime.utcnow()
    rows = [
        ("F1", 5, None, "positive", 1),
        ("F2", 4, "Loved it", "positive", 2),
        ("F3", None, "Too crowded", "negative", 3),
        ("F4", None, None, None, 4),
        ("F5", 2, None, "negative", 5),
        ("F6", 3, None, "neutral", 40),
    ]
    for fid, rating, text, sentiment, days_ago in rows:
        db_session.add(
            Feedback(
                id=fid,
                client_id="K1",
                class_id="C1",
                feedback_type="rating" if rating else "voice",
                rating=rating,
                text_feedback=text,
                ai_sentiment=sentiment,
                created_at=now - timedelta(days=days_ago),
            )
        )
    db_session.commit()

    result = FeedbackAnalyzer(db_session).analyze(30, now=now)
    assert result["total_feedback"] == 5
    assert result["by_sentiment"] == {"positive": 2, "neutral": 0, "negative": 2}
    assert result["average_rating"] == pytest.approx(11 / 3)
    assert [f["id"] for f in result["recent_feedback"]] == ["F1", "F2", "F3", "F5"]

    empty = FeedbackAnalyzer(db_session).analyze(1, now=now - timedelta(days=100))
    assert empty["total_feedback"] == 0 and empty["average_rating"] == 0
    assert empty["recent_feedback"] == []


def test_feedback_analysis_defaults_missing_sentiment(db_session) -> None:
    db_session.add(Feedback(id="F9", client_id="K1", feedback_type="rating", rating=4))
    db_session.commit()
    result = FeedbackAnalyzer(db_session).analyze(30)
    assert result["recent_feedback"][0]["ai_sentiment"] == "neutral"
    assert result["by_sentiment"] == {"positive": 0, "neutral": 0, "negative": 0}


def test_feedback_analysis_endpoint_roles(client: TestClient) -> None:
    r = client.get("/api/insights.feedback_analysis", params={"days": 7}, headers=_auth_headers(TRAINER_TOKEN))
    assert r.status_code == 200
    assert r.json()["total_feedback"] == 0


def test_pending_feedback_cannot_skip_processing() -> None:
    feedback = Feedback(id="F-skip", client_id="K1", feedback_type="voice", status="pending")
    with pytest.raises(ValidationError):
        advance(feedback, "sent_to_admin")
    assert feedback.status == "pending"

    advance(feedback, "processed")
    advance(feedback, "sent_to_admin")
    assert feedback.status == "sent_to_admin"
    with pytest.raises(ValidationError):
        advance(feedback, "processed")
