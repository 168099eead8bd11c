from __future__ import annotations

"""
EMBED_SUMMARY: Feedback submission, sentiment derivation and the one-way pending -> processed -> sent_to_admin lifecycle.
EMBED_TAGS: feedback, sentiment, voice, rating, lifecycle, notifications
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import Client, Feedback
from .notifications import NotificationDispatcher, get_notifier
from .schemas import FeedbackSubmit


logger = logging.getLogger("insights.feedback")

FEEDBACK_TYPES = frozenset({"voice", "rating", "text"})

# Allowed forward moves; there is no way back.
TRANSITIONS = {
    "pending": {"processed"},
    "processed": {"sent_to_admin"},
    "sent_to_admin": set(),
}

_POSITIVE_WORDS = frozenset(
    "great good love loved amazing awesome excellent helpful supportive fun enjoyed enjoy friendly "
    "clear motivating motivated challenging progress recommend happy best fantastic".split()
)
_NEGATIVE_WORDS = frozenset(
    "bad poor boring rude late cancelled crowded painful hurt injury disappointed disappointing "
    "unhelpful confusing worst hate hated rushed dirty expensive unsafe tired".split()
)
_WORD_RE = re.compile(r"[a-z']+")


@dataclass
class SentimentConfig:
    """
    3-class thresholds on polarity in [-1, 1]:
      polarity >= pos_threshold -> positive
      polarity <= neg_threshold -> negative
      else -> neutral
    """

    pos_threshold: float = 0.2
    neg_threshold: float = -0.2


def text_polarity(text: str) -> float:
    words = _WORD_RE.findall(text.lower())
    pos = sum(1 for w in words if w in _POSITIVE_WORDS)
    neg = sum(1 for w in words if w in _NEGATIVE_WORDS)
    if pos + neg == 0:
        return 0.0
    return (pos - neg) / (pos + neg)


def derive_sentiment(rating: Optional[int] = None, text: Optional[str] = None, cfg: Optional[SentimentConfig] = None) -> str:
    if rating is not None:
        if rating >= 4:
            return "positive"
        if rating <= 2:
            return "negative"
        return "neutral"
    if not text or not text.strip():
        return "neutral"
    cfg = cfg or SentimentConfig()
    polarity = text_polarity(text)
    if polarity >= cfg.pos_threshold:
        return "positive"
    if polarity <= cfg.neg_threshold:
        return "negative"
    return "neutral"


def key_points(transcription: str, limit: int = 4) -> List[str]:
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", transcription or "") if s.strip()]
    return sentences[:limit]


def advance(feedback: Feedback, new_status: str) -> None:
    allowed = TRANSITIONS.get(feedback.status, set())
    if new_status not in allowed:
        raise ValidationError(f"Cannot move feedback from {feedback.status} to {new_status}")
    if new_status == "processed" and feedback.feedback_type != "voice":
        raise ValidationError("Only voice feedback is processed")
    feedback.status = new_status


def submit_feedback(db: Session, payload: FeedbackSubmit) -> Feedback:
    if payload.feedback_type not in FEEDBACK_TYPES:
        raise ValidationError(f"Invalid feedback_type: {payload.feedback_type}")
    if not payload.class_id:
        raise ValidationError("class_id is required")
    if payload.feedback_type == "voice" and not payload.voice_recording_url:
        raise ValidationError("Voice recording URL is required for voice feedback")
    if payload.feedback_type == "rating" and (payload.rating is None or not 1 <= payload.rating <= 5):
        raise ValidationError("Valid rating (1-5) is required for rating feedback")
    if payload.feedback_type == "text" and not (payload.text_feedback or "").strip():
        raise ValidationError("text_feedback is required for text feedback")
    if payload.rating is not None and not 1 <= payload.rating <= 5:
        raise ValidationError("rating must be between 1 and 5")
    if db.get(Client, payload.client_id) is None:
        raise NotFoundError("Client not found")

    feedback = Feedback(
        id=str(uuid.uuid4()),
        client_id=payload.client_id,
        class_id=payload.class_id,
        trainer_id=payload.trainer_id,
        feedback_type=payload.feedback_type,
        rating=payload.rating,
        text_feedback=payload.text_feedback,
        voice_recording_url=payload.voice_recording_url,
        voice_duration_seconds=payload.voice_duration_seconds,
        status="pending",
    )
    # Rating and text feedback can be read as-is; voice waits for transcription.
    if payload.feedback_type != "voice":
        feedback.ai_sentiment = derive_sentiment(payload.rating, payload.text_feedback)
    db.add(feedback)
    db.commit()
    db.refresh(feedback)

    from .dispatcher import track_event

    track_event(
        db,
        {
            "event_type": "client_feedback_submitted",
            "client_id": feedback.client_id,
            "trainer_id": feedback.trainer_id,
            "class_id": feedback.class_id,
            "metadata": {"feedback_id": feedback.id, "feedback_type": feedback.feedback_type},
        },
    )
    return feedback


def process_voice_feedback(
    db: Session,
    feedback_id: str,
    transcription: str,
    notifier: Optional[NotificationDispatcher] = None,
) -> Feedback:
    """Attach a transcription and sentiment, then notify the admin."""
    feedback = db.get(Feedback, feedback_id)
    if feedback is None:
        raise NotFoundError("Feedback not found")
    if feedback.status != "pending":
        raise ValidationError(f"Feedback already {feedback.status}")
    if feedback.feedback_type != "voice" or not feedback.voice_recording_url:
        raise ValidationError("No voice recording to process")
    if not (transcription or "").strip():
        raise ValidationError("transcription is required")

    feedback.ai_processed_feedback = transcription.strip()
    feedback.ai_sentiment = derive_sentiment(None, transcription)
    feedback.ai_key_points = key_points(transcription)
    advance(feedback, "processed")
    db.add(feedback)
    db.commit()

    notifier = notifier or get_notifier(db)
    delivered = notifier.notify(
        "feedback_processed",
        {
            "id": feedback.id,
            "client_id": feedback.client_id,
            "class_id": feedback.class_id,
            "sentiment": feedback.ai_sentiment,
            "key_points": feedback.ai_key_points,
        },
    )
    if delivered:
        advance(feedback, "sent_to_admin")
        feedback.admin_email_sent = True
        feedback.admin_email_sent_at = datetime.utcnow()
        db.add(feedback)
        db.commit()
    else:
        logger.warning("feedback %s processed but admin notification failed", feedback.id)
    db.refresh(feedback)
    return feedback
