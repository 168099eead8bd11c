from __future__ import annotations

"""
EMBED_SUMMARY: Feedback sentiment summary over a trailing period (counts by sentiment, average rating, recent items).
EMBED_TAGS: feedback, sentiment, ratings, analytics
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import Feedback


RECENT_LIMIT = 10


class FeedbackAnalyzer:
    def __init__(self, db: Session) -> None:
        self.db = db

    def analyze(self, period_days: int = 30, now: Optional[datetime] = None) -> dict:
        if period_days < 1:
            raise ValidationError("days must be at least 1")
        now = now or datetime.utcnow()
        rows = self.db.execute(
            select(Feedback)
            .where(Feedback.created_at >= now - timedelta(days=period_days))
            .order_by(Feedback.created_at.desc())
        ).scalars().all()

        by_sentiment = {"positive": 0, "neutral": 0, "negative": 0}
        for f in rows:
            if f.ai_sentiment in by_sentiment:
                by_sentiment[f.ai_sentiment] += 1

        ratings = [f.rating for f in rows if f.rating is not None]
        average_rating = sum(ratings) / len(ratings) if ratings else 0

        recent = [
            {
                "id": f.id,
                "rating": f.rating,
                "text_feedback": f.text_feedback or None,
                "ai_sentiment": f.ai_sentiment or "neutral",
                "created_at": f.created_at,
            }
            for f in rows
            if f.text_feedback or f.rating is not None
        ][:RECENT_LIMIT]

        return {
            "total_feedback": len(rows),
            "by_sentiment": by_sentiment,
            "average_rating": average_rating,
            "recent_feedback": recent,
        }
