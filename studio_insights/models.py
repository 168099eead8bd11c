from __future__ import annotations

"""
EMBED_SUMMARY: Data models for the studio tables read by insights and the derived insight tables.
EMBED_TAGS: models, events, at-risk, leakage, trainer performance, feedback, schema
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


# Studio tables


class Client(Base):
    __tablename__ = "clients"
    """
    EMBED_SUMMARY: Studio client profile; status gates at-risk detection.
    EMBED_TAGS: clients, members, engagement
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    join_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_clients_status", "status"),)


class Trainer(Base):
    __tablename__ = "trainers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)


class StudioClass(Base):
    __tablename__ = "classes"
    """
    EMBED_SUMMARY: Scheduled studio classes with trainer, status and price (cents).
    EMBED_TAGS: classes, scheduling, pricing, cancellations
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    trainer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("trainers.id"), nullable=True, index=True)
    class_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    class_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="scheduled", nullable=False)
    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    enrollments: Mapped[list["Enrollment"]] = relationship("Enrollment", back_populates="studio_class", lazy="selectin")

    __table_args__ = (Index("ix_classes_status_date", "status", "class_date"),)


class Enrollment(Base):
    __tablename__ = "class_enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    class_id: Mapped[str] = mapped_column(String(36), ForeignKey("classes.id", ondelete="CASCADE"), index=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    studio_class: Mapped[StudioClass] = relationship(StudioClass, back_populates="enrollments")

    __table_args__ = (UniqueConstraint("class_id", "client_id", name="uq_enrollment_class_client"),)


class Attendance(Base):
    __tablename__ = "attendance"
    """
    EMBED_SUMMARY: Per-enrollment attendance marks (present/absent/late) used for activity and attendance rates.
    EMBED_TAGS: attendance, visits, analytics
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("class_enrollments.id", ondelete="CASCADE"), index=True
    )
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    class_id: Mapped[str] = mapped_column(String(36), ForeignKey("classes.id", ondelete="CASCADE"), index=True)
    attended_on: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="present", nullable=False)


class Feedback(Base):
    __tablename__ = "feedback"
    """
    EMBED_SUMMARY: Client feedback (voice, rating or text) with derived sentiment and a one-way status lifecycle.
    EMBED_TAGS: feedback, sentiment, ratings, voice
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    trainer_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    feedback_type: Mapped[str] = mapped_column(String(16), default="rating", nullable=False)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    text_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    voice_recording_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    voice_duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ai_processed_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_sentiment: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    ai_key_points: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    admin_email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_feedback_rating_range"),
        Index("ix_feedback_created_at", "created_at"),
    )


# Insight tables


class SystemEvent(Base):
    __tablename__ = "system_events"
    """
    EMBED_SUMMARY: Append-only log of typed business events; seq preserves insertion order for ties.
    EMBED_TAGS: events, audit, tracking, append-only
    """

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    trainer_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    enrollment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), default="web", nullable=False)
    outcome_status: Mapped[str] = mapped_column(String(16), default="success", nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_system_events_type_occurred", "event_type", "occurred_at"),
        Index("ix_system_events_client_occurred", "client_id", "occurred_at"),
    )


class AtRiskClient(Base):
    __tablename__ = "at_risk_clients"
    """
    EMBED_SUMMARY: Detected at-risk clients; at most one active row per client (partial unique index).
    EMBED_TAGS: at-risk, churn, inactivity, retention
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)
    risk_factors: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    days_inactive: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revenue_at_risk_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("days_inactive >= 0", name="ck_at_risk_days_nonneg"),
        CheckConstraint("revenue_at_risk_cents >= 0", name="ck_at_risk_revenue_nonneg"),
        Index(
            "uq_at_risk_active_client",
            "client_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class RevenueLeakage(Base):
    __tablename__ = "revenue_leakage"
    """
    EMBED_SUMMARY: Unrecovered value from cancelled sessions; one unrecovered row per (class, enrollment).
    EMBED_TAGS: revenue, leakage, cancellations, recovery
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    class_id: Mapped[str] = mapped_column(String(36), nullable=False)
    enrollment_id: Mapped[str] = mapped_column(String(36), nullable=False)
    leakage_type: Mapped[str] = mapped_column(String(64), default="cancellation_no_show", nullable=False)
    amount_lost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    recovered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recovery_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    recovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_lost_cents >= 0", name="ck_leakage_amount_nonneg"),
        CheckConstraint(
            "recovery_amount_cents >= 0 AND recovery_amount_cents <= amount_lost_cents",
            name="ck_leakage_recovery_bounds",
        ),
        Index("ix_revenue_leakage_detected_at", "detected_at"),
        Index(
            "uq_leakage_open_class_enrollment",
            "class_id",
            "enrollment_id",
            unique=True,
            sqlite_where=text("recovered = 0"),
            postgresql_where=text("NOT recovered"),
        ),
    )


class TrainerPerformanceMetric(Base):
    __tablename__ = "trainer_performance_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    measurement_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    measurement_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    total_classes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_classes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_classes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancellation_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    average_attendance_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    client_satisfaction_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    revenue_generated_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "trainer_id", "measurement_period_start", "measurement_period_end", name="uq_trainer_metric_period"
        ),
        CheckConstraint("measurement_period_end >= measurement_period_start", name="ck_trainer_metric_period"),
    )


class CancellationReason(Base):
    __tablename__ = "cancellation_reasons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    enrollment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reason_category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hours_before_class: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_rebooked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rebooked_to_class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_cancellation_reasons_created_at", "created_at"),)


class FeedbackTrigger(Base):
    __tablename__ = "feedback_triggers"
    """
    EMBED_SUMMARY: Queue of feedback requests raised at high-impact moments (cancellation, at-risk, ...).
    EMBED_TAGS: feedback, triggers, queue, cancellations
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    enrollment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    language_preference: Mapped[str] = mapped_column(String(8), default="en", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    feedback_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


class SystemLog(Base):
    __tablename__ = "system_log"
    """
    EMBED_SUMMARY: Append-only application log for outbound notifications.
    EMBED_TAGS: logs, audit, notifications
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
