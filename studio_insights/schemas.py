from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


# Events
class SystemEventIn(BaseModel):
    # enumerated fields and metadata are checked by the event store so bad values surface as 400s
    event_type: Optional[Any] = None
    occurred_at: Optional[datetime] = None
    client_id: Optional[str] = None
    trainer_id: Optional[str] = None
    class_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    payment_id: Optional[str] = None
    location: Optional[str] = None
    channel: Optional[Any] = None
    outcome_status: Optional[Any] = None
    metadata: Optional[Any] = None


class EventTrackResponse(BaseModel):
    ok: bool = True
    event_id: str


class EventOut(BaseModel):
    id: str
    event_type: str
    occurred_at: datetime
    recorded_at: datetime
    client_id: Optional[str] = None
    trainer_id: Optional[str] = None
    class_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    payment_id: Optional[str] = None
    location: Optional[str] = None
    channel: str
    outcome_status: str
    metadata: Dict[str, Any] = {}


class EventsListResponse(BaseModel):
    items: List[EventOut]
    total: int


# Cancellation reasons
class CancellationReasonIn(BaseModel):
    event_id: Optional[str] = None
    class_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    client_id: Optional[str] = None
    reason_category: Optional[str] = None
    reason_text: Optional[str] = None
    hours_before_class: Optional[float] = None
    is_rebooked: bool = False
    rebooked_to_class_id: Optional[str] = None


class CancellationReasonOut(BaseModel):
    id: str
    event_id: Optional[str] = None
    class_id: Optional[str] = None
    client_id: Optional[str] = None
    reason_category: Optional[str] = None
    reason_text: Optional[str] = None
    hours_before_class: Optional[float] = None
    is_rebooked: bool
    created_at: datetime

    model_config = dict(from_attributes=True)


class CancellationCategoryStat(BaseModel):
    category: str
    count: int
    percentage: float
    average_hours_before: Optional[float] = None


class CancellationAnalytics(BaseModel):
    total_cancellations: int
    period_days: int
    by_category: List[CancellationCategoryStat]


# At-risk
class AtRiskClientOut(BaseModel):
    id: str
    client_id: str
    risk_level: str
    risk_factors: List[str] = []
    days_inactive: int
    revenue_at_risk_cents: int
    is_active: bool
    detected_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = dict(from_attributes=True)


class AtRiskSummary(BaseModel):
    total: int
    by_level: Dict[str, int]
    total_revenue_at_risk_cents: int


class AtRiskResponse(BaseModel):
    clients: List[AtRiskClientOut]
    summary: AtRiskSummary


class AtRiskDetectResponse(BaseModel):
    detected: int
    inserted: int
    updated: int
    resolved: int
    failed: int


# Revenue leakage
class LeakageOut(BaseModel):
    id: str
    client_id: Optional[str] = None
    class_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    leakage_type: str
    amount_lost_cents: int
    recovered: bool
    recovery_amount_cents: int
    description: Optional[str] = None
    detected_at: datetime
    recovered_at: Optional[datetime] = None

    model_config = dict(from_attributes=True)


class LeakageTotals(BaseModel):
    total_lost_cents: int
    total_recovered_cents: int
    net_loss_cents: int
    recovery_rate: float


class LeakageTypeStat(BaseModel):
    count: int
    total_cents: int


class LeakageResponse(BaseModel):
    period_days: int
    summary: LeakageTotals
    by_type: Dict[str, LeakageTypeStat]
    records: List[LeakageOut]


class LeakageDetectResponse(BaseModel):
    detected: int
    failed: int


class LeakageRecover(BaseModel):
    leakage_id: str
    recovery_amount_cents: int


# Trainer performance
class TrainerMetricOut(BaseModel):
    trainer_id: str
    measurement_period_start: date
    measurement_period_end: date
    total_classes: int
    completed_classes: int
    cancelled_classes: int
    cancellation_rate: float
    average_attendance_rate: float
    client_satisfaction_score: Optional[float] = None
    revenue_generated_cents: int

    model_config = dict(from_attributes=True)


class TrainerPerformanceResponse(BaseModel):
    metrics: List[TrainerMetricOut]
    period_days: int


# Feedback
class FeedbackSubmit(BaseModel):
    client_id: str
    class_id: Optional[str] = None
    trainer_id: Optional[str] = None
    feedback_type: str = "voice"
    rating: Optional[int] = None
    text_feedback: Optional[str] = None
    voice_recording_url: Optional[str] = None
    voice_duration_seconds: Optional[int] = None


class FeedbackProcess(BaseModel):
    feedback_id: str
    transcription: str


class FeedbackOut(BaseModel):
    id: str
    client_id: str
    trainer_id: Optional[str] = None
    class_id: Optional[str] = None
    feedback_type: str
    rating: Optional[int] = None
    text_feedback: Optional[str] = None
    voice_recording_url: Optional[str] = None
    ai_processed_feedback: Optional[str] = None
    ai_sentiment: Optional[str] = None
    ai_key_points: Optional[List[str]] = None
    status: str
    admin_email_sent: bool
    created_at: datetime

    model_config = dict(from_attributes=True)


class RecentFeedback(BaseModel):
    id: str
    rating: Optional[int] = None
    text_feedback: Optional[str] = None
    ai_sentiment: str
    created_at: datetime


class FeedbackAnalysis(BaseModel):
    total_feedback: int
    by_sentiment: Dict[str, int]
    average_rating: float
    recent_feedback: List[RecentFeedback]


# Studio overview
class AttendanceDay(BaseModel):
    day: date
    attendance_rate: float
    present: int
    total: int


class AttendanceTrend(BaseModel):
    daily: List[AttendanceDay]
    average_rate: float


class EnrollmentDay(BaseModel):
    day: date
    enrollments: int


class EnrollmentTrend(BaseModel):
    daily: List[EnrollmentDay]
    total: int
    active: int
    cancelled: int


class RevenueDay(BaseModel):
    day: date
    revenue_cents: int


class RevenueTrend(BaseModel):
    daily: List[RevenueDay]
    total_cents: int
    average_daily_cents: float


class HourUtilization(BaseModel):
    hour: str
    classes: int
    utilization: float


class ClassUtilization(BaseModel):
    by_hour: List[HourUtilization]
    average_occupancy: float


class TrainerRollup(BaseModel):
    trainer_id: str
    name: str
    classes: int
    cancellations: int
    cancellation_rate: float
    attendance_rate: float


class OperationalTrends(BaseModel):
    attendance: AttendanceTrend
    enrollment: EnrollmentTrend
    revenue: RevenueTrend
    class_utilization: ClassUtilization
    trainer_performance: List[TrainerRollup]


class HourHotspot(BaseModel):
    hour: str
    total: int
    cancelled: int
    cancellation_rate: float


class DayHotspot(BaseModel):
    day: str
    total: int
    cancelled: int
    cancellation_rate: float


class ClassTypeHotspot(BaseModel):
    type: str
    total: int
    cancelled: int
    cancellation_rate: float


class TrainerHotspot(BaseModel):
    trainer_id: str
    trainer: str
    total: int
    cancelled: int
    cancellation_rate: float


class ClientCancellations(BaseModel):
    client_id: str
    cancellations: int


class CancellationHotspots(BaseModel):
    by_time_of_day: List[HourHotspot]
    by_day_of_week: List[DayHotspot]
    by_class_type: List[ClassTypeHotspot]
    by_trainer: List[TrainerHotspot]
    by_client: List[ClientCancellations]
    average_hours_before_class: float


class OverviewObservations(BaseModel):
    recommendations: List[str]
    warnings: List[str]
    insights: List[str]


class DateRange(BaseModel):
    start: date
    end: date
    days: int


class OverviewSummary(BaseModel):
    total_classes: int
    cancelled_classes: int
    total_enrollments: int
    cancelled_enrollments: int
    overall_cancellation_rate: float
    date_range: DateRange


class StudioOverviewResponse(BaseModel):
    operational_trends: OperationalTrends
    cancellation_hotspots: CancellationHotspots
    insights: OverviewObservations
    summary: OverviewSummary
