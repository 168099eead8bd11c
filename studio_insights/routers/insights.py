from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..at_risk import AtRiskDetector
from ..config import get_settings
from ..deps import Caller, get_caller, get_db, require_roles
from ..feedback_analysis import FeedbackAnalyzer
from ..leakage import LeakageDetector
from ..overview import StudioOverview
from ..schemas import (
    AtRiskDetectResponse,
    AtRiskResponse,
    FeedbackAnalysis,
    LeakageDetectResponse,
    LeakageOut,
    LeakageRecover,
    LeakageResponse,
    StudioOverviewResponse,
    TrainerPerformanceResponse,
)
from ..trainer_performance import TrainerPerformanceAggregator, metric_to_dict


router = APIRouter(prefix="/api", tags=["insights"], dependencies=[Depends(get_caller)])


@router.get("/insights.at_risk", response_model=AtRiskResponse)
def insights_at_risk(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin", "trainer")),
    risk_level: Optional[str] = None,
    active_only: bool = True,
):
    records = AtRiskDetector(db).list_records(risk_level=risk_level, active_only=active_only)
    return {"clients": records, "summary": AtRiskDetector.summarize(records)}


@router.post("/insights.at_risk.detect", response_model=AtRiskDetectResponse)
def insights_at_risk_detect(db: Session = Depends(get_db), caller: Caller = Depends(require_roles("admin"))):
    return AtRiskDetector(db).run()


@router.get("/insights.revenue_leakage", response_model=LeakageResponse)
def insights_revenue_leakage(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin")),
    days: int = Query(default=30, ge=1, le=365),
    include_recovered: bool = False,
):
    return LeakageDetector(db).summarize(period_days=days, include_recovered=include_recovered)


@router.post("/insights.revenue_leakage.detect", response_model=LeakageDetectResponse)
def insights_revenue_leakage_detect(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin")),
    days: Optional[int] = Query(default=None, ge=1, le=365),
):
    detector = LeakageDetector(db)
    created = detector.detect_leakage(period_days=days or get_settings().leakage_period_days)
    return {"detected": len(created), "failed": len(detector.failures)}


@router.post("/insights.revenue_leakage.recover", response_model=LeakageOut)
def insights_revenue_leakage_recover(
    payload: LeakageRecover,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin")),
):
    return LeakageDetector(db).mark_recovered(payload.leakage_id, payload.recovery_amount_cents)


@router.get("/insights.trainer_performance", response_model=TrainerPerformanceResponse)
def insights_trainer_performance(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin", "trainer")),
    trainer_id: Optional[str] = None,
    days: int = Query(default=30, ge=1, le=365),
):
    metrics = TrainerPerformanceAggregator(db).list_or_compute(trainer_id, period_days=days)
    return {"metrics": [metric_to_dict(m) for m in metrics], "period_days": days}


@router.get("/insights.feedback_analysis", response_model=FeedbackAnalysis)
def insights_feedback_analysis(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin", "trainer")),
    days: int = Query(default=30, ge=1, le=365),
):
    return FeedbackAnalyzer(db).analyze(period_days=days)


@router.get("/insights.overview", response_model=StudioOverviewResponse)
def insights_overview(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin", "trainer")),
    days: int = 30,
):
    # Out-of-range windows are clamped to 1..365 rather than rejected
    trainer_id = caller.id if caller.role == "trainer" else None
    return StudioOverview(db).build(days=days, trainer_id=trainer_id)
