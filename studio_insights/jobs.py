from __future__ import annotations

"""
EMBED_SUMMARY: Command-line entry point for the scheduled detection and aggregation jobs.
EMBED_TAGS: jobs, cron, batch, at-risk, leakage, trainer metrics

Usage:
    python -m studio_insights.jobs detect-at-risk
    python -m studio_insights.jobs detect-leakage --days 30
    python -m studio_insights.jobs trainer-metrics --days 30
"""

import argparse
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .at_risk import AtRiskDetector
from .config import get_settings
from .database import init_db, session_scope
from .leakage import LeakageDetector
from .observability import configure_logging
from .trainer_performance import TrainerPerformanceAggregator


logger = logging.getLogger("insights.jobs")


def detect_at_risk() -> dict:
    with session_scope() as db:
        return AtRiskDetector(db).run()


def detect_leakage(days: Optional[int] = None) -> dict:
    with session_scope() as db:
        detector = LeakageDetector(db)
        created = detector.detect_leakage(period_days=days or get_settings().leakage_period_days)
        return {"detected": len(created), "failed": len(detector.failures)}


def trainer_metrics(days: int = 30) -> dict:
    period_end = datetime.utcnow().date()
    period_start = period_end - timedelta(days=days)
    with session_scope() as db:
        metrics = TrainerPerformanceAggregator(db).compute_all(period_start, period_end)
        return {"computed": len(metrics), "period_start": str(period_start), "period_end": str(period_end)}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="studio-insights-jobs", description="Run insight detection jobs")
    sub = parser.add_subparsers(dest="job", required=True)
    sub.add_parser("detect-at-risk", help="Flag inactive clients and resolve re-engaged ones")
    leak = sub.add_parser("detect-leakage", help="Record revenue lost to cancelled classes")
    leak.add_argument("--days", type=int, default=None)
    trainers = sub.add_parser("trainer-metrics", help="Recompute trainer performance metrics")
    trainers.add_argument("--days", type=int, default=30)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)
    init_db()

    if args.job == "detect-at-risk":
        result = detect_at_risk()
    elif args.job == "detect-leakage":
        result = detect_leakage(args.days)
    else:
        result = trainer_metrics(args.days)
    logger.info("job %s finished: %s", args.job, result)
    print(json.dumps(result))


if __name__ == "__main__":
    main()
