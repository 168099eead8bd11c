from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..cancellations import cancellation_analytics, record_cancellation_reason
from ..deps import Caller, get_caller, get_db, require_roles
from ..dispatcher import track_event
from ..event_store import EventStore, event_to_dict
from ..schemas import (
    CancellationAnalytics,
    CancellationReasonIn,
    CancellationReasonOut,
    EventsListResponse,
    EventTrackResponse,
    SystemEventIn,
)


router = APIRouter(prefix="/api", tags=["events"], dependencies=[Depends(get_caller)])


@router.post("/events.track", response_model=EventTrackResponse)
def events_track(payload: SystemEventIn, db: Session = Depends(get_db)):
    event_id = track_event(db, payload)
    return {"ok": True, "event_id": event_id}


@router.get("/events.list", response_model=EventsListResponse)
def events_list(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin")),
    event_type: Optional[str] = None,
    client_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    events = EventStore(db).list(event_type=event_type, client_id=client_id, since=since, limit=limit)
    return {"items": [event_to_dict(e) for e in events], "total": len(events)}


@router.post("/events.cancellation_reason", response_model=CancellationReasonOut)
def events_cancellation_reason(payload: CancellationReasonIn, db: Session = Depends(get_db)):
    return record_cancellation_reason(db, payload)


@router.get("/events.cancellation_reasons", response_model=CancellationAnalytics)
def events_cancellation_reasons(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin", "trainer")),
    days: int = Query(default=30, ge=1, le=365),
):
    return cancellation_analytics(db, days)
