from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..deps import Caller, get_caller, get_db, require_roles
from ..feedback import process_voice_feedback, submit_feedback
from ..schemas import FeedbackOut, FeedbackProcess, FeedbackSubmit


router = APIRouter(prefix="/api", tags=["feedback"], dependencies=[Depends(get_caller)])


@router.post("/feedback.submit", response_model=FeedbackOut)
def feedback_submit(payload: FeedbackSubmit, db: Session = Depends(get_db)):
    return submit_feedback(db, payload)


@router.post("/feedback.process", response_model=FeedbackOut)
def feedback_process(
    payload: FeedbackProcess,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_roles("admin")),
):
    return process_voice_feedback(db, payload.feedback_id, payload.transcription)
