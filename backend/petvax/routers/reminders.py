from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from petvax.models import Reminder
from petvax.routers.chat import assistant

router = APIRouter(prefix="/reminders", tags=["reminders"])


@router.get("/due", response_model=list[Reminder])
def list_due_reminders(
    before: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    cutoff = before or datetime.now(timezone.utc)
    return assistant.records.list_due_reminders(before=cutoff, limit=limit)


@router.post("/{reminder_id}/sent", response_model=Reminder)
def mark_reminder_sent(reminder_id: str):
    updated = assistant.records.mark_reminder_sent(reminder_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return updated


@router.post("/reconcile", response_model=dict)
def reconcile_reminders():
    return {"repaired": assistant.records.reconcile_reminder_triplets()}
