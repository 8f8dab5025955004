from datetime import date, datetime, time, timedelta, timezone
from typing import List
from uuid import uuid4

from petvax.models import Reminder, VaccinationRecord

LOCAL_TZ = timezone(timedelta(hours=7))
REMIND_TIME = time(9, 0)
REMINDER_OFFSETS = (("D-7", -7), ("D-1", -1), ("D0", 0))


def local_today(now: datetime) -> date:
    """Civil date in the fixed UTC+7 zone for an aware or UTC-naive instant."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(LOCAL_TZ).date()


def add_days(iso_date: str, days: int) -> str:
    return (date.fromisoformat(iso_date) + timedelta(days=int(days))).isoformat()


def remind_at(next_due: str, offset_days: int) -> datetime:
    due = date.fromisoformat(next_due) + timedelta(days=offset_days)
    return datetime.combine(due, REMIND_TIME, tzinfo=LOCAL_TZ)


def build_reminders(record: VaccinationRecord) -> List[Reminder]:
    """Return the D-7, D-1 and D0 reminders for a new vaccination record.

    Not idempotent: every call yields fresh ids, so it must run once per record.
    """
    return [
        Reminder(
            id=f"rem_{uuid4().hex[:10]}",
            vaccination_id=record.id,
            owner_user_id=record.owner_user_id,
            pet_name=record.pet_name,
            vaccine_name=record.vaccine_name,
            type=reminder_type,
            remind_at=remind_at(record.next_due_date, offset).isoformat(),
            sent=False,
        )
        for reminder_type, offset in REMINDER_OFFSETS
    ]
