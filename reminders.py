"""
Appointment reminders.

Each reminder is a job document in the `reminder` collection, due 24 hours
before the appointment. A background worker claims due jobs one at a time
(pending -> sending) with an atomic find_one_and_update, sends the email and
marks the job sent. A failed send goes back to pending with a linear backoff
until REMINDER_MAX_ATTEMPTS, then the job is marked failed. Jobs left in
`sending` by a crashed worker are reclaimed once their lease expires.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from bson import ObjectId
from fastapi.concurrency import run_in_threadpool
from pymongo import ReturnDocument

import database
import mailer
from schemas import Reminder

logger = logging.getLogger(__name__)

REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "24"))
REMINDER_POLL_SECONDS = int(os.getenv("REMINDER_POLL_SECONDS", "60"))
REMINDER_MAX_ATTEMPTS = int(os.getenv("REMINDER_MAX_ATTEMPTS", "5"))
REMINDER_RETRY_SECONDS = int(os.getenv("REMINDER_RETRY_SECONDS", "300"))
REMINDER_LEASE_SECONDS = int(os.getenv("REMINDER_LEASE_SECONDS", "600"))
CLINIC_TIMEZONE = ZoneInfo(os.getenv("CLINIC_TIMEZONE", "UTC"))


def appointment_datetime(date: str, time: str) -> Optional[datetime]:
    """Combine the stored date/time strings into an aware UTC datetime."""
    try:
        local = datetime.strptime(f"{date} {time}", "%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        return None
    return local.replace(tzinfo=CLINIC_TIMEZONE).astimezone(timezone.utc)


def schedule_reminder(appt: dict, to_email: str, now: Optional[datetime] = None) -> Optional[str]:
    """Persist a reminder job for `appt`. Returns the job id, or None when nothing is scheduled."""
    now = now or datetime.now(timezone.utc)
    starts_at = appointment_datetime(appt.get("date"), appt.get("time"))
    if starts_at is None or starts_at <= now:
        logger.info("No reminder for appointment %s (starts_at=%s)", appt.get("_id"), starts_at)
        return None
    remind_at = max(starts_at - timedelta(hours=REMINDER_LEAD_HOURS), now)
    job = Reminder(
        appointment_id=str(appt["_id"]),
        to_email=to_email,
        remind_at=remind_at,
        next_attempt_at=remind_at,
    )
    job_id = database.create_document("reminder", job)
    logger.info("Reminder %s scheduled for appointment %s at %s", job_id, appt["_id"], remind_at.isoformat())
    return job_id


def cancel_reminders(appointment_id: str) -> int:
    res = database.db["reminder"].delete_many(
        {"appointment_id": str(appointment_id), "status": {"$in": ["pending", "sending"]}}
    )
    if res.deleted_count:
        logger.info("Cancelled %d reminder(s) for appointment %s", res.deleted_count, appointment_id)
    return res.deleted_count


def reschedule_reminder(appt: dict, to_email: str, now: Optional[datetime] = None) -> Optional[str]:
    cancel_reminders(str(appt["_id"]))
    return schedule_reminder(appt, to_email, now=now)


def claim_next(now: datetime) -> Optional[dict]:
    lease_cutoff = now - timedelta(seconds=REMINDER_LEASE_SECONDS)
    return database.db["reminder"].find_one_and_update(
        {"$or": [
            {"status": "pending", "next_attempt_at": {"$lte": now}},
            {"status": "sending", "claimed_at": {"$lte": lease_cutoff}},
        ]},
        {"$set": {"status": "sending", "claimed_at": now, "updated_at": now}},
        sort=[("next_attempt_at", 1)],
        return_document=ReturnDocument.AFTER,
    )


def _deliver(job: dict) -> Optional[str]:
    """Send one reminder. Returns an error message, or None on success."""
    try:
        appt = database.db["appointment"].find_one({"_id": ObjectId(job["appointment_id"])})
    except Exception as e:
        return f"lookup failed: {e}"
    if not appt:
        return "appointment no longer exists"
    subject, text, html = mailer.appointment_reminder(appt)
    if not mailer.send_email(job["to_email"], subject, text, html):
        return "email send failed"
    return None


def process_due_reminders(now: Optional[datetime] = None) -> int:
    """Drain every due reminder job. Returns how many were sent."""
    if database.db is None:
        return 0
    now = now or datetime.now(timezone.utc)
    sent = 0
    while True:
        job = claim_next(now)
        if job is None:
            break
        error = _deliver(job)
        attempts = int(job.get("attempts") or 0) + 1
        if error is None:
            database.db["reminder"].update_one(
                {"_id": job["_id"]},
                {"$set": {"status": "sent", "attempts": attempts, "sent_at": now,
                          "last_error": None, "updated_at": now}},
            )
            sent += 1
            logger.info("Reminder %s sent to %s", job["_id"], job["to_email"])
        elif error == "appointment no longer exists" or attempts >= REMINDER_MAX_ATTEMPTS:
            database.db["reminder"].update_one(
                {"_id": job["_id"]},
                {"$set": {"status": "failed", "attempts": attempts, "last_error": error, "updated_at": now}},
            )
            logger.error("Reminder %s failed permanently after %d attempt(s): %s", job["_id"], attempts, error)
        else:
            retry_at = now + timedelta(seconds=REMINDER_RETRY_SECONDS * attempts)
            database.db["reminder"].update_one(
                {"_id": job["_id"]},
                {"$set": {"status": "pending", "attempts": attempts, "last_error": error,
                          "next_attempt_at": retry_at, "updated_at": now}},
            )
            logger.warning("Reminder %s attempt %d failed (%s), retry at %s",
                           job["_id"], attempts, error, retry_at.isoformat())
    return sent


async def run_worker(stop: asyncio.Event) -> None:
    logger.info("Reminder worker started (poll=%ss)", REMINDER_POLL_SECONDS)
    while not stop.is_set():
        try:
            await run_in_threadpool(process_due_reminders)
        except Exception:
            logger.exception("Reminder worker tick failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=REMINDER_POLL_SECONDS)
        except asyncio.TimeoutError:
            pass
    logger.info("Reminder worker stopped")
