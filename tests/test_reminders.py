from datetime import datetime, timedelta, timezone

import mailer
import reminders

BOOKED_AT = datetime(2030, 5, 1, 8, 0, tzinfo=timezone.utc)
DUE_AT = datetime(2030, 5, 9, 10, 0, tzinfo=timezone.utc)


def _job(db, appt):
    return db["reminder"].find_one({"appointment_id": appt["id"]})


def test_schedule_reminder_a_day_ahead(db, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00")
    assert reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    job = _job(db, appt)
    assert job["status"] == "pending"
    assert job["attempts"] == 0
    assert job["remind_at"] == DUE_AT
    assert job["next_attempt_at"] == DUE_AT


def test_no_reminder_for_past_or_unparseable_appointments(db, make_appointment):
    past = make_appointment(date="2030-04-01", time="10:00")
    assert reminders.schedule_reminder(past, "paula@example.com", now=BOOKED_AT) is None
    broken = make_appointment(date="soon", time="10:00")
    assert reminders.schedule_reminder(broken, "paula@example.com", now=BOOKED_AT) is None
    assert db["reminder"].count_documents({}) == 0


def test_appointment_within_lead_time_is_due_now(db, make_appointment):
    appt = make_appointment(date="2030-05-01", time="18:00")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    assert _job(db, appt)["next_attempt_at"] == BOOKED_AT


def test_due_reminder_is_sent_once(db, outbox, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00", description="Root canal")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)

    assert reminders.process_due_reminders(now=DUE_AT - timedelta(minutes=1)) == 0
    assert outbox == []

    assert reminders.process_due_reminders(now=DUE_AT) == 1
    assert outbox[0]["to"] == "paula@example.com"
    assert "Root canal" in outbox[0]["text"]
    job = _job(db, appt)
    assert job["status"] == "sent"
    assert job["attempts"] == 1

    assert reminders.process_due_reminders(now=DUE_AT + timedelta(hours=1)) == 0
    assert len(outbox) == 1


def test_failed_send_is_retried_with_backoff(db, monkeypatch, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    monkeypatch.setattr(mailer, "send_email", lambda *a, **kw: False)

    assert reminders.process_due_reminders(now=DUE_AT) == 0
    job = _job(db, appt)
    assert job["status"] == "pending"
    assert job["attempts"] == 1
    assert job["last_error"] == "email send failed"
    assert job["next_attempt_at"] == DUE_AT + timedelta(seconds=reminders.REMINDER_RETRY_SECONDS)


def test_reminder_fails_after_max_attempts(db, monkeypatch, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    monkeypatch.setattr(mailer, "send_email", lambda *a, **kw: False)
    monkeypatch.setattr(reminders, "REMINDER_MAX_ATTEMPTS", 2)
    monkeypatch.setattr(reminders, "REMINDER_RETRY_SECONDS", 60)

    reminders.process_due_reminders(now=DUE_AT)
    reminders.process_due_reminders(now=DUE_AT + timedelta(minutes=1))
    job = _job(db, appt)
    assert job["status"] == "failed"
    assert job["attempts"] == 2


def test_reminder_for_deleted_appointment_fails(db, outbox, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    db["appointment"].delete_one({"_id": appt["_id"]})

    assert reminders.process_due_reminders(now=DUE_AT) == 0
    job = _job(db, appt)
    assert job["status"] == "failed"
    assert job["last_error"] == "appointment no longer exists"
    assert outbox == []


def test_stale_claim_is_reclaimed(db, outbox, make_appointment):
    stale = make_appointment(date="2030-05-10", time="10:00")
    fresh = make_appointment(date="2030-05-10", time="11:00")
    for appt, claimed in ((stale, DUE_AT - timedelta(minutes=11)), (fresh, DUE_AT - timedelta(minutes=1))):
        db["reminder"].insert_one({
            "appointment_id": appt["id"], "to_email": "paula@example.com",
            "remind_at": DUE_AT, "next_attempt_at": DUE_AT, "status": "sending",
            "attempts": 0, "claimed_at": claimed,
        })

    assert reminders.process_due_reminders(now=DUE_AT) == 1
    assert _job(db, stale)["status"] == "sent"
    assert _job(db, fresh)["status"] == "sending"


def test_cancel_keeps_sent_jobs(db, outbox, make_appointment):
    appt = make_appointment(date="2030-05-10", time="10:00")
    reminders.schedule_reminder(appt, "paula@example.com", now=BOOKED_AT)
    reminders.process_due_reminders(now=DUE_AT)
    assert reminders.cancel_reminders(appt["id"]) == 0
    assert _job(db, appt)["status"] == "sent"


def test_appointment_datetime_uses_clinic_timezone(monkeypatch):
    from zoneinfo import ZoneInfo
    monkeypatch.setattr(reminders, "CLINIC_TIMEZONE", ZoneInfo("America/Costa_Rica"))
    assert reminders.appointment_datetime("2030-05-10", "10:00") == datetime(2030, 5, 10, 16, 0, tzinfo=timezone.utc)


def _due_job(db, appt):
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    db["reminder"].insert_one({
        "appointment_id": appt["id"], "to_email": "paula@example.com",
        "remind_at": past, "next_attempt_at": past, "status": "pending", "attempts": 0,
    })


def test_worker_sends_due_jobs_and_stops(db, outbox, monkeypatch, make_appointment):
    import asyncio

    appt = make_appointment(date="2030-05-10", time="10:00")
    _due_job(db, appt)
    monkeypatch.setattr(reminders, "REMINDER_POLL_SECONDS", 0.01)

    async def run():
        stop = asyncio.Event()
        task = asyncio.create_task(reminders.run_worker(stop))
        for _ in range(300):
            if outbox:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        return task

    task = asyncio.run(run())
    assert task.done()
    assert task.exception() is None
    assert len(outbox) == 1
    assert _job(db, appt)["status"] == "sent"


def test_app_lifespan_runs_reminder_worker(db, outbox, monkeypatch, make_appointment):
    import time

    from fastapi.testclient import TestClient

    import main

    appt = make_appointment(date="2030-05-10", time="10:00")
    _due_job(db, appt)
    monkeypatch.setattr(main, "REMINDER_WORKER_ENABLED", True)
    monkeypatch.setattr(reminders, "REMINDER_POLL_SECONDS", 0.01)

    with TestClient(main.app) as client:
        assert client.get("/").status_code == 200
        for _ in range(300):
            if outbox:
                break
            time.sleep(0.01)

    assert _job(db, appt)["status"] == "sent"
