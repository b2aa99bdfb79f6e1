"""
Outgoing email for the clinic.

Messages go through SMTP when SMTP_HOST/SMTP_USER/SMTP_PASS are set. Without
them (development) the message is logged instead so the flows stay testable.
"""

import logging
import os
import smtplib
from datetime import datetime
from email.message import EmailMessage
from html import escape
from typing import Optional

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
FROM_EMAIL = os.getenv("FROM_EMAIL", SMTP_USER or "no-reply@dentalclinic.local")
CLINIC_EMAIL = os.getenv("CLINIC_EMAIL", FROM_EMAIL)
CLINIC_NAME = os.getenv("CLINIC_NAME", "Dental Clinic")


def send_email(to_email: str, subject: str, body_text: str, body_html: Optional[str] = None) -> bool:
    """Send an email via SMTP. Returns True on success, False otherwise."""
    if not SMTP_HOST or not SMTP_USER or not SMTP_PASS:
        logger.info("EMAIL (dev mode) to=%s subject=%r\n%s", to_email, subject, body_text)
        return True
    try:
        msg = EmailMessage()
        msg["From"] = f"{CLINIC_NAME} <{FROM_EMAIL}>"
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body_text)
        if body_html:
            msg.add_alternative(body_html, subtype="html")
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send error to %s: %s", to_email, e)
        return False


def _wrap(title: str, inner: str) -> str:
    return f"""
    <div style='font-family:Arial,sans-serif;max-width:600px;margin:auto;padding:20px;border:1px solid #ddd;border-radius:10px'>
      <h2 style='text-align:center;color:#007bff'>{escape(CLINIC_NAME)}</h2>
      <p style='text-align:center;font-size:16px'>{title}</p>
      <hr style='border:none;border-top:1px solid #ddd;margin:20px 0'>
      {inner}
      <p style='text-align:center;font-size:12px;color:#999'>&copy; {datetime.now().year} {escape(CLINIC_NAME)}</p>
    </div>
    """


def _appointment_block(appt: dict) -> str:
    return (
        f"<p><strong>Date:</strong> {escape(appt['date'])}</p>"
        f"<p><strong>Time:</strong> {escape(appt['time'])}</p>"
        f"<p><strong>Description:</strong> {escape(appt['description'])}</p>"
    )


def appointment_confirmation(appt: dict) -> tuple:
    subject = f"Appointment booked at {CLINIC_NAME}"
    text = (
        f"Your appointment has been booked.\n"
        f"Date: {appt['date']}\nTime: {appt['time']}\nDescription: {appt['description']}\n"
        f"You will receive a reminder one day before."
    )
    html = _wrap("Your appointment has been booked!", _appointment_block(appt)
                 + "<p>You will receive a reminder one day before your appointment.</p>")
    return subject, text, html


def appointment_reminder(appt: dict) -> tuple:
    subject = f"Reminder: your appointment at {CLINIC_NAME} in 24 hours"
    text = (
        f"This is a reminder of your appointment.\n"
        f"Date: {appt['date']}\nTime: {appt['time']}\nDescription: {appt['description']}"
    )
    html = _wrap("This is a reminder of your appointment", _appointment_block(appt)
                 + "<p>We look forward to seeing you!</p>")
    return subject, text, html


def appointment_changed(appt: dict) -> tuple:
    status = "Confirmed" if appt.get("confirmed") else "Pending confirmation"
    subject = f"Your appointment changed - {CLINIC_NAME}"
    text = (
        f"Your appointment has been modified by our staff.\n"
        f"Date: {appt['date']}\nTime: {appt['time']}\nDescription: {appt['description']}\n"
        f"Status: {status}\nPlease arrive 10 minutes early."
    )
    html = _wrap("Your appointment has been <strong>modified</strong>", _appointment_block(appt)
                 + f"<p><strong>Status:</strong> {status}</p>"
                 + "<p>If you cannot attend at the new date and time, please contact us as soon as possible.</p>")
    return subject, text, html


def password_reset(full_name: str, reset_url: str, ttl_minutes: int) -> tuple:
    subject = f"Reset your password - {CLINIC_NAME}"
    text = (
        f"Hello {full_name},\n\nWe received a request to reset your password. "
        f"Open this link to choose a new one:\n{reset_url}\n\n"
        f"The link expires in {ttl_minutes} minutes and can be used once. "
        f"If you did not ask for this, ignore this email."
    )
    html = _wrap(
        "Reset your password",
        f"<p>Hello <strong>{escape(full_name)}</strong>,</p>"
        f"<p>We received a request to reset your password.</p>"
        f"<p style='text-align:center'><a href='{escape(reset_url)}'>Reset password</a></p>"
        f"<p>This link expires in <strong>{ttl_minutes} minutes</strong> and can be used once.</p>",
    )
    return subject, text, html
