import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.core.config import settings
from app.core.persistence import PersistenceProvider
from app.models.appointment import AppointmentPublic, AppointmentStatus
from app.services.notifications import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

_STATUS_HEADLINES = {
    AppointmentStatus.PENDING: "Appointment Requested",
    AppointmentStatus.CONFIRMED: "Appointment Confirmed",
    AppointmentStatus.DECLINED: "Appointment Declined",
    AppointmentStatus.COMPLETED: "Appointment Completed",
}


def _send_email_sync(to_email: str, subject: str, html_body: str) -> None:
    """Send email via SMTP (blocking). Run in a worker thread."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), skipping send")
        return
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.from_email, [to_email], msg.as_string())
        logger.info("Email sent to %s", to_email)
    except Exception as e:
        logger.exception("Failed to send email to %s: %s", to_email, e)


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def build_appointment_html(recipient_name: str, appointment: AppointmentPublic, for_provider: bool) -> str:
    """Build HTML body for an appointment status email."""
    headline = _STATUS_HEADLINES[appointment.status]
    date_str = appointment.date.strftime("%A, %B %d, %Y")
    time_str = appointment.time.strftime("%I:%M %p")
    counterpart = (
        f"Patient: {_html_escape(appointment.patient_name)}"
        if for_provider
        else f"With {_html_escape(appointment.provider_name)} ({_html_escape(appointment.specialty)})"
    )
    return f"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{headline}</title>
</head>
<body style="margin:0;padding:0;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;background-color:#f3f4f6;">
  <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width:560px;margin:40px auto;background:#ffffff;border-radius:12px;">
    <tr>
      <td style="padding:32px;">
        <h1 style="margin:0 0 8px 0;font-size:22px;color:#111827;">{headline}</h1>
        <p style="margin:0 0 24px 0;font-size:15px;color:#6b7280;">Hi {_html_escape(recipient_name) or 'there'},</p>
        <p style="margin:0 0 8px 0;font-size:16px;font-weight:600;color:#111827;">{date_str} at {time_str} ({settings.slot_duration_minutes} min)</p>
        <p style="margin:0 0 24px 0;font-size:14px;color:#374151;">{counterpart}</p>
        <p style="margin:0;font-size:13px;color:#6b7280;">{settings.site_name} &nbsp;·&nbsp; {settings.contact_email}</p>
      </td>
    </tr>
  </table>
</body>
</html>
"""


class EmailNotificationSink:
    """Emails the people concerned by an appointment event.

    New bookings go to the provider and the patient; status changes go to
    the patient. Lookups and SMTP run in a background task so ``notify``
    returns immediately.
    """

    def __init__(self, store: PersistenceProvider) -> None:
        self._store = store
        self._tasks: set[asyncio.Task] = set()

    def notify(self, event: ChangeEvent) -> None:
        if event.appointment is None or not settings.email_enabled:
            return
        if event.kind not in (EventKind.APPOINTMENT_CREATED, EventKind.STATUS_CHANGED):
            return
        task = asyncio.get_running_loop().create_task(self._deliver(event.kind, event.appointment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, kind: EventKind, appointment: AppointmentPublic) -> None:
        try:
            recipients = [(appointment.patient_id, False)]
            if kind == EventKind.APPOINTMENT_CREATED:
                recipients.append((appointment.provider_id, True))
            subject = f"{settings.site_name} - {_STATUS_HEADLINES[appointment.status]}"
            for user_id, for_provider in recipients:
                user = await self._store.get_user(user_id)
                if user is None:
                    continue
                html = build_appointment_html(user.display_name, appointment, for_provider)
                await asyncio.to_thread(_send_email_sync, user.email, subject, html)
        except Exception as e:
            logger.exception("Email notification for appointment %s failed: %s", appointment.id, e)
