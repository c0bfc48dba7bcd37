"""
tasks/notification_tasks.py
Celery tasks for customer and admin notifications (email + SMS).

Event tasks receive a flat JSON payload built by
services/notification/dispatcher.py, so they never need to re-read the
booking. Only the reminder beat task touches the database.

Failures in one channel never block the other; each provider sits
behind its own circuit breaker so an outage fails fast instead of
tying up workers.
"""

import logging
from datetime import date, timedelta

from celery import Task
from pybreaker import CircuitBreaker, CircuitBreakerError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

email_breaker = CircuitBreaker(fail_max=5, reset_timeout=60, name="resend")
sms_breaker = CircuitBreaker(fail_max=5, reset_timeout=60, name="twilio")


# ── Base Task with DB session ──────────────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """postgresql+asyncpg:// → postgresql+psycopg2://, sqlite+aiosqlite:// → sqlite://"""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _session_factory = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        if DatabaseTask._session_factory is None:
            engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
            DatabaseTask._session_factory = sessionmaker(bind=engine)
        return DatabaseTask._session_factory()


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _deliver_sms(phone: str, body: str) -> None:
    from twilio.rest import Client
    client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    client.messages.create(
        body=body,
        from_=settings.TWILIO_FROM_NUMBER,
        to=phone if phone.startswith("+") else f"{settings.SMS_DEFAULT_COUNTRY_CODE}{phone.lstrip('0')}",
    )


def _deliver_email(to_email: str, subject: str, html_body: str) -> None:
    import resend
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": to_email,
        "subject": subject,
        "html": html_body,
    })


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        sms_breaker.call(_deliver_sms, phone, body)
        return True
    except CircuitBreakerError:
        logger.warning("SMS circuit open, skipping send")
        return False
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        email_breaker.call(_deliver_email, to_email, subject, html_body)
        return True
    except CircuitBreakerError:
        logger.warning("Email circuit open, skipping send")
        return False
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Notification Templates ─────────────────────────────────────────────────────

STATUS_MESSAGES = {
    "pending": "Your booking is pending confirmation.",
    "confirmed": "Your booking has been confirmed! We look forward to servicing your vehicle.",
    "rescheduled": "Your booking has been moved to {date} at {time}.",
    "in_progress": "Our team has started working on your vehicle.",
    "completed": "Your vehicle detailing service has been completed!",
    "cancelled": "Your booking has been cancelled. If you have any questions, please contact us.",
    "declined": "Unfortunately we could not accept your booking. Please choose another time.",
}
DEFAULT_STATUS_MESSAGE = "Your booking status has been updated."

# Statuses worth a text message as well as an email
SMS_STATUSES = {"confirmed", "rescheduled", "cancelled"}

TEMPLATES = {
    "STATUS_UPDATE": {
        "email_subject": "Booking {booking_reference} – {status_label}",
        "sms": "{booking_reference}: {message}",
    },
    "RESCHEDULE_REQUESTED": {
        "email_subject": "Reschedule request – {booking_reference}",
        "email_body": (
            "<p>{customer_name} ({customer_email}) asked to move booking "
            "<strong>{booking_reference}</strong> from {date} {time} to "
            "{requested_date} {requested_time}.</p><p>Reason: {reason}</p>"
        ),
    },
    "RESCHEDULE_DECLINED": {
        "email_subject": "Your reschedule request for {booking_reference}",
        "email_body": (
            "<p>Hi {customer_name},</p><p>We could not move your booking to "
            "{requested_date} at {requested_time}. Your original appointment on "
            "{date} at {time} still stands.</p><p>{admin_response}</p>"
        ),
    },
    "BOOKING_REMINDER": {
        "email_subject": "Reminder: your detailing appointment tomorrow – {booking_reference}",
        "email_body": "<p>Hi {customer_name},</p><p>See you tomorrow at {time}. Booking {booking_reference}.</p>",
        "sms": "Reminder: your detailing appointment is tomorrow at {time}. Booking {booking_reference}.",
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value) if value is not None else "")
    return template


def status_message(new_status: str, **kwargs) -> str:
    return _render(STATUS_MESSAGES.get(new_status, DEFAULT_STATUS_MESSAGE), **kwargs)


# ── Individual Channel Tasks ───────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=120)
def send_sms(self, phone: str, body: str):
    """Send a single SMS via Twilio with retry on failure."""
    success = _send_sms(phone, body)
    if not success:
        raise self.retry(countdown=120 * (2 ** self.request.retries))


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, subject: str, html_body: str):
    """Send a transactional email via Resend with retry on failure."""
    success = _send_email(to_email, subject, html_body)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))


# ── Booking Event Tasks ───────────────────────────────────────────────────────

@celery_app.task
def send_booking_status_update(payload: dict):
    """Tell the customer their booking moved to a new status."""
    new_status = payload["new_status"]
    message = status_message(new_status, date=payload["scheduled_date"], time=payload["scheduled_time"])
    vars = {
        "booking_reference": payload["booking_reference"],
        "status_label": payload.get("status_label", new_status),
        "message": message,
    }

    if payload.get("customer_email"):
        send_email.delay(
            payload["customer_email"],
            _render(TEMPLATES["STATUS_UPDATE"]["email_subject"], **vars),
            f"<p>Hi {payload.get('customer_name') or 'there'},</p><p>{message}</p>",
        )
    if payload.get("customer_phone") and new_status in SMS_STATUSES:
        send_sms.delay(payload["customer_phone"], _render(TEMPLATES["STATUS_UPDATE"]["sms"], **vars))

    logger.info(
        f"Queued status update for {payload['booking_reference']}: "
        f"{payload.get('old_status')} → {new_status}"
    )


@celery_app.task
def send_reschedule_request_alert(payload: dict):
    """Tell the admin inbox a customer wants to move a booking."""
    if not settings.ADMIN_NOTIFICATION_EMAIL:
        logger.info("ADMIN_NOTIFICATION_EMAIL not set, skipping reschedule alert")
        return

    tmpl = TEMPLATES["RESCHEDULE_REQUESTED"]
    vars = {
        "booking_reference": payload["booking_reference"],
        "customer_name": payload.get("customer_name"),
        "customer_email": payload.get("customer_email"),
        "date": payload["scheduled_date"],
        "time": payload["scheduled_time"],
        "requested_date": payload["requested_date"],
        "requested_time": payload["requested_time"],
        "reason": payload.get("reason") or "not given",
    }
    send_email.delay(
        settings.ADMIN_NOTIFICATION_EMAIL,
        _render(tmpl["email_subject"], **vars),
        _render(tmpl["email_body"], **vars),
    )


@celery_app.task
def send_reschedule_declined(payload: dict):
    """Tell the customer their reschedule request was turned down."""
    if not payload.get("customer_email"):
        return

    tmpl = TEMPLATES["RESCHEDULE_DECLINED"]
    vars = {
        "booking_reference": payload["booking_reference"],
        "customer_name": payload.get("customer_name") or "there",
        "date": payload["scheduled_date"],
        "time": payload["scheduled_time"],
        "requested_date": payload["requested_date"],
        "requested_time": payload["requested_time"],
        "admin_response": payload.get("admin_response"),
    }
    send_email.delay(
        payload["customer_email"],
        _render(tmpl["email_subject"], **vars),
        _render(tmpl["email_body"], **vars),
    )


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def send_booking_reminders(self):
    """
    Beat task: runs once a day.
    Reminds every customer with a confirmed or rescheduled booking tomorrow.
    """
    from shared.models.models import Booking, BookingStatus, User

    db = self.get_session()
    try:
        tomorrow = date.today() + timedelta(days=1)
        rows = db.execute(
            select(Booking, User)
            .join(User, User.id == Booking.customer_id)
            .where(
                Booking.scheduled_date == tomorrow,
                Booking.status.in_([BookingStatus.CONFIRMED, BookingStatus.RESCHEDULED]),
            )
        ).all()

        tmpl = TEMPLATES["BOOKING_REMINDER"]
        for booking, user in rows:
            vars = {
                "booking_reference": booking.booking_reference,
                "customer_name": user.name,
                "time": booking.scheduled_start_time.strftime("%H:%M"),
            }
            send_email.delay(
                user.email,
                _render(tmpl["email_subject"], **vars),
                _render(tmpl["email_body"], **vars),
            )
            if user.phone:
                send_sms.delay(user.phone, _render(tmpl["sms"], **vars))

        logger.info(f"Sent {len(rows)} booking reminders for {tomorrow.isoformat()}")
    except Exception as e:
        logger.exception(f"send_booking_reminders failed: {e}")
    finally:
        db.close()
