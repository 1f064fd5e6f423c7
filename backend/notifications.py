import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Dict, Literal, Optional

from starlette.concurrency import run_in_threadpool

from backend import settings
from backend.clock import Clock, utcnow
from backend.db import conditional_update
from backend.errors import DependencyError

logger = logging.getLogger(__name__)

RecipientType = Literal["homeowner", "contractor", "admin"]


class SmtpMailer:
    """Plain SMTP delivery. Blocking; callers run it in a worker thread."""

    def __init__(
        self,
        host: Optional[str] = settings.SMTP_HOST,
        port: int = settings.SMTP_PORT,
        user: Optional[str] = settings.SMTP_USER,
        password: Optional[str] = settings.SMTP_PASS,
        from_email: str = settings.EMAIL_FROM,
        reply_to: str = settings.EMAIL_REPLY_TO,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.reply_to = reply_to

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.from_email)

    def send(self, to_email: str, subject: str, body: str, *, is_html: bool = False, sender_name: str = "InsulationPal") -> None:
        if not self.configured:
            raise DependencyError("Email service is not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((sender_name, self.from_email))
        msg["To"] = to_email
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        msg.attach(MIMEText(body, "html" if is_html else "plain", "utf-8"))

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(self.from_email, [to_email], msg.as_string())


_mailer = SmtpMailer()


def get_mailer():
    return _mailer


# -------------------------------------------------
# Outbox
# -------------------------------------------------


async def dispatch(db, mailer, doc: Dict[str, Any], clock: Clock = utcnow) -> bool:
    """Try to deliver one outbox message and record the outcome on it."""
    try:
        await run_in_threadpool(mailer.send, doc["to_email"], doc["subject"], doc["body"])
    except Exception as exc:  # any delivery error is recorded on the outbox row
        logger.warning("Notification %s (%s) to %s failed: %s", doc["id"], doc["template_id"], doc["to_email"], exc)
        await db.notifications.update_one(
            {"id": doc["id"]},
            {"$set": {"status": "failed", "last_error": str(exc), "updated_at": clock()}, "$inc": {"attempts": 1}},
        )
        return False

    await db.notifications.update_one(
        {"id": doc["id"]},
        {"$set": {"status": "sent", "sent_at": clock(), "last_error": None, "updated_at": clock()}, "$inc": {"attempts": 1}},
    )
    return True


async def enqueue_and_send(
    db,
    mailer,
    *,
    recipient_type: RecipientType,
    recipient_id: Optional[str],
    to_email: Optional[str],
    template_id: str,
    subject: str,
    body: str,
    payload: Optional[Dict[str, Any]] = None,
    clock: Clock = utcnow,
) -> bool:
    """Record a notification and attempt delivery right away.

    Returns False when nothing was delivered; the record stays in the outbox
    for ``retry_failed_notifications``.
    """
    now = clock()
    doc = {
        "id": str(uuid.uuid4()),
        "recipient_type": recipient_type,
        "recipient_id": recipient_id,
        "to_email": to_email,
        "template_id": template_id,
        "channel": "email",
        "subject": subject,
        "body": body,
        "payload": payload or {},
        "status": "pending",
        "attempts": 0,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
        "sent_at": None,
    }
    if not to_email:
        doc["status"] = "failed"
        doc["last_error"] = "no recipient address"
        await db.notifications.insert_one(doc)
        logger.warning("Notification %s (%s) has no recipient address", doc["id"], template_id)
        return False

    await db.notifications.insert_one(doc)
    return await dispatch(db, mailer, doc, clock)


async def retry_failed_notifications(
    db,
    mailer,
    clock: Clock = utcnow,
    max_attempts: int = settings.NOTIFICATION_MAX_ATTEMPTS,
) -> Dict[str, int]:
    docs = await db.notifications.find(
        {"status": {"$in": ["pending", "failed"]}, "attempts": {"$lt": max_attempts}, "to_email": {"$ne": None}},
        {"_id": 0},
    ).to_list(500)

    sent = failed = 0
    for doc in docs:
        # claim the message so two retry runs don't both send it
        claimed = await conditional_update(
            db.notifications,
            {"id": doc["id"], "status": doc["status"], "attempts": doc["attempts"]},
            {"$set": {"status": "sending", "updated_at": clock()}},
        )
        if not claimed:
            continue
        if await dispatch(db, mailer, claimed, clock):
            sent += 1
        else:
            failed += 1

    logger.info("Notification retry: %d sent, %d failed", sent, failed)
    return {"attempted": sent + failed, "sent": sent, "failed": failed}
