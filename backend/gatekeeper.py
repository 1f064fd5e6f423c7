import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from backend import settings
from backend.auth import get_password_hash
from backend.clock import Clock, as_utc, utcnow
from backend.db import conditional_update
from backend.errors import (
    DependencyError,
    DuplicateEmailError,
    ExpiredError,
    PolicyRejection,
    RateLimitRejection,
    ValidationError,
)
from backend.notifications import enqueue_and_send
from backend.settings import SpamPolicy

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


class RegistrationSubmission(BaseModel):
    """One contractor application as posted by the join form.

    Fields are plain strings here. The bot checks run before field validation,
    so a filled honeypot is rejected no matter what else was sent.
    """

    name: str = ""
    email: str = ""
    phone: str = ""
    password: str = ""
    business_name: str = ""
    license_number: str = ""
    city: Optional[str] = None
    service_areas: List[str] = Field(default_factory=list)
    # hidden field only bots fill in
    honeypot: Optional[str] = ""
    # epoch milliseconds when the form was rendered
    form_start_time: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class ContractorDraft(BaseModel):
    name: str
    business_name: str
    email: str
    phone: str
    license_number: str
    city: Optional[str] = None
    service_areas: List[str] = Field(default_factory=list)
    status: str = "pending"


class RegistrationResult(BaseModel):
    user_id: str
    contractor_id: str
    email_sent: bool


def _check_bot_signals(submission: RegistrationSubmission, policy: SpamPolicy, now: datetime) -> None:
    if submission.honeypot and submission.honeypot.strip():
        raise PolicyRejection("honeypot")

    if submission.form_start_time is None:
        raise PolicyRejection("dwell_time_missing")
    elapsed_ms = now.timestamp() * 1000 - submission.form_start_time
    if elapsed_ms < policy.min_dwell_seconds * 1000:
        raise PolicyRejection("dwell_time")


def _validate_fields(submission: RegistrationSubmission) -> str:
    required = {
        "name": submission.name,
        "email": submission.email,
        "phone": submission.phone,
        "business_name": submission.business_name,
        "license_number": submission.license_number,
    }
    missing = [k for k, v in required.items() if not v or not v.strip()]
    if missing:
        raise ValidationError("Missing required fields", fields=missing)

    try:
        email = _email_adapter.validate_python(submission.email.strip())
    except PydanticValidationError:
        raise ValidationError("Invalid email address", fields=["email"])

    if len(submission.password) < 8:
        raise ValidationError("Password must be at least 8 characters", fields=["password"])
    return email.lower()


def _check_patterns(submission: RegistrationSubmission, email: str, policy: SpamPolicy) -> None:
    p = policy.patterns
    local_part = email.split("@", 1)[0]
    checks = [
        ("name", p.name, submission.name.strip()),
        ("business_name", p.business_name, submission.business_name.strip()),
        ("email_local_part", p.email_local_part, local_part),
        ("phone_digits", p.phone_digits, re.sub(r"\D", "", submission.phone)),
        ("license_number", p.license_number, submission.license_number.strip()),
    ]
    for field, pattern, value in checks:
        if pattern and re.search(pattern, value, re.IGNORECASE):
            raise PolicyRejection(f"pattern:{field}")


async def _check_rate_limits(db, email: str, source_address: Optional[str], policy: SpamPolicy, now: datetime):
    existing = await db.users.find_one({"email": email}, {"_id": 0, "id": 1, "created_at": 1})
    if existing and as_utc(existing["created_at"]) >= now - timedelta(hours=policy.email_rate_limit_hours):
        raise RateLimitRejection("email_rate_limit")

    if source_address and policy.max_signups_per_address_per_hour > 0:
        recent = await db.contractors.find(
            {"registration_ip": source_address},
            {"_id": 0, "created_at": 1},
        ).to_list(500)
        cutoff = now - timedelta(hours=1)
        count = sum(1 for r in recent if as_utc(r["created_at"]) >= cutoff)
        if count >= policy.max_signups_per_address_per_hour:
            raise RateLimitRejection("address_rate_limit")
    return existing


async def evaluate(
    db,
    submission: RegistrationSubmission,
    policy: SpamPolicy,
    source_address: Optional[str] = None,
    clock: Clock = utcnow,
) -> ContractorDraft:
    """Run the gatekeeper checks in order, stopping at the first failure."""
    now = clock()
    try:
        _check_bot_signals(submission, policy, now)
        email = _validate_fields(submission)
        existing = await _check_rate_limits(db, email, source_address, policy, now)

        domain = email.rsplit("@", 1)[1]
        if policy.is_disposable(domain):
            raise PolicyRejection("disposable_domain")

        _check_patterns(submission, email, policy)

        if existing:
            raise DuplicateEmailError()
    except PolicyRejection as exc:
        logger.warning(
            "Registration rejected rule=%s email=%s address=%s",
            exc.rule,
            submission.email,
            source_address,
        )
        raise
    except DuplicateEmailError:
        logger.warning("Registration rejected rule=duplicate_email email=%s address=%s", submission.email, source_address)
        raise

    return ContractorDraft(
        name=submission.name.strip(),
        business_name=submission.business_name.strip(),
        email=email,
        phone=submission.phone.strip(),
        license_number=submission.license_number.strip(),
        city=submission.city,
        service_areas=[a.strip().lower() for a in submission.service_areas if a.strip()],
    )


def _verification_email(name: str, token: str):
    link = settings.frontend_url(f"verify-email?token={token}") or f"/api/verify-email?token={token}"
    subject = "Verify Your Email - InsulationPal"
    body = (
        f"Hello {name or 'there'},\n\n"
        "Thank you for registering with InsulationPal. To complete your registration "
        "and start receiving qualified leads, please verify your email address:\n"
        f"{link}\n\n"
        f"This link expires in {settings.VERIFICATION_TOKEN_TTL_HOURS} hours. "
        "If you didn't register for InsulationPal, please ignore this email.\n\n"
        "- InsulationPal"
    )
    return subject, body


async def register(
    db,
    mailer,
    submission: RegistrationSubmission,
    policy: SpamPolicy,
    source_address: Optional[str] = None,
    clock: Clock = utcnow,
) -> RegistrationResult:
    draft = await evaluate(db, submission, policy, source_address, clock)

    now = clock()
    user_id = str(uuid.uuid4())
    verification_token = secrets.token_hex(32)
    user_doc = {
        "id": user_id,
        "name": draft.name,
        "email": draft.email,
        "phone": draft.phone,
        "role": "contractor",
        "password_hash": get_password_hash(submission.password),
        "email_verified": False,
        "verification_token": verification_token,
        "verification_token_expiry": now + timedelta(hours=settings.VERIFICATION_TOKEN_TTL_HOURS),
        "created_at": now,
        "last_login_at": None,
    }
    try:
        await db.users.insert_one(user_doc)
    except DuplicateKeyError:
        # lost a race with a concurrent signup for the same email
        raise DuplicateEmailError()

    contractor_id = str(uuid.uuid4())
    contractor_doc = {
        "id": contractor_id,
        "user_id": user_id,
        "name": draft.name,
        "business_name": draft.business_name,
        "email": draft.email,
        "phone": draft.phone,
        "license_number": draft.license_number,
        "city": draft.city,
        "service_areas": draft.service_areas,
        "status": "pending",
        "credits": 0,
        "registration_ip": source_address,
        "created_at": now,
        "updated_at": now,
    }
    try:
        await db.contractors.insert_one(contractor_doc)
    except PyMongoError:
        logger.exception("Contractor insert failed for user %s, removing user", user_id)
        await db.users.delete_one({"id": user_id})
        raise DependencyError("Failed to create contractor profile")

    logger.info("Contractor %s registered (pending), sending verification to %s", contractor_id, draft.email)

    subject, body = _verification_email(draft.name, verification_token)
    email_sent = await enqueue_and_send(
        db,
        mailer,
        recipient_type="contractor",
        recipient_id=contractor_id,
        to_email=draft.email,
        template_id="contractor_verify_email",
        subject=subject,
        body=body,
        payload={"user_id": user_id},
        clock=clock,
    )
    if not email_sent:
        logger.error("Verification email for user %s was not delivered", user_id)

    return RegistrationResult(user_id=user_id, contractor_id=contractor_id, email_sent=email_sent)


async def verify_email(db, mailer, token: str, clock: Clock = utcnow) -> str:
    """Consume a verification credential. Returns the contractor id.

    The admin review notice goes out only from here, never on signup.
    """
    if not token:
        raise ValidationError("Verification token is required")

    user = await db.users.find_one({"verification_token": token}, {"_id": 0})
    if not user or user.get("email_verified"):
        raise ValidationError("Invalid or expired verification token")

    now = clock()
    expiry = as_utc(user.get("verification_token_expiry"))
    if expiry and expiry < now:
        raise ExpiredError("Verification link has expired. Please request a new verification email.")

    updated = await conditional_update(
        db.users,
        {"id": user["id"], "verification_token": token, "email_verified": False},
        {
            "$set": {
                "email_verified": True,
                "verification_token": None,
                "verification_token_expiry": None,
                "updated_at": now,
            }
        },
    )
    if not updated:
        raise ValidationError("Invalid or expired verification token")

    contractor = await db.contractors.find_one({"user_id": user["id"]}, {"_id": 0})
    if not contractor:
        return ""

    await enqueue_and_send(
        db,
        mailer,
        recipient_type="admin",
        recipient_id=None,
        to_email=settings.ADMIN_NOTIFICATION_EMAIL or None,
        template_id="admin_contractor_pending_review",
        subject=f"New contractor application: {contractor['business_name']}",
        body=(
            f"{contractor['business_name']} ({contractor['email']}) verified their email "
            f"and is waiting for review.\nLicense: {contractor.get('license_number') or '-'}\n"
            f"City: {contractor.get('city') or '-'}\n"
        ),
        payload={"contractor_id": contractor["id"]},
        clock=clock,
    )
    return contractor["id"]
