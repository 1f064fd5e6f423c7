import logging
import secrets
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend import settings
from backend.clock import Clock, utcnow
from backend.db import conditional_update
from backend.errors import (
    AlreadyRedeemedError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from backend.models import MAX_AMOUNT, Invitation, Lead, Quote, from_cents, to_cents
from backend.notifications import enqueue_and_send

logger = logging.getLogger(__name__)


class QuoteSubmission(BaseModel):
    contractor_id: Optional[str] = None
    contractor_name: Optional[str] = None
    contractor_email: Optional[str] = None
    business_name: Optional[str] = None
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    timeline: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class RedemptionResult(BaseModel):
    invitation: Invitation
    notification_sent: bool


class AcceptanceResult(BaseModel):
    invitation: Invitation
    notification_sent: bool


def generate_token() -> str:
    return secrets.token_urlsafe(32)


async def issue_invitations(
    db,
    lead_id: str,
    contractor_ids: List[str],
    ttl: timedelta,
    clock: Clock = utcnow,
) -> List[Invitation]:
    """One invitation per contractor, each with its own token and expiry."""
    now = clock()
    docs = [
        {
            "id": str(uuid.uuid4()),
            "token": generate_token(),
            "lead_id": lead_id,
            "contractor_id": contractor_id,
            "created_at": now,
            "expires_at": now + ttl,
            "state": "active",
            "quote": None,
            "redeemed_at": None,
            "expired_at": None,
            "outcome": None,
            "reassessed_at": None,
        }
        for contractor_id in contractor_ids
    ]
    if docs:
        await db.invitations.insert_many(docs)
    return [Invitation(**{k: v for k, v in d.items() if k != "_id"}) for d in docs]


async def mark_expired(db, invitation: Invitation, now: datetime) -> bool:
    # only an active invitation can expire; a concurrent redemption wins
    result = await db.invitations.update_one(
        {"id": invitation.id, "state": "active"},
        {"$set": {"state": "expired", "expired_at": now}},
    )
    return result.matched_count == 1


async def _load(db, token: str) -> Invitation:
    if not token:
        raise NotFoundError("Invitation not found")
    doc = await db.invitations.find_one({"token": token}, {"_id": 0})
    if not doc:
        raise NotFoundError("Invitation not found")
    return Invitation(**doc)


async def resolve(db, token: str, clock: Clock = utcnow) -> Invitation:
    """Look up an invitation, applying expiry against the clock on every read."""
    invitation = await _load(db, token)
    if invitation.state == "expired":
        raise ExpiredError()

    now = clock()
    if invitation.state == "active" and invitation.is_past_expiry(now):
        await mark_expired(db, invitation, now)
        logger.info("Invitation %s expired on read", invitation.id)
        raise ExpiredError()
    return invitation


def effective_state(invitation: Invitation, now: datetime) -> str:
    if invitation.state == "active" and invitation.is_past_expiry(now):
        return "expired"
    return invitation.state


async def list_for_contractor(db, contractor_id: str, clock: Clock = utcnow) -> List[dict]:
    now = clock()
    docs = await db.invitations.find({"contractor_id": contractor_id}, {"_id": 0}).sort("created_at", -1).to_list(200)
    out = []
    for doc in docs:
        inv = Invitation(**doc)
        out.append(
            {
                **inv.model_dump(exclude={"quote", "reassessed_at"}),
                "state": effective_state(inv, now),
                "has_quote": inv.quote is not None,
            }
        )
    return out


async def invitation_stats(db, clock: Clock = utcnow) -> Dict[str, int]:
    now = clock()
    docs = await db.invitations.find({}, {"_id": 0}).to_list(5000)
    stats = {"total": len(docs), "active": 0, "redeemed": 0, "expired": 0, "won": 0}
    for doc in docs:
        inv = Invitation(**doc)
        stats[effective_state(inv, now)] += 1
        if inv.outcome == "won":
            stats["won"] += 1
    return stats


async def redeem(db, mailer, token: str, submission: QuoteSubmission, clock: Clock = utcnow) -> RedemptionResult:
    invitation = await _load(db, token)
    if invitation.state == "redeemed":
        raise AlreadyRedeemedError()
    if invitation.state == "expired":
        raise ExpiredError()

    now = clock()
    if invitation.is_past_expiry(now):
        await mark_expired(db, invitation, now)
        raise ExpiredError()

    if submission.contractor_id and submission.contractor_id != invitation.contractor_id:
        raise ValidationError("This invitation belongs to a different contractor")

    quote = Quote(
        amount_cents=to_cents(submission.amount),
        timeline=submission.timeline,
        notes=submission.notes,
        contractor_name=submission.contractor_name,
        contractor_email=submission.contractor_email,
        business_name=submission.business_name,
        submitted_at=now,
    )
    updated = await conditional_update(
        db.invitations,
        {"id": invitation.id, "state": "active"},
        {"$set": {"state": "redeemed", "quote": quote.model_dump(), "redeemed_at": now}},
    )
    if not updated:
        current = await _load(db, token)
        if current.state == "redeemed":
            logger.info("Concurrent redemption of invitation %s lost the race", invitation.id)
            raise AlreadyRedeemedError()
        raise ExpiredError()

    redeemed = Invitation(**updated)
    logger.info("Invitation %s redeemed by contractor %s", redeemed.id, redeemed.contractor_id)

    notification_sent = await _notify_homeowner(db, mailer, redeemed, quote, clock)
    return RedemptionResult(invitation=redeemed, notification_sent=notification_sent)


async def _notify_homeowner(db, mailer, invitation: Invitation, quote: Quote, clock: Clock) -> bool:
    lead_doc = await db.leads.find_one({"id": invitation.lead_id}, {"_id": 0})
    if not lead_doc:
        logger.warning("Invitation %s points at missing lead %s", invitation.id, invitation.lead_id)
        return False
    lead = Lead(**lead_doc)

    who = quote.business_name or quote.contractor_name or "A contractor"
    link = settings.frontend_url(f"customer-quotes?leadId={lead.id}&token={lead.client_view_token or ''}")
    body = (
        f"Hi {lead.customer_name},\n\n"
        f"You have received a new quote for your insulation project from {who}.\n\n"
        f"Amount: ${from_cents(quote.amount_cents):,}\n"
        f"Timeline: {quote.timeline or '-'}\n"
    )
    if quote.notes:
        body += f"Notes: {quote.notes}\n"
    if link:
        body += f"\nView all your quotes: {link}\n"
    body += "\n- InsulationPal"

    return await enqueue_and_send(
        db,
        mailer,
        recipient_type="homeowner",
        recipient_id=lead.id,
        to_email=lead.customer_email,
        template_id="homeowner_quote_received",
        subject=f"New Quote Received from {who}",
        body=body,
        payload={"lead_id": lead.id, "invitation_id": invitation.id},
        clock=clock,
    )


# -------------------------------------------------
# Homeowner side: view and accept quotes
# -------------------------------------------------


async def get_lead_for_homeowner(db, lead_id: str, token: str) -> Lead:
    doc = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    # an unknown lead and a wrong token look the same to the caller
    if not doc or not doc.get("client_view_token") or not token:
        raise NotFoundError("Lead not found")
    if not secrets.compare_digest(doc["client_view_token"], token):
        raise NotFoundError("Lead not found")
    return Lead(**doc)


def _quote_view(inv: Invitation, business_name: Optional[str]) -> Dict[str, Any]:
    quote = inv.quote
    return {
        "invitation_id": inv.id,
        "contractor_id": inv.contractor_id,
        "business_name": quote.business_name or business_name,
        "amount": quote.amount,
        "timeline": quote.timeline,
        "notes": quote.notes,
        "submitted_at": quote.submitted_at,
        "outcome": inv.outcome,
    }


async def list_quotes_for_lead(db, lead: Lead) -> List[Dict[str, Any]]:
    docs = await db.invitations.find({"lead_id": lead.id, "state": "redeemed"}, {"_id": 0}).to_list(50)
    invs = [Invitation(**d) for d in docs]
    names = {
        c["id"]: c.get("business_name")
        for c in await db.contractors.find(
            {"id": {"$in": [i.contractor_id for i in invs]}}, {"_id": 0, "id": 1, "business_name": 1}
        ).to_list(50)
    }
    invs.sort(key=lambda i: i.quote.amount_cents)
    return [_quote_view(i, names.get(i.contractor_id)) for i in invs]


async def accept_quote(db, mailer, lead: Lead, invitation_id: str, clock: Clock = utcnow) -> AcceptanceResult:
    """Homeowner picks one submitted quote. The first pick for a lead is final."""
    doc = await db.invitations.find_one({"id": invitation_id, "lead_id": lead.id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Quote not found")
    invitation = Invitation(**doc)
    if invitation.state != "redeemed" or invitation.quote is None:
        raise ConflictError("This invitation has no quote to accept")

    now = clock()
    claimed = await conditional_update(
        db.leads,
        {"id": lead.id, "accepted_invitation_id": None},
        {"$set": {"accepted_invitation_id": invitation.id, "accepted_at": now}},
    )
    if not claimed:
        current = await db.leads.find_one({"id": lead.id}, {"_id": 0, "accepted_invitation_id": 1})
        if current and current.get("accepted_invitation_id") == invitation.id:
            return AcceptanceResult(invitation=invitation, notification_sent=False)
        raise ConflictError("A quote has already been accepted for this project")

    await db.invitations.update_one({"id": invitation.id}, {"$set": {"outcome": "won"}})
    await db.invitations.update_many(
        {"lead_id": lead.id, "state": "redeemed", "id": {"$ne": invitation.id}},
        {"$set": {"outcome": "lost"}},
    )
    invitation.outcome = "won"
    logger.info("Lead %s accepted quote %s from contractor %s", lead.id, invitation.id, invitation.contractor_id)

    notification_sent = await _notify_winner(db, mailer, lead, invitation, clock)
    return AcceptanceResult(invitation=invitation, notification_sent=notification_sent)


async def _notify_winner(db, mailer, lead: Lead, invitation: Invitation, clock: Clock) -> bool:
    contractor = await db.contractors.find_one({"id": invitation.contractor_id}, {"_id": 0})
    to_email = contractor.get("email") if contractor else None
    body = (
        f"Hi {contractor.get('business_name') if contractor else 'there'},\n\n"
        f"{lead.customer_name} accepted your quote of ${invitation.quote.amount:,}.\n\n"
        f"Email: {lead.customer_email or '-'}\n"
        f"Phone: {lead.customer_phone or '-'}\n"
        f"Address: {lead.property_address or '-'}, {lead.city or '-'} {lead.state or ''}\n\n"
        "Please reach out to schedule the work.\n\n- InsulationPal"
    )
    return await enqueue_and_send(
        db,
        mailer,
        recipient_type="contractor",
        recipient_id=invitation.contractor_id,
        to_email=to_email,
        template_id="contractor_quote_accepted",
        subject=f"You won the bid - {lead.customer_name}",
        body=body,
        payload={"lead_id": lead.id, "invitation_id": invitation.id},
        clock=clock,
    )
