import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError

from backend import settings
from backend.clock import Clock, utcnow
from backend.directory import adjust_credits
from backend.errors import ConflictError, NoEligibleContractorError, NotFoundError, ValidationError
from backend.invitations import effective_state, generate_token, issue_invitations, mark_expired
from backend.models import Contractor, Invitation, Lead
from backend.notifications import enqueue_and_send
from backend.selection import select_candidates
from backend.settings import AppConfig

logger = logging.getLogger(__name__)

# what a contractor may see of a lead; never the routing data or homeowner token
LEAD_PUBLIC_FIELDS = {
    "_id": 0,
    "id": 1,
    "customer_name": 1,
    "customer_email": 1,
    "customer_phone": 1,
    "property_address": 1,
    "city": 1,
    "state": 1,
    "zip_code": 1,
    "home_size_sqft": 1,
    "areas_needed": 1,
    "insulation_types": 1,
    "project_timeline": 1,
    "budget_range": 1,
    "notes": 1,
    "created_at": 1,
}


class LeadCreateRequest(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = None
    property_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    home_size_sqft: Optional[int] = Field(default=None, gt=0)
    areas_needed: List[str] = Field(default_factory=list)
    insulation_types: List[str] = Field(default_factory=list)
    project_timeline: Optional[str] = None
    budget_range: Optional[str] = None
    notes: Optional[str] = None
    # set by the "get a quote from this contractor" button on a profile page
    contractor_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


async def get_lead(db, lead_id: str) -> Lead:
    doc = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Lead not found")
    return Lead(**doc)


async def _record_routing(db, lead_id: str, routing: Dict[str, Any]) -> None:
    await db.leads.update_one(
        {"id": lead_id},
        {"$set": {"routing": routing}, "$push": {"routing_history": routing}},
    )


def _lead_summary(lead: Lead) -> str:
    lines = [
        f"Areas Needed: {', '.join(lead.areas_needed) or 'Multiple'}",
        f"Insulation Types: {', '.join(lead.insulation_types) or 'Various'}",
        f"Location: {lead.city or '-'}, {lead.state or ''} {lead.zip_code or ''}".strip(),
    ]
    if lead.home_size_sqft:
        lines.insert(0, f"Home Size: {lead.home_size_sqft} sq ft")
    if lead.project_timeline:
        lines.append(f"Timeline: {lead.project_timeline}")
    return "\n".join(lines)


async def route_direct(
    db,
    mailer,
    lead: Lead,
    contractor_id: str,
    cfg: Optional[AppConfig] = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Hand a lead to exactly one approved contractor, no invitation involved."""
    cfg = cfg or AppConfig()
    doc = await db.contractors.find_one({"id": contractor_id}, {"_id": 0})
    if not doc or doc.get("status") != "approved":
        logger.info("Direct routing of lead %s refused, contractor %s not eligible", lead.id, contractor_id)
        raise NoEligibleContractorError("This contractor is not currently accepting leads")
    contractor = Contractor(**doc)

    existing = await db.lead_assignments.find_one({"lead_id": lead.id, "contractor_id": contractor_id}, {"_id": 0, "id": 1})
    if existing:
        raise ConflictError("This lead is already assigned to this contractor", assignment_id=existing["id"])

    if cfg.lead_credit_cost > 0:
        try:
            await adjust_credits(db, contractor_id, -cfg.lead_credit_cost, clock)
        except ConflictError:
            raise NoEligibleContractorError("This contractor is currently out of credits")

    now = clock()
    assignment = {
        "id": str(uuid.uuid4()),
        "lead_id": lead.id,
        "contractor_id": contractor_id,
        "status": "pending",
        "cost_credits": cfg.lead_credit_cost,
        "assigned_at": now,
    }
    try:
        await db.lead_assignments.insert_one(assignment)
    except PyMongoError as exc:
        if cfg.lead_credit_cost > 0:
            await adjust_credits(db, contractor_id, cfg.lead_credit_cost, clock)
        if isinstance(exc, DuplicateKeyError):
            # a concurrent request assigned it first
            raise ConflictError("This lead is already assigned to this contractor")
        raise
    assignment.pop("_id", None)

    await _record_routing(
        db,
        lead.id,
        {"mode": "direct", "status": "assigned", "contractor_ids": [contractor_id], "routed_at": now},
    )
    logger.info("Lead %s assigned directly to contractor %s", lead.id, contractor_id)

    link = settings.frontend_url("contractor-dashboard?from=email")
    body = f"Hi {contractor.business_name},\n\nA homeowner requested a quote from you directly.\n\n{_lead_summary(lead)}\n"
    if link:
        body += f"\nOpen your dashboard: {link}\n"
    await enqueue_and_send(
        db,
        mailer,
        recipient_type="contractor",
        recipient_id=contractor_id,
        to_email=contractor.email,
        template_id="contractor_direct_lead",
        subject="New direct lead from InsulationPal",
        body=body,
        payload={"lead_id": lead.id, "assignment_id": assignment["id"]},
        clock=clock,
    )
    return assignment


async def route_by_invitation(
    db,
    mailer,
    lead: Lead,
    contractor_ids: List[str],
    ttl: timedelta = timedelta(hours=settings.INVITATION_TTL_HOURS),
    clock: Clock = utcnow,
) -> List[Invitation]:
    """Fan a lead out to every listed contractor. All of them or none."""
    ids = list(dict.fromkeys(contractor_ids))
    if not ids:
        raise NoEligibleContractorError()
    if ttl <= timedelta(0):
        raise ValidationError("Invitation lifetime must be positive")

    docs = await db.contractors.find({"id": {"$in": ids}}, {"_id": 0}).to_list(len(ids))
    found = {d["id"]: Contractor(**d) for d in docs}
    ineligible = [i for i in ids if i not in found or found[i].status != "approved"]
    if ineligible:
        logger.info("Invitation routing of lead %s refused, ineligible contractors %s", lead.id, ineligible)
        raise NoEligibleContractorError(contractor_ids=ineligible)

    invitations = await issue_invitations(db, lead.id, ids, ttl, clock)
    await _record_routing(
        db,
        lead.id,
        {"mode": "invitation", "status": "invited", "contractor_ids": ids, "routed_at": clock()},
    )
    logger.info("Lead %s offered to %d contractors", lead.id, len(invitations))

    for invitation in invitations:
        contractor = found[invitation.contractor_id]
        link = settings.frontend_url(f"invite/{invitation.token}") or f"/api/invitations/{invitation.token}"
        body = (
            f"Hi {contractor.business_name},\n\n"
            "You have a new insulation project available to quote.\n\n"
            f"{_lead_summary(lead)}\n\n"
            f"Submit your quote here: {link}\n"
            f"This invitation expires {invitation.expires_at:%Y-%m-%d %H:%M} UTC.\n\n"
            "- InsulationPal"
        )
        await enqueue_and_send(
            db,
            mailer,
            recipient_type="contractor",
            recipient_id=contractor.id,
            to_email=contractor.email,
            template_id="contractor_invitation",
            subject="New InsulationPal project invitation",
            body=body,
            payload={"lead_id": lead.id, "invitation_id": invitation.id},
            clock=clock,
        )
    return invitations


async def _no_contractor_found(db, mailer, lead: Lead, reason: str, clock: Clock) -> None:
    await _record_routing(db, lead.id, {"mode": None, "status": "no_contractor_found", "contractor_ids": [], "routed_at": clock()})
    await enqueue_and_send(
        db,
        mailer,
        recipient_type="admin",
        recipient_id=None,
        to_email=settings.ADMIN_NOTIFICATION_EMAIL or None,
        template_id="admin_no_contractor_found",
        subject=f"No contractor found for lead {lead.id[:8]}",
        body=f"Lead {lead.id} ({lead.city or '-'}, {lead.state or '-'}) could not be routed: {reason}\n\n{_lead_summary(lead)}\n",
        payload={"lead_id": lead.id},
        clock=clock,
    )


async def create_lead(
    db,
    mailer,
    body: LeadCreateRequest,
    cfg: AppConfig,
    clock: Clock = utcnow,
    rng=None,
) -> Lead:
    now = clock()
    lead_doc = body.model_dump(exclude={"contractor_id"})
    lead_doc.update(
        {
            "id": str(uuid.uuid4()),
            "customer_email": body.customer_email.lower() if body.customer_email else None,
            "created_at": now,
            "client_view_token": generate_token(),
            "routing": None,
            "accepted_invitation_id": None,
            "accepted_at": None,
        }
    )
    await db.leads.insert_one(lead_doc)
    lead = Lead(**{k: v for k, v in lead_doc.items() if k != "_id"})
    logger.info("Lead %s created (%s, %s)", lead.id, lead.city, lead.state)

    try:
        if body.contractor_id:
            await route_direct(db, mailer, lead, body.contractor_id, cfg, clock)
        elif cfg.auto_route_new_leads:
            docs = await db.contractors.find({"status": "approved"}, {"_id": 0}).to_list(500)
            chosen = select_candidates([Contractor(**d) for d in docs], lead, cfg.max_contractor_offers_per_lead, rng)
            await route_by_invitation(db, mailer, lead, [c.id for c in chosen], clock=clock)
        else:
            return lead
    except NoEligibleContractorError as exc:
        await _no_contractor_found(db, mailer, lead, exc.message, clock)

    return await get_lead(db, lead.id)


async def reassign_expired_invitations(
    db,
    mailer,
    cfg: AppConfig,
    clock: Clock = utcnow,
    rng=None,
) -> Dict[str, int]:
    """Top up leads whose invitations ran out without a quote.

    Each expired invitation is accounted for once. Its lead is offered to
    contractors it has not been sent to before, until it again has
    ``max_contractor_offers_per_lead`` live or quoted invitations. Leads whose
    homeowner already accepted a quote are left alone.
    """
    now = clock()
    docs = await db.invitations.find(
        {"state": {"$in": ["active", "expired"]}, "reassessed_at": None},
        {"_id": 0},
    ).to_list(1000)

    expired = 0
    lead_ids: List[str] = []
    for doc in docs:
        invitation = Invitation(**doc)
        if effective_state(invitation, now) != "expired":
            continue
        if invitation.state == "active" and await mark_expired(db, invitation, now):
            expired += 1
        claimed = await db.invitations.update_one(
            {"id": invitation.id, "reassessed_at": None},
            {"$set": {"reassessed_at": now}},
        )
        if claimed.matched_count and invitation.lead_id not in lead_ids:
            lead_ids.append(invitation.lead_id)

    approved = [Contractor(**d) for d in await db.contractors.find({"status": "approved"}, {"_id": 0}).to_list(500)]
    reassigned = issued = 0
    for lead_id in lead_ids:
        lead_doc = await db.leads.find_one({"id": lead_id}, {"_id": 0})
        if not lead_doc or lead_doc.get("accepted_invitation_id"):
            continue
        lead = Lead(**lead_doc)

        offers = [Invitation(**d) for d in await db.invitations.find({"lead_id": lead.id}, {"_id": 0}).to_list(200)]
        live = sum(1 for i in offers if effective_state(i, now) != "expired")
        needed = cfg.max_contractor_offers_per_lead - live
        if needed <= 0:
            continue

        already_offered = {i.contractor_id for i in offers}
        assignments = await db.lead_assignments.find({"lead_id": lead.id}, {"_id": 0, "contractor_id": 1}).to_list(200)
        already_offered.update(a["contractor_id"] for a in assignments)
        chosen = select_candidates([c for c in approved if c.id not in already_offered], lead, needed, rng)
        if not chosen:
            logger.info("No new contractors available for lead %s", lead.id)
            continue

        created = await route_by_invitation(db, mailer, lead, [c.id for c in chosen], clock=clock)
        reassigned += 1
        issued += len(created)

    logger.info(
        "Reassignment sweep: %d expired, %d leads checked, %d reassigned, %d invitations issued",
        expired,
        len(lead_ids),
        reassigned,
        issued,
    )
    return {
        "expired": expired,
        "leads_checked": len(lead_ids),
        "leads_reassigned": reassigned,
        "invitations_issued": issued,
    }
