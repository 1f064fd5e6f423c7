import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from backend import settings
from backend.clock import Clock, utcnow
from backend.db import conditional_update
from backend.directory import get_contractor
from backend.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from backend.models import MAX_AMOUNT, EscrowJob, EscrowStatus, from_cents, to_cents

logger = logging.getLogger(__name__)

ActorType = Literal["system", "homeowner", "contractor", "admin"]

# pending -> completed is not allowed: work has to start before it can finish
ALLOWED_TRANSITIONS: Dict[EscrowStatus, List[EscrowStatus]] = {
    "pending": ["in_progress", "cancelled", "disputed"],
    "in_progress": ["completed", "cancelled", "disputed"],
    "completed": [],
    "cancelled": [],
    "disputed": [],
}


class EscrowJobCreateRequest(BaseModel):
    # filled from the caller's profile when a contractor creates the job
    contractor_id: Optional[str] = None
    customer_id: Optional[str] = None
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    service_type: Optional[str] = None
    total_amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    customer_notes: Optional[str] = None
    contractor_notes: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


def calculate_commission(total_cents: int, rate_bps: int) -> Tuple[int, int]:
    """Split a total into (commission, contractor payment), both in cents.

    Commission rounds half-up to the cent and the payment is the remainder,
    so the two always add back to the total.
    """
    commission = (Decimal(total_cents) * Decimal(rate_bps) / Decimal(10000)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    commission_cents = int(commission)
    return commission_cents, total_cents - commission_cents


async def create_escrow_job(
    db,
    body: EscrowJobCreateRequest,
    actor_type: ActorType = "contractor",
    actor_id: Optional[str] = None,
    rate_bps: int = settings.ESCROW_COMMISSION_RATE_BPS,
    clock: Clock = utcnow,
) -> EscrowJob:
    if not body.title.strip():
        raise ValidationError("Job title is required", fields=["title"])
    if not body.contractor_id:
        raise ValidationError("contractor_id is required", fields=["contractor_id"])

    contractor = await get_contractor(db, body.contractor_id)
    if contractor.status != "approved":
        raise ConflictError("This contractor is not currently active")

    total_cents = to_cents(body.total_amount)
    commission_cents, payment_cents = calculate_commission(total_cents, rate_bps)
    now = clock()
    doc = {
        "id": str(uuid.uuid4()),
        "contractor_id": body.contractor_id,
        "customer_id": body.customer_id,
        "title": body.title.strip(),
        "description": body.description,
        "service_type": body.service_type,
        "total_cents": total_cents,
        "commission_rate_bps": rate_bps,
        "commission_cents": commission_cents,
        "contractor_payment_cents": payment_cents,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
        "start_date": None,
        "completion_date": None,
        "payment_released_date": None,
        "cancelled_date": None,
        "customer_notes": body.customer_notes,
        "contractor_notes": body.contractor_notes,
    }
    await db.escrow_jobs.insert_one(doc)
    await create_job_event(db, doc["id"], "job_created", actor_type, actor_id, {"total_cents": total_cents}, clock)
    logger.info("Escrow job %s created: total=%d commission=%d", doc["id"], total_cents, commission_cents)
    return EscrowJob(**{k: v for k, v in doc.items() if k != "_id"})


async def create_job_event(
    db,
    job_id: str,
    event_type: str,
    actor_type: ActorType,
    actor_id: Optional[str],
    data: Optional[Dict[str, Any]] = None,
    clock: Clock = utcnow,
) -> None:
    ev = {
        "id": str(uuid.uuid4()),
        "job_id": job_id,
        "event_type": event_type,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "data": data or {},
        "created_at": clock(),
    }
    await db.escrow_job_events.insert_one(ev)


async def get_escrow_job(db, job_id: str) -> EscrowJob:
    doc = await db.escrow_jobs.find_one({"id": job_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Escrow job not found")
    return EscrowJob(**doc)


async def list_for_contractor(db, contractor_id: str) -> List[EscrowJob]:
    docs = await db.escrow_jobs.find({"contractor_id": contractor_id}, {"_id": 0}).sort("created_at", -1).to_list(500)
    return [EscrowJob(**d) for d in docs]


async def transition_escrow_job(
    db,
    job_id: str,
    new_status: EscrowStatus,
    expected_status: Optional[EscrowStatus] = None,
    actor_type: ActorType = "system",
    actor_id: Optional[str] = None,
    clock: Clock = utcnow,
) -> EscrowJob:
    job = await get_escrow_job(db, job_id)
    if expected_status is not None and job.status != expected_status:
        logger.info("Escrow job %s is %s, caller expected %s", job_id, job.status, expected_status)
        raise InvalidTransitionError(current_status=job.status)

    allowed = ALLOWED_TRANSITIONS.get(job.status, [])
    if new_status not in allowed:
        logger.info("Invalid escrow transition %s -> %s for job %s", job.status, new_status, job_id)
        raise InvalidTransitionError(
            f"A {job.status} job cannot be moved to {new_status}",
            current_status=job.status,
        )

    now = clock()
    update: Dict[str, Any] = {"status": new_status, "updated_at": now}
    if new_status == "in_progress":
        update["start_date"] = now
    if new_status == "completed":
        # payout is released the moment the job completes
        update["completion_date"] = now
        update["payment_released_date"] = now
    if new_status == "cancelled":
        update["cancelled_date"] = now

    updated = await conditional_update(db.escrow_jobs, {"id": job_id, "status": job.status}, {"$set": update})
    if not updated:
        current = await get_escrow_job(db, job_id)
        logger.info("Escrow job %s changed to %s during transition to %s", job_id, current.status, new_status)
        raise InvalidTransitionError(current_status=current.status)

    await create_job_event(db, job_id, f"status_{new_status}", actor_type, actor_id, {"from": job.status}, clock)
    logger.info("Escrow job %s %s -> %s", job_id, job.status, new_status)
    return EscrowJob(**updated)


async def contractor_stats(db, contractor_id: str) -> Dict[str, Any]:
    jobs = await list_for_contractor(db, contractor_id)
    completed = [j for j in jobs if j.status == "completed"]
    return {
        "contractor_id": contractor_id,
        "total_jobs": len(jobs),
        "completed_jobs": len(completed),
        "pending_jobs": sum(1 for j in jobs if j.status == "pending"),
        "in_progress_jobs": sum(1 for j in jobs if j.status == "in_progress"),
        "total_earnings": from_cents(sum(j.contractor_payment_cents for j in completed)),
        "total_commissions": from_cents(sum(j.commission_cents for j in completed)),
    }
