import logging
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

from backend.clock import Clock, utcnow
from backend.db import conditional_update
from backend.errors import (
    ConflictError,
    DependencyError,
    InvalidStatusTransition,
    NotFoundError,
    ValidationError,
)
from backend.models import Contractor, ContractorStatus

logger = logging.getLogger(__name__)

ALLOWED_STATUS_TRANSITIONS: Dict[ContractorStatus, List[ContractorStatus]] = {
    "pending": ["approved", "rejected"],
    "approved": ["suspended"],
    "suspended": ["approved"],
    "rejected": ["approved"],
}


async def get_contractor(db, contractor_id: str) -> Contractor:
    doc = await db.contractors.find_one({"id": contractor_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Contractor not found")
    return Contractor(**doc)


async def list_by_status(db, status: Optional[ContractorStatus] = None) -> List[Contractor]:
    query = {"status": status} if status else {}
    docs = await db.contractors.find(query, {"_id": 0}).sort("created_at", -1).to_list(500)
    return [Contractor(**d) for d in docs]


async def set_status(db, contractor_id: str, new_status: ContractorStatus, clock: Clock = utcnow) -> Contractor:
    contractor = await get_contractor(db, contractor_id)
    if contractor.status == new_status:
        return contractor

    allowed = ALLOWED_STATUS_TRANSITIONS.get(contractor.status, [])
    if new_status not in allowed:
        logger.info("Rejected contractor %s status change %s -> %s", contractor_id, contractor.status, new_status)
        raise InvalidStatusTransition(f"Cannot change contractor status from {contractor.status} to {new_status}")

    updated = await conditional_update(
        db.contractors,
        {"id": contractor_id, "status": contractor.status},
        {"$set": {"status": new_status, "updated_at": clock()}},
    )
    if not updated:
        current = await get_contractor(db, contractor_id)
        if current.status == new_status:
            return current
        raise ConflictError("This contractor's status changed since you last viewed it")

    logger.info("Contractor %s status %s -> %s", contractor_id, contractor.status, new_status)
    return Contractor(**updated)


def _require_credit_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("Credits must be a non-negative whole number")
    return amount


async def set_credits(db, contractor_id: str, amount: int, clock: Clock = utcnow) -> Contractor:
    amount = _require_credit_amount(amount)
    updated = await conditional_update(
        db.contractors,
        {"id": contractor_id},
        {"$set": {"credits": amount, "updated_at": clock()}},
    )
    if not updated:
        raise NotFoundError("Contractor not found")
    logger.info("Contractor %s credits set to %d", contractor_id, amount)
    return Contractor(**updated)


async def adjust_credits(db, contractor_id: str, delta: int, clock: Clock = utcnow) -> Contractor:
    """Add (positive) or debit (negative) credits; a debit never goes below zero."""
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("Credit adjustment must be a whole number")

    query = {"id": contractor_id}
    if delta < 0:
        query["credits"] = {"$gte": -delta}
    updated = await conditional_update(
        db.contractors,
        query,
        {"$inc": {"credits": delta}, "$set": {"updated_at": clock()}},
    )
    if not updated:
        await get_contractor(db, contractor_id)
        raise ConflictError("Contractor does not have enough credits")
    return Contractor(**updated)


async def delete_contractor(db, contractor_id: str) -> None:
    """Remove a contractor together with its user account.

    Both documents go or neither does: if the user delete fails the contractor
    document is put back before the error is raised.
    """
    contractor = await db.contractors.find_one({"id": contractor_id})
    if not contractor:
        raise NotFoundError("Contractor not found")
    user_id = contractor.get("user_id")

    result = await db.contractors.delete_one({"id": contractor_id})
    if result.deleted_count == 0:
        raise NotFoundError("Contractor not found")

    try:
        if user_id:
            await db.users.delete_one({"id": user_id})
    except PyMongoError:
        logger.exception("User delete failed for contractor %s, restoring contractor", contractor_id)
        await db.contractors.insert_one(contractor)
        raise DependencyError("Failed to delete contractor")

    # invitations and escrow jobs stay as audit trail
    await db.lead_assignments.delete_many({"contractor_id": contractor_id})
    logger.info("Contractor %s and user %s deleted", contractor_id, user_id)
