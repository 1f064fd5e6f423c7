import logging
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from backend.settings import DB_NAME, MONGO_URL

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
_state: Dict[str, Any] = {"db": client[DB_NAME]}


def use_database(database) -> None:
    """Point the app at another database handle (tests, scripts)."""
    _state["db"] = database


def get_db():
    return _state["db"]


async def conditional_update(collection, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply ``update`` only if ``query`` still matches, then return the document by id.

    ``query`` must name the document's ``id``; the rest of it is the state the
    caller expects. Returns None when that state no longer holds.
    """
    result = await collection.update_one(query, update)
    if result.matched_count == 0:
        return None
    return await collection.find_one({"id": query["id"]}, {"_id": 0})


async def ensure_indexes(db) -> None:
    await db.users.create_index("id", unique=True)
    await db.users.create_index("email", unique=True)
    await db.users.create_index("verification_token", sparse=True)
    await db.contractors.create_index("id", unique=True)
    await db.contractors.create_index("user_id", unique=True)
    await db.contractors.create_index("status")
    await db.leads.create_index("id", unique=True)
    # a lead goes to a given contractor at most once
    await db.lead_assignments.create_index([("lead_id", 1), ("contractor_id", 1)], unique=True)
    await db.lead_assignments.create_index("contractor_id")
    await db.invitations.create_index("token", unique=True)
    await db.invitations.create_index([("lead_id", 1), ("contractor_id", 1)])
    await db.invitations.create_index("contractor_id")
    await db.escrow_jobs.create_index("id", unique=True)
    await db.escrow_jobs.create_index("contractor_id")
    await db.notifications.create_index("status")
    logger.info("Indexes ensured on %s", getattr(db, "name", "database"))
