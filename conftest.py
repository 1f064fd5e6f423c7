import itertools
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

os.environ.setdefault("JWT_SECRET_KEY", "insulationpal-test-secret")
os.environ.setdefault("ADMIN_NOTIFICATION_EMAIL", "review@insulationpal.com")

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from backend import db as db_module
from backend.auth import create_access_token
from backend.clock import get_clock
from backend.notifications import get_mailer
from backend.server import app


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to_email, subject, body, **kwargs):
        if self.fail:
            raise ConnectionRefusedError("SMTP server unreachable")
        self.sent.append({"to": to_email, "subject": subject, "body": body})

    def to(self, email):
        return [m for m in self.sent if m["to"] == email]


class LeadExchangeTestClient:
    """Thin wrapper that returns the same structured result for every call."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def call(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        token: Optional[str] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        response = await self.client.request(
            method.upper(), f"/api{endpoint}", json=data, params=params, headers=request_headers
        )
        return {
            "success": response.status_code < 400,
            "status_code": response.status_code,
            "data": response.json() if response.content else {},
        }


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()[f"insulationpal_{uuid.uuid4().hex[:12]}"]
    await db_module.ensure_indexes(database)
    db_module.use_database(database)
    return database


@pytest.fixture
async def api(db, clock, mailer):
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_mailer] = lambda: mailer
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield LeadExchangeTestClient(client)
    app.dependency_overrides.clear()


@pytest.fixture
def make_contractor(db, clock):
    counter = itertools.count(1)

    async def _make(status="approved", credits=0, service_areas=None, email=None, created_at=None):
        n = next(counter)
        user_id = str(uuid.uuid4())
        contractor_id = str(uuid.uuid4())
        email = email or f"estimates{n}@desertshieldinsulation.com"
        created_at = created_at or clock() - timedelta(days=30)
        await db.users.insert_one(
            {
                "id": user_id,
                "name": f"Marco Ruiz {n}",
                "email": email,
                "phone": "602-814-2290",
                "role": "contractor",
                "password_hash": None,
                "email_verified": True,
                "created_at": created_at,
            }
        )
        doc = {
            "id": contractor_id,
            "user_id": user_id,
            "name": f"Marco Ruiz {n}",
            "business_name": f"Desert Shield Insulation {n}",
            "email": email,
            "phone": "602-814-2290",
            "license_number": f"ROC-3{n:05d}",
            "city": "Mesa",
            "service_areas": service_areas if service_areas is not None else [],
            "status": status,
            "credits": credits,
            "created_at": created_at,
            "updated_at": created_at,
        }
        await db.contractors.insert_one(dict(doc))
        return doc

    return _make


@pytest.fixture
def make_lead(db, clock):
    async def _make(**overrides):
        doc = {
            "id": str(uuid.uuid4()),
            "customer_name": "Dana Whitfield",
            "customer_email": "dana.whitfield@gmail.com",
            "customer_phone": "480-730-1187",
            "property_address": "1420 W Baseline Rd",
            "city": "Mesa",
            "state": "AZ",
            "zip_code": "85202",
            "home_size_sqft": 1850,
            "areas_needed": ["attic"],
            "insulation_types": ["blown_in"],
            "project_timeline": "within_month",
            "notes": None,
            "created_at": clock(),
            "client_view_token": f"hv-{uuid.uuid4().hex}",
            "routing": None,
            "accepted_invitation_id": None,
            "accepted_at": None,
        }
        doc.update(overrides)
        await db.leads.insert_one(dict(doc))
        return doc

    return _make


@pytest.fixture
async def admin_token(db, clock):
    user_id = str(uuid.uuid4())
    await db.users.insert_one(
        {
            "id": user_id,
            "name": "Ops Admin",
            "email": "ops@insulationpal.com",
            "role": "admin",
            "password_hash": None,
            "email_verified": True,
            "created_at": clock(),
        }
    )
    return create_access_token({"sub": user_id, "role": "admin"})


@pytest.fixture
def token_for():
    def _token(contractor: Dict[str, Any]) -> str:
        return create_access_token({"sub": contractor["user_id"], "role": "contractor"})

    return _token
