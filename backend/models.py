from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.clock import as_utc

ContractorStatus = Literal["pending", "approved", "suspended", "rejected"]
InvitationState = Literal["active", "redeemed", "expired"]
QuoteOutcome = Literal["won", "lost"]
EscrowStatus = Literal["pending", "in_progress", "completed", "cancelled", "disputed"]

CENT = Decimal("0.01")
# largest quote or job total accepted, well inside a signed 64-bit cent count
MAX_AMOUNT = Decimal("10000000.00")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


class Contractor(BaseModel):
    id: str
    user_id: str
    name: str
    business_name: str
    email: str
    phone: Optional[str] = None
    license_number: Optional[str] = None
    city: Optional[str] = None
    service_areas: List[str] = Field(default_factory=list)
    status: ContractorStatus = "pending"
    credits: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class Lead(BaseModel):
    id: str
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    property_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    home_size_sqft: Optional[int] = None
    areas_needed: List[str] = Field(default_factory=list)
    insulation_types: List[str] = Field(default_factory=list)
    project_timeline: Optional[str] = None
    budget_range: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    # homeowner credential for viewing and accepting quotes
    client_view_token: Optional[str] = None
    # owned by the lead router and quote acceptance; everything above is immutable
    routing: Optional[Dict[str, Any]] = None
    accepted_invitation_id: Optional[str] = None
    accepted_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class Quote(BaseModel):
    amount_cents: int
    timeline: Optional[str] = None
    notes: Optional[str] = None
    contractor_name: Optional[str] = None
    contractor_email: Optional[str] = None
    business_name: Optional[str] = None
    submitted_at: datetime

    model_config = ConfigDict(extra="ignore")

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class Invitation(BaseModel):
    id: str
    token: str
    lead_id: str
    contractor_id: str
    created_at: datetime
    expires_at: datetime
    state: InvitationState = "active"
    quote: Optional[Quote] = None
    redeemed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    # set when the homeowner picks a quote for the lead
    outcome: Optional[QuoteOutcome] = None
    # set once the reassignment sweep has accounted for this expiry
    reassessed_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    def is_past_expiry(self, now: datetime) -> bool:
        return now > as_utc(self.expires_at)


class EscrowJob(BaseModel):
    id: str
    contractor_id: str
    customer_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    service_type: Optional[str] = None
    total_cents: int
    commission_rate_bps: int
    commission_cents: int
    contractor_payment_cents: int
    status: EscrowStatus = "pending"
    created_at: datetime
    updated_at: datetime
    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    payment_released_date: Optional[datetime] = None
    cancelled_date: Optional[datetime] = None
    customer_notes: Optional[str] = None
    contractor_notes: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
