import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from starlette.middleware.cors import CORSMiddleware

from backend import directory, escrow, gatekeeper, invitations, routing
from backend.auth import (
    Token,
    UserInDB,
    authenticate_user,
    create_access_token,
    get_password_hash,
    require_role,
)
from backend.clock import Clock, get_clock, utcnow
from backend.db import client, ensure_indexes, get_db
from backend.errors import CoreError, NotFoundError, ValidationError
from backend.models import CENT, Contractor, ContractorStatus, EscrowJob, EscrowStatus, from_cents
from backend.notifications import get_mailer, retry_failed_notifications
from backend.settings import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    APP_PUBLIC_NAME,
    CORS_ORIGINS,
    INVITATION_TTL_HOURS,
    SpamPolicy,
    configure_logging,
    get_app_config,
    get_spam_policy,
)

logger = logging.getLogger(__name__)

# -------------------------------------------------
# FastAPI app & routers
# -------------------------------------------------

app = FastAPI(title=APP_PUBLIC_NAME)
api_router = APIRouter(prefix="/api")


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_body()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


async def ensure_seed_data(db) -> None:
    # Optional admin account so the directory endpoints are usable on a fresh install
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    if await db.users.find_one({"email": ADMIN_EMAIL.lower()}):
        return
    await db.users.insert_one(
        {
            "id": str(uuid.uuid4()),
            "name": "Administrator",
            "email": ADMIN_EMAIL.lower(),
            "phone": None,
            "role": "admin",
            "password_hash": get_password_hash(ADMIN_PASSWORD),
            "email_verified": True,
            "created_at": utcnow(),
            "last_login_at": None,
        }
    )
    logger.info("Seeded admin account %s", ADMIN_EMAIL)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    db = get_db()
    await ensure_indexes(db)
    await ensure_seed_data(db)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


def source_address(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


# ---------------------------
# Auth endpoints
# ---------------------------


@api_router.post("/auth/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db), clock: Clock = Depends(get_clock)):
    user = await authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    access_token = create_access_token(
        data={"sub": user.id, "role": user.role},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    await db.users.update_one({"id": user.id}, {"$set": {"last_login_at": clock()}})
    return Token(access_token=access_token)


# ---------------------------
# Contractor registration
# ---------------------------


@api_router.post("/registrations", status_code=201)
async def register_contractor(
    body: gatekeeper.RegistrationSubmission,
    request: Request,
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    policy: SpamPolicy = Depends(get_spam_policy),
    clock: Clock = Depends(get_clock),
):
    result = await gatekeeper.register(db, mailer, body, policy, source_address(request), clock)
    if not result.email_sent:
        # The account exists; review depends on the verification email going out.
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Account created but failed to send verification email. Please contact support with your email address.",
                "success": False,
                "userId": result.user_id,
                "contractorId": result.contractor_id,
                "emailSent": False,
            },
        )
    return {
        "success": True,
        "message": "Registration submitted successfully! Please check your email to verify your account. "
        "We will review your application once your email is verified.",
        "userId": result.user_id,
        "contractorId": result.contractor_id,
        "emailSent": True,
    }


@api_router.get("/verify-email")
async def verify_email(token: str = "", db=Depends(get_db), mailer=Depends(get_mailer), clock: Clock = Depends(get_clock)):
    contractor_id = await gatekeeper.verify_email(db, mailer, token, clock)
    return {"success": True, "contractorId": contractor_id, "message": "Email verified. Your application is now under review."}


# ---------------------------
# Leads
# ---------------------------


@api_router.post("/leads", status_code=201)
async def create_lead(
    body: routing.LeadCreateRequest,
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    cfg = await get_app_config(db)
    lead = await routing.create_lead(db, mailer, body, cfg, clock)
    return {"leadId": lead.id, "routing": lead.routing, "clientViewToken": lead.client_view_token}


class RouteDirectRequest(BaseModel):
    contractor_id: str


class RouteByInvitationRequest(BaseModel):
    contractor_ids: List[str]
    ttl_hours: float = Field(default=INVITATION_TTL_HOURS, gt=0)


@api_router.post("/admin/leads/{lead_id}/route-direct")
async def admin_route_direct(
    lead_id: str,
    body: RouteDirectRequest,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    lead = await routing.get_lead(db, lead_id)
    cfg = await get_app_config(db)
    return await routing.route_direct(db, mailer, lead, body.contractor_id, cfg, clock)


@api_router.post("/admin/leads/{lead_id}/invitations", status_code=201)
async def admin_route_by_invitation(
    lead_id: str,
    body: RouteByInvitationRequest,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    lead = await routing.get_lead(db, lead_id)
    created = await routing.route_by_invitation(db, mailer, lead, body.contractor_ids, timedelta(hours=body.ttl_hours), clock)
    return [
        {"id": inv.id, "contractor_id": inv.contractor_id, "token": inv.token, "expires_at": inv.expires_at}
        for inv in created
    ]


@api_router.post("/admin/leads/reassign")
async def admin_reassign_expired_invitations(
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    cfg = await get_app_config(db)
    return await routing.reassign_expired_invitations(db, mailer, cfg, clock)


class AcceptQuoteRequest(BaseModel):
    token: str
    invitation_id: str


@api_router.get("/leads/{lead_id}/quotes")
async def homeowner_quotes(lead_id: str, token: str = Query(...), db=Depends(get_db)):
    lead = await invitations.get_lead_for_homeowner(db, lead_id, token)
    return {
        "leadId": lead.id,
        "acceptedInvitationId": lead.accepted_invitation_id,
        "quotes": await invitations.list_quotes_for_lead(db, lead),
    }


@api_router.post("/leads/{lead_id}/accept-quote")
async def homeowner_accept_quote(
    lead_id: str,
    body: AcceptQuoteRequest,
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    lead = await invitations.get_lead_for_homeowner(db, lead_id, body.token)
    result = await invitations.accept_quote(db, mailer, lead, body.invitation_id, clock)
    return {
        "success": True,
        "invitationId": result.invitation.id,
        "outcome": result.invitation.outcome,
        "notificationSent": result.notification_sent,
    }


# ---------------------------
# Invitations
# ---------------------------


@api_router.get("/invitations/{token}")
async def get_invitation(token: str, db=Depends(get_db), clock: Clock = Depends(get_clock)):
    invitation = await invitations.resolve(db, token, clock)
    lead = await db.leads.find_one({"id": invitation.lead_id}, routing.LEAD_PUBLIC_FIELDS)
    return {
        "invitation": {
            "id": invitation.id,
            "leadId": invitation.lead_id,
            "contractorId": invitation.contractor_id,
            "state": invitation.state,
            "createdAt": invitation.created_at,
            "expiresAt": invitation.expires_at,
        },
        "available": invitation.state == "active",
        "message": None if invitation.state == "active" else "This invitation is no longer available.",
        "lead": lead,
    }


@api_router.post("/invitations/{token}/quote")
async def submit_quote(
    token: str,
    body: invitations.QuoteSubmission,
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    result = await invitations.redeem(db, mailer, token, body, clock)
    return {
        "success": True,
        "invitationId": result.invitation.id,
        "state": result.invitation.state,
        "notificationSent": result.notification_sent,
        "message": "Quote submitted successfully",
    }


# ---------------------------
# Contractor dashboard
# ---------------------------


async def get_contractor_profile_for_user(db, user_id: str) -> Contractor:
    doc = await db.contractors.find_one({"user_id": user_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Contractor profile not found")
    return Contractor(**doc)


@api_router.get("/contractors/me/leads")
async def contractor_leads(current_user: UserInDB = Depends(require_role("contractor")), db=Depends(get_db)):
    profile = await get_contractor_profile_for_user(db, current_user.id)
    assignments = await db.lead_assignments.find({"contractor_id": profile.id}, {"_id": 0}).sort("assigned_at", -1).to_list(200)
    lead_ids = [a["lead_id"] for a in assignments]
    leads = {
        d["id"]: d
        for d in await db.leads.find({"id": {"$in": lead_ids}}, routing.LEAD_PUBLIC_FIELDS).to_list(200)
    }
    return [{**a, "lead": leads.get(a["lead_id"])} for a in assignments]


@api_router.get("/contractors/me/invitations")
async def contractor_invitations(
    current_user: UserInDB = Depends(require_role("contractor")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    profile = await get_contractor_profile_for_user(db, current_user.id)
    return await invitations.list_for_contractor(db, profile.id, clock)


@api_router.get("/admin/invitations/stats")
async def admin_invitation_stats(
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    return await invitations.invitation_stats(db, clock)


# ---------------------------
# Admin: contractor directory
# ---------------------------


class ContractorStatusPatch(BaseModel):
    status: ContractorStatus


class ContractorCreditsPut(BaseModel):
    credits: StrictInt = Field(..., ge=0)


@api_router.get("/admin/contractors", response_model=List[Contractor])
async def admin_list_contractors(
    status: Optional[ContractorStatus] = None,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
):
    _ = current_user
    return await directory.list_by_status(db, status)


@api_router.patch("/admin/contractors/{contractor_id}/status", response_model=Contractor)
async def admin_set_contractor_status(
    contractor_id: str,
    body: ContractorStatusPatch,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    return await directory.set_status(db, contractor_id, body.status, clock)


@api_router.put("/admin/contractors/{contractor_id}/credits", response_model=Contractor)
async def admin_set_contractor_credits(
    contractor_id: str,
    body: ContractorCreditsPut,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    return await directory.set_credits(db, contractor_id, body.credits, clock)


@api_router.delete("/admin/contractors/{contractor_id}")
async def admin_delete_contractor(
    contractor_id: str,
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
):
    _ = current_user
    await directory.delete_contractor(db, contractor_id)
    return {"contractor_id": contractor_id, "deleted": True}


@api_router.post("/admin/notifications/retry")
async def admin_retry_notifications(
    current_user: UserInDB = Depends(require_role("admin")),
    db=Depends(get_db),
    mailer=Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    _ = current_user
    return await retry_failed_notifications(db, mailer, clock)


# ---------------------------
# Escrow jobs
# ---------------------------


class EscrowJobOut(BaseModel):
    id: str
    contractor_id: str
    customer_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    service_type: Optional[str] = None
    total_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    contractor_payment: Decimal
    status: EscrowStatus
    created_at: datetime
    updated_at: datetime
    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    payment_released_date: Optional[datetime] = None
    cancelled_date: Optional[datetime] = None
    customer_notes: Optional[str] = None
    contractor_notes: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_job(cls, job: EscrowJob) -> "EscrowJobOut":
        data: Dict[str, Any] = job.model_dump()
        data.update(
            total_amount=from_cents(job.total_cents),
            commission_rate=(Decimal(job.commission_rate_bps) / 100).quantize(CENT),
            commission_amount=from_cents(job.commission_cents),
            contractor_payment=from_cents(job.contractor_payment_cents),
        )
        return cls(**data)


class EscrowJobPatch(BaseModel):
    status: EscrowStatus
    # status the caller last saw; a mismatch means someone else moved the job
    expected_status: Optional[EscrowStatus] = None


async def escrow_owner_for(db, current_user: UserInDB, contractor_id: Optional[str]) -> str:
    """Contractor whose escrow jobs the caller may act on.

    A contractor only ever gets their own profile. An admin has to say which one.
    """
    if current_user.role == "admin":
        if not contractor_id:
            raise ValidationError("contractor_id is required", fields=["contractor_id"])
        return contractor_id
    profile = await get_contractor_profile_for_user(db, current_user.id)
    if contractor_id and contractor_id != profile.id:
        raise HTTPException(status_code=403, detail="You are not assigned to this job")
    return profile.id


async def load_escrow_job_for(db, current_user: UserInDB, job_id: str) -> EscrowJob:
    job = await escrow.get_escrow_job(db, job_id)
    if current_user.role != "admin":
        profile = await get_contractor_profile_for_user(db, current_user.id)
        if job.contractor_id != profile.id:
            raise HTTPException(status_code=403, detail="You are not assigned to this job")
    return job


@api_router.post("/escrow-jobs", status_code=201, response_model=EscrowJobOut)
async def create_escrow_job(
    body: escrow.EscrowJobCreateRequest,
    current_user: UserInDB = Depends(require_role("contractor", "admin")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    contractor_id = await escrow_owner_for(db, current_user, body.contractor_id)
    job = await escrow.create_escrow_job(
        db,
        body.model_copy(update={"contractor_id": contractor_id}),
        actor_type=current_user.role,
        actor_id=current_user.id,
        clock=clock,
    )
    return EscrowJobOut.from_job(job)


@api_router.get("/escrow-jobs", response_model=List[EscrowJobOut])
async def list_escrow_jobs(
    contractor_id: Optional[str] = None,
    current_user: UserInDB = Depends(require_role("contractor", "admin")),
    db=Depends(get_db),
):
    owner = await escrow_owner_for(db, current_user, contractor_id)
    return [EscrowJobOut.from_job(j) for j in await escrow.list_for_contractor(db, owner)]


@api_router.get("/escrow-jobs/{job_id}", response_model=EscrowJobOut)
async def get_escrow_job(
    job_id: str,
    current_user: UserInDB = Depends(require_role("contractor", "admin")),
    db=Depends(get_db),
):
    return EscrowJobOut.from_job(await load_escrow_job_for(db, current_user, job_id))


@api_router.patch("/escrow-jobs/{job_id}", response_model=EscrowJobOut)
async def update_escrow_job(
    job_id: str,
    body: EscrowJobPatch,
    current_user: UserInDB = Depends(require_role("contractor", "admin")),
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await load_escrow_job_for(db, current_user, job_id)
    job = await escrow.transition_escrow_job(
        db,
        job_id,
        body.status,
        expected_status=body.expected_status,
        actor_type=current_user.role,
        actor_id=current_user.id,
        clock=clock,
    )
    return EscrowJobOut.from_job(job)


class EscrowStatsOut(BaseModel):
    contractor_id: str
    total_jobs: int
    completed_jobs: int
    pending_jobs: int
    in_progress_jobs: int
    total_earnings: Decimal
    total_commissions: Decimal


@api_router.get("/contractors/{contractor_id}/escrow-stats", response_model=EscrowStatsOut)
async def contractor_escrow_stats(
    contractor_id: str,
    current_user: UserInDB = Depends(require_role("contractor", "admin")),
    db=Depends(get_db),
):
    owner = await escrow_owner_for(db, current_user, contractor_id)
    await directory.get_contractor(db, owner)
    return await escrow.contractor_stats(db, owner)


# -------------------------------------------------
# Root & CORS
# -------------------------------------------------


@api_router.get("/")
async def root():
    return {"message": "InsulationPal Lead Exchange API"}


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
