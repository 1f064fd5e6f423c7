import asyncio
import random
from datetime import timedelta

import pytest

from backend import invitations, routing
from backend.clock import as_utc
from backend.errors import ConflictError, NoEligibleContractorError, ValidationError
from backend.invitations import QuoteSubmission
from backend.models import Contractor, Lead
from backend.selection import matches_lead, normalize_areas, select_candidates
from backend.settings import AppConfig


def _lead_body(**overrides):
    body = {
        "customer_name": "Dana Whitfield",
        "customer_email": "Dana.Whitfield@gmail.com",
        "customer_phone": "480-730-1187",
        "property_address": "1420 W Baseline Rd",
        "city": "Mesa",
        "state": "AZ",
        "zip_code": "85202",
        "home_size_sqft": 1850,
        "areas_needed": ["attic"],
        "insulation_types": ["blown_in"],
        "project_timeline": "within_month",
    }
    body.update(overrides)
    return body


def test_normalize_areas():
    assert normalize_areas([" Walls ", "ATTIC", "other", ""]) == ["wall", "attic"]


@pytest.mark.parametrize(
    "status,offered,wanted,expected",
    [
        ("approved", ["attic"], ["attic"], True),
        ("approved", ["wall"], ["walls"], True),
        ("approved", ["crawlspace"], ["attic"], False),
        ("approved", [], ["attic"], True),
        ("approved", ["attic"], ["other"], True),
        ("pending", ["attic"], ["attic"], False),
        ("suspended", [], [], False),
    ],
)
def test_matches_lead(status, offered, wanted, expected, clock):
    contractor = Contractor(
        id="c1",
        user_id="u1",
        name="Marco Ruiz",
        business_name="Desert Shield Insulation",
        email="estimates@desertshieldinsulation.com",
        status=status,
        service_areas=offered,
        created_at=clock(),
    )
    lead = Lead(id="l1", customer_name="Dana Whitfield", areas_needed=wanted, created_at=clock())
    assert matches_lead(contractor, lead) is expected


def test_select_candidates_caps_and_is_random(clock):
    contractors = [
        Contractor(
            id=f"c{i}",
            user_id=f"u{i}",
            name="Marco Ruiz",
            business_name=f"Desert Shield Insulation {i}",
            email=f"estimates{i}@desertshieldinsulation.com",
            status="approved",
            created_at=clock(),
        )
        for i in range(6)
    ]
    lead = Lead(id="l1", customer_name="Dana Whitfield", created_at=clock())

    first = select_candidates(contractors, lead, limit=3, rng=random.Random(7))
    again = select_candidates(contractors, lead, limit=3, rng=random.Random(7))

    assert len(first) == 3
    assert len({c.id for c in first}) == 3
    assert [c.id for c in first] == [c.id for c in again]
    assert select_candidates(contractors, lead, limit=0) == []
    assert len(select_candidates(contractors[:2], lead, limit=3)) == 2


async def test_new_lead_is_offered_to_matching_contractors(api, db, mailer, make_contractor):
    attic = [await make_contractor(service_areas=["attic"]) for _ in range(4)]
    await make_contractor(service_areas=["crawlspace"])
    await make_contractor(status="pending", service_areas=["attic"])

    result = await api.call("POST", "/leads", _lead_body())

    assert result["status_code"] == 201
    routing_info = result["data"]["routing"]
    assert routing_info["mode"] == "invitation"
    assert routing_info["status"] == "invited"
    assert len(routing_info["contractor_ids"]) == 3
    assert set(routing_info["contractor_ids"]) <= {c["id"] for c in attic}

    lead = await db.leads.find_one({"id": result["data"]["leadId"]})
    assert lead["customer_email"] == "dana.whitfield@gmail.com"
    assert await db.invitations.count_documents({"lead_id": lead["id"]}) == 3
    assert len([m for m in mailer.sent if m["subject"] == "New InsulationPal project invitation"]) == 3


async def test_new_lead_with_no_match_notifies_admin(api, db, mailer, make_contractor):
    await make_contractor(service_areas=["crawlspace"])

    result = await api.call("POST", "/leads", _lead_body())

    assert result["status_code"] == 201
    assert result["data"]["routing"]["status"] == "no_contractor_found"
    assert await db.invitations.count_documents({}) == 0
    assert len(mailer.to("review@insulationpal.com")) == 1


async def test_new_lead_for_a_specific_contractor_is_routed_directly(api, db, mailer, make_contractor):
    contractor = await make_contractor()

    result = await api.call("POST", "/leads", _lead_body(contractor_id=contractor["id"]))

    assert result["data"]["routing"]["mode"] == "direct"
    assignment = await db.lead_assignments.find_one({"lead_id": result["data"]["leadId"]})
    assert assignment["contractor_id"] == contractor["id"]
    assert assignment["status"] == "pending"
    assert await db.invitations.count_documents({}) == 0
    assert len(mailer.to(contractor["email"])) == 1


async def test_direct_routing_is_visible_on_the_contractor_dashboard(api, make_contractor, token_for):
    contractor = await make_contractor()
    created = await api.call("POST", "/leads", _lead_body(contractor_id=contractor["id"]))

    result = await api.call("GET", "/contractors/me/leads", token=token_for(contractor))

    assert result["status_code"] == 200
    assert [a["lead_id"] for a in result["data"]] == [created["data"]["leadId"]]
    assert result["data"][0]["lead"]["customer_name"] == "Dana Whitfield"


@pytest.mark.parametrize("status", ["pending", "suspended", "rejected"])
async def test_direct_routing_needs_an_approved_contractor(db, mailer, clock, make_contractor, make_lead, status):
    contractor = await make_contractor(status=status)
    lead = Lead(**await make_lead())

    with pytest.raises(NoEligibleContractorError):
        await routing.route_direct(db, mailer, lead, contractor["id"], clock=clock)

    assert await db.lead_assignments.count_documents({}) == 0
    assert mailer.sent == []


async def test_direct_routing_to_unapproved_contractor_from_intake(api, db, make_contractor):
    contractor = await make_contractor(status="suspended")

    result = await api.call("POST", "/leads", _lead_body(contractor_id=contractor["id"]))

    assert result["status_code"] == 201
    assert result["data"]["routing"]["status"] == "no_contractor_found"
    assert await db.lead_assignments.count_documents({}) == 0


async def test_admin_direct_routing_rejects_unknown_contractor(api, admin_token, make_lead):
    lead = await make_lead()
    result = await api.call(
        "POST", f"/admin/leads/{lead['id']}/route-direct", {"contractor_id": "nobody"}, token=admin_token
    )
    assert result["status_code"] == 409


async def test_direct_routing_charges_credits_when_configured(api, db, admin_token, make_contractor, make_lead):
    await db.app_config.insert_one({"id": "default", "lead_credit_cost": 2})
    contractor = await make_contractor(credits=3)
    first = await make_lead()
    second = await make_lead()

    ok = await api.call(
        "POST", f"/admin/leads/{first['id']}/route-direct", {"contractor_id": contractor["id"]}, token=admin_token
    )
    assert ok["status_code"] == 200
    assert ok["data"]["cost_credits"] == 2

    broke = await api.call(
        "POST", f"/admin/leads/{second['id']}/route-direct", {"contractor_id": contractor["id"]}, token=admin_token
    )
    assert broke["status_code"] == 409

    stored = await db.contractors.find_one({"id": contractor["id"]})
    assert stored["credits"] == 1
    assert await db.lead_assignments.count_documents({"contractor_id": contractor["id"]}) == 1


async def test_invitation_routing_issues_one_token_per_contractor(api, db, clock, admin_token, make_contractor, make_lead):
    contractors = [await make_contractor() for _ in range(3)]
    lead = await make_lead()

    result = await api.call(
        "POST",
        f"/admin/leads/{lead['id']}/invitations",
        {"contractor_ids": [c["id"] for c in contractors] + [contractors[0]["id"]], "ttl_hours": 48},
        token=admin_token,
    )

    assert result["status_code"] == 201
    assert len(result["data"]) == 3
    assert len({inv["token"] for inv in result["data"]}) == 3
    stored = await db.invitations.find({"lead_id": lead["id"]}).to_list(10)
    for doc in stored:
        assert doc["state"] == "active"
        assert as_utc(doc["expires_at"]) == clock() + timedelta(hours=48)


async def test_invitation_routing_is_all_or_nothing(db, mailer, clock, make_contractor, make_lead):
    approved = await make_contractor()
    suspended = await make_contractor(status="suspended")
    lead = Lead(**await make_lead())

    with pytest.raises(NoEligibleContractorError) as exc:
        await routing.route_by_invitation(db, mailer, lead, [approved["id"], suspended["id"], "ghost"], clock=clock)

    assert exc.value.extra["contractor_ids"] == [suspended["id"], "ghost"]
    assert await db.invitations.count_documents({}) == 0
    assert mailer.sent == []


async def test_invitation_routing_needs_contractors_and_positive_ttl(db, mailer, clock, make_contractor, make_lead):
    contractor = await make_contractor()
    lead = Lead(**await make_lead())

    with pytest.raises(NoEligibleContractorError):
        await routing.route_by_invitation(db, mailer, lead, [], clock=clock)
    with pytest.raises(ValidationError):
        await routing.route_by_invitation(db, mailer, lead, [contractor["id"]], ttl=timedelta(0), clock=clock)


async def test_invitation_mail_failure_does_not_undo_invitations(db, mailer, clock, make_contractor, make_lead):
    contractor = await make_contractor()
    lead = Lead(**await make_lead())
    mailer.fail = True

    created = await routing.route_by_invitation(db, mailer, lead, [contractor["id"]], clock=clock)

    assert len(created) == 1
    assert await db.invitations.count_documents({"lead_id": lead.id}) == 1
    note = await db.notifications.find_one({"template_id": "contractor_invitation"})
    assert note["status"] == "failed"


async def test_routing_history_keeps_every_attempt(db, mailer, clock, make_contractor, make_lead):
    first = await make_contractor()
    second = await make_contractor()
    lead = Lead(**await make_lead())

    await routing.route_by_invitation(db, mailer, lead, [first["id"]], clock=clock)
    await routing.route_direct(db, mailer, lead, second["id"], clock=clock)

    stored = await db.leads.find_one({"id": lead.id})
    assert stored["routing"]["mode"] == "direct"
    assert [r["mode"] for r in stored["routing_history"]] == ["invitation", "direct"]


async def test_lead_intake_validates_input(api):
    result = await api.call("POST", "/leads", _lead_body(customer_name="", home_size_sqft=-10))
    assert result["status_code"] == 400


async def test_direct_routing_twice_to_the_same_contractor(api, db, mailer, admin_token, make_contractor, make_lead):
    await db.app_config.insert_one({"id": "default", "lead_credit_cost": 1})
    contractor = await make_contractor(credits=5)
    lead = await make_lead()
    url = f"/admin/leads/{lead['id']}/route-direct"

    first = await api.call("POST", url, {"contractor_id": contractor["id"]}, token=admin_token)
    second = await api.call("POST", url, {"contractor_id": contractor["id"]}, token=admin_token)

    assert first["status_code"] == 200
    assert second["status_code"] == 409
    assert second["data"]["assignment_id"] == first["data"]["id"]
    assert await db.lead_assignments.count_documents({"lead_id": lead["id"]}) == 1
    assert (await db.contractors.find_one({"id": contractor["id"]}))["credits"] == 4
    assert len(mailer.to(contractor["email"])) == 1


async def test_concurrent_direct_routing_assigns_once(db, mailer, clock, make_contractor, make_lead):
    cfg = AppConfig(lead_credit_cost=1)
    contractor = await make_contractor(credits=5)
    lead = Lead(**await make_lead())

    outcomes = await asyncio.gather(
        routing.route_direct(db, mailer, lead, contractor["id"], cfg, clock),
        routing.route_direct(db, mailer, lead, contractor["id"], cfg, clock),
        return_exceptions=True,
    )

    assert sum(1 for o in outcomes if isinstance(o, ConflictError)) == 1
    assert await db.lead_assignments.count_documents({"lead_id": lead.id}) == 1
    assert (await db.contractors.find_one({"id": contractor["id"]}))["credits"] == 4


async def test_dashboard_lead_hides_routing_and_homeowner_link(api, make_contractor, token_for):
    contractor = await make_contractor()
    await api.call("POST", "/leads", _lead_body(contractor_id=contractor["id"]))

    result = await api.call("GET", "/contractors/me/leads", token=token_for(contractor))

    lead = result["data"][0]["lead"]
    assert lead["city"] == "Mesa"
    assert "routing" not in lead
    assert "client_view_token" not in lead


async def test_new_lead_returns_the_homeowner_link_token(api, db, make_contractor):
    await make_contractor()

    result = await api.call("POST", "/leads", _lead_body())

    token = result["data"]["clientViewToken"]
    assert len(token) >= 43
    quotes = await api.call("GET", f"/leads/{result['data']['leadId']}/quotes", params={"token": token})
    assert quotes["status_code"] == 200
    assert quotes["data"]["quotes"] == []


async def _offered_lead(db, clock, mailer, make_contractor, make_lead):
    contractors = [await make_contractor() for _ in range(5)]
    lead = Lead(**await make_lead())
    issued = await routing.route_by_invitation(db, mailer, lead, [c["id"] for c in contractors[:3]], clock=clock)
    await invitations.redeem(db, mailer, issued[0].token, QuoteSubmission(amount="3800.00"), clock)
    return lead, contractors, issued


async def test_reassignment_tops_up_expired_offers(api, db, clock, mailer, admin_token, make_contractor, make_lead):
    lead, contractors, issued = await _offered_lead(db, clock, mailer, make_contractor, make_lead)
    clock.advance(hours=49)
    # one of the two lapsed invitations was already seen as expired by its contractor
    assert (await api.call("GET", f"/invitations/{issued[1].token}"))["status_code"] == 410

    result = await api.call("POST", "/admin/leads/reassign", token=admin_token)

    assert result["status_code"] == 200
    assert result["data"] == {"expired": 1, "leads_checked": 1, "leads_reassigned": 1, "invitations_issued": 2}
    fresh = await db.invitations.find({"lead_id": lead.id, "state": "active"}).to_list(10)
    assert {i["contractor_id"] for i in fresh} == {contractors[3]["id"], contractors[4]["id"]}
    assert len(mailer.to(contractors[3]["email"])) == 1

    again = await api.call("POST", "/admin/leads/reassign", token=admin_token)
    assert again["data"] == {"expired": 0, "leads_checked": 0, "leads_reassigned": 0, "invitations_issued": 0}
    assert await db.invitations.count_documents({"lead_id": lead.id}) == 5


async def test_reassignment_skips_leads_with_an_accepted_quote(db, clock, mailer, make_contractor, make_lead):
    lead, _, issued = await _offered_lead(db, clock, mailer, make_contractor, make_lead)
    await invitations.accept_quote(db, mailer, lead, issued[0].id, clock)
    clock.advance(hours=49)

    result = await routing.reassign_expired_invitations(db, mailer, AppConfig(), clock)

    assert result == {"expired": 2, "leads_checked": 1, "leads_reassigned": 0, "invitations_issued": 0}
    assert await db.invitations.count_documents({"lead_id": lead.id}) == 3


async def test_reassignment_never_reoffers_to_the_same_contractor(db, clock, mailer, make_contractor, make_lead):
    contractors = [await make_contractor() for _ in range(2)]
    lead = Lead(**await make_lead())
    await routing.route_by_invitation(db, mailer, lead, [c["id"] for c in contractors], clock=clock)
    clock.advance(hours=49)

    result = await routing.reassign_expired_invitations(db, mailer, AppConfig(), clock)

    assert result["invitations_issued"] == 0
    assert await db.invitations.count_documents({"lead_id": lead.id}) == 2


async def test_reassignment_is_admin_only(api, make_contractor, token_for):
    contractor = await make_contractor()
    result = await api.call("POST", "/admin/leads/reassign", token=token_for(contractor))
    assert result["status_code"] == 403
