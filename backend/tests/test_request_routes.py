"""
HTTP surface for blood requests and donors.

Routes run in-process through httpx's ASGI transport with the database
session and notification dispatcher swapped for test doubles.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from bloodlink.api.middleware.auth import require_operation, token_for
from bloodlink.db.session import get_db
from bloodlink.main import app
from bloodlink.models import AuditLog, BloodGroup, NotificationType, RequestStatus, UserRole
from bloodlink.services.notification_service import commit_and_deliver, discard_pending, get_dispatcher
from conftest import ORIGIN, km_east

PREFIX = "/api/v1"


def auth(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


def _body(**overrides):
    body = {
        "blood_group": "O+",
        "units": 2,
        "location": {"type": "Point", "coordinates": list(ORIGIN)},
        "address": "Victoria Hospital, Bengaluru",
        "need_by_date": (datetime.utcnow() + timedelta(days=1)).isoformat(),
        "patient_name": "Asha Rao",
        "purpose": "Surgery",
        "urgency": "high",
        "contact": {"name": "Kiran Rao", "phone": "+91 98450 00000", "relationship": "brother"},
    }
    body.update(overrides)
    return body


@pytest_asyncio.fixture
async def client(db, dispatcher):
    async def _get_db():
        # Same commit-then-deliver scope as get_db, on the shared test session
        try:
            yield db
        except Exception:
            discard_pending(db)
            raise
        await commit_and_deliver(db)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def cast(make_user):
    async def _cast():
        requester = await make_user(role=UserRole.REQUESTER, blood_group=BloodGroup.O_POS)
        donor = await make_user(blood_group=BloodGroup.O_NEG, location=km_east(1))
        doctor = await make_user(role=UserRole.DOCTOR, blood_group=None)
        admin = await make_user(role=UserRole.ADMIN, blood_group=None)
        return requester, donor, doctor, admin
    return _cast


class TestAuth:
    """Tests for bearer tokens and per-operation roles"""

    async def test_missing_token(self, client):
        """Should refuse a request without a token"""
        resp = await client.get(f"{PREFIX}/donors/eligibility")
        assert resp.status_code in (401, 403)

    async def test_bad_token(self, client):
        """Should refuse a token that does not verify"""
        resp = await client.get(f"{PREFIX}/donors/eligibility", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_wrong_role(self, client, cast):
        """Should refuse a donor opening a request"""
        _, donor, *_ = await cast()
        resp = await client.post(f"{PREFIX}/requests", json=_body(), headers=auth(donor))
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        assert "Required: ['requester']" in resp.json()["detail"]

    async def test_token_with_outdated_role(self, client, cast, db):
        """Should refuse a token issued before the account's role changed"""
        _, donor, *_ = await cast()
        headers = auth(donor)
        donor.role = UserRole.REQUESTER
        await db.flush()

        resp = await client.get(f"{PREFIX}/donors/eligibility", headers=headers)

        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_unknown_operation_is_a_programming_error(self):
        with pytest.raises(KeyError):
            require_operation("launch")


class TestRequestRoutes:
    """Tests for the /requests endpoints"""

    async def test_full_lifecycle(self, client, db, cast, dispatcher):
        """Should carry a request from creation to rating over HTTP"""
        requester, donor, doctor, _ = await cast()

        resp = await client.post(f"{PREFIX}/requests", json=_body(), headers=auth(requester))
        assert resp.status_code == 201
        created = resp.json()
        assert created["status"] == "pending"
        assert created["potential_donors"] == 1
        assert created["contact"]["relationship"] == "brother"
        [alert] = dispatcher.to(donor.id)
        assert alert.type == NotificationType.REQUEST
        assert alert.related_id == created["id"]
        request_id = created["id"]

        resp = await client.put(f"{PREFIX}/requests/{request_id}/accept", headers=auth(donor))
        assert resp.status_code == 200
        assert resp.json()["assigned_donor_id"] == str(donor.id)

        resp = await client.put(
            f"{PREFIX}/requests/{request_id}/fulfill",
            json={
                "status": "verified",
                "donation_date": (datetime.utcnow() - timedelta(hours=2)).isoformat(),
                "hospital_name": "Victoria Hospital",
            },
            headers=auth(doctor),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "fulfilled"

        resp = await client.put(
            f"{PREFIX}/requests/{request_id}/rate",
            json={"rating": 5, "feedback": "Thank you!"},
            headers=auth(requester),
        )
        assert resp.status_code == 200
        assert resp.json()["donor_rating_summary"]["average"] == 5.0

        actions = (await db.execute(select(AuditLog.action).where(AuditLog.resource_id == request_id))).scalars().all()
        assert sorted(actions) == ["accept", "create", "fulfill", "rate"]

    async def test_invalid_body_is_422(self, client, cast):
        """Should reject an out-of-range body before it reaches the service"""
        requester, *_ = await cast()
        resp = await client.post(f"{PREFIX}/requests", json=_body(units=0), headers=auth(requester))
        assert resp.status_code == 422

    async def test_state_conflict_is_409_with_current_status(self, client, cast, make_request, make_user):
        """Should report the stored status when a transition conflicts"""
        requester, donor, *_ = await cast()
        rival = await make_user(blood_group=BloodGroup.O_POS)
        req = await make_request(requester)

        await client.put(f"{PREFIX}/requests/{req.id}/accept", headers=auth(donor))
        resp = await client.put(f"{PREFIX}/requests/{req.id}/accept", headers=auth(rival))

        assert resp.status_code == 409
        assert resp.json() == {
            "success": False,
            "error": "invalid_state",
            "detail": "Request already matched; cannot accept",
            "current_status": "matched",
        }

    async def test_incompatible_is_400(self, client, cast, make_request, make_user):
        """Should report an incompatible donor as a 400"""
        requester, *_ = await cast()
        ab_donor = await make_user(blood_group=BloodGroup.AB_POS)
        req = await make_request(requester, blood_group=BloodGroup.O_NEG)

        resp = await client.put(f"{PREFIX}/requests/{req.id}/accept", headers=auth(ab_donor))

        assert resp.status_code == 400
        assert resp.json()["error"] == "incompatible_blood_group"

    async def test_unknown_request_is_404(self, client, cast):
        requester, *_ = await cast()
        resp = await client.get(
            f"{PREFIX}/requests/00000000-0000-0000-0000-000000000000", headers=auth(requester),
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_cancel_without_body(self, client, cast, make_request):
        """Should cancel without a reason body"""
        requester, *_ = await cast()
        req = await make_request(requester)
        resp = await client.put(f"{PREFIX}/requests/{req.id}/cancel", headers=auth(requester))
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    async def test_admin_expires(self, client, cast, make_request):
        """Should let an admin expire a request"""
        requester, _, _, admin = await cast()
        req = await make_request(requester)
        resp = await client.put(
            f"{PREFIX}/requests/{req.id}/expire", json={"reason": "Patient transferred"}, headers=auth(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == RequestStatus.EXPIRED.value

    async def test_potential_donors(self, client, cast, make_request):
        requester, donor, *_ = await cast()
        req = await make_request(requester)
        resp = await client.get(f"{PREFIX}/requests/{req.id}/potential-donors", headers=auth(requester))
        assert resp.status_code == 200
        assert resp.json()["count"] == 1
        assert resp.json()["donors"][0]["id"] == str(donor.id)


class TestDonorRoutes:
    """Tests for the /donors endpoints"""

    async def test_eligibility(self, client, make_user):
        """Should report the donor's cooldown"""
        last = datetime.utcnow() - timedelta(days=40)
        donor = await make_user(last_donation_date=last)

        resp = await client.get(f"{PREFIX}/donors/eligibility", headers=auth(donor))

        assert resp.status_code == 200
        body = resp.json()
        assert body["is_eligible"] is False
        assert body["next_eligible_date"] == (last + timedelta(days=90)).isoformat()

    async def test_nearby_requests(self, client, cast, make_request):
        """Should list requests inside the given radius"""
        requester, donor, *_ = await cast()
        req = await make_request(requester)

        resp = await client.get(f"{PREFIX}/donors/nearby-requests", params={"radius_km": 5}, headers=auth(donor))

        assert resp.status_code == 200
        assert [item["id"] for item in resp.json()["requests"]] == [str(req.id)]

    async def test_toggle_availability(self, client, make_user):
        """Should flip availability without a body and set it with one"""
        donor = await make_user(is_available=False)

        resp = await client.put(f"{PREFIX}/donors/availability", headers=auth(donor))
        assert resp.status_code == 200
        assert resp.json()["is_available"] is True

        resp = await client.put(
            f"{PREFIX}/donors/availability", json={"is_available": True}, headers=auth(donor),
        )
        assert resp.json()["is_available"] is True

        resp = await client.put(f"{PREFIX}/donors/availability", headers=auth(donor))
        assert resp.json()["message"] == "You are now unavailable for donation"

    async def test_requester_cannot_toggle_availability(self, client, cast):
        requester, *_ = await cast()
        resp = await client.put(f"{PREFIX}/donors/availability", headers=auth(requester))
        assert resp.status_code == 403

    async def test_history_stats_and_active_requests(self, client, cast, make_request):
        """Should show an accepted request as active, then in the history and stats once verified"""
        requester, donor, doctor, _ = await cast()
        req = await make_request(requester)
        await client.put(f"{PREFIX}/requests/{req.id}/accept", headers=auth(donor))

        resp = await client.get(f"{PREFIX}/donors/active-requests", headers=auth(donor))
        assert [item["id"] for item in resp.json()["requests"]] == [str(req.id)]

        await client.put(
            f"{PREFIX}/requests/{req.id}/fulfill",
            json={
                "donation_date": (datetime.utcnow() - timedelta(hours=1)).isoformat(),
                "hospital_name": "Victoria Hospital",
            },
            headers=auth(doctor),
        )

        resp = await client.get(f"{PREFIX}/donors/donations", headers=auth(donor))
        assert resp.status_code == 200
        assert resp.json()["count"] == 1
        assert resp.json()["donations"][0]["request_id"] == str(req.id)

        resp = await client.get(f"{PREFIX}/donors/stats", headers=auth(donor))
        assert resp.status_code == 200
        assert resp.json()["total_donations"] == 1
        assert resp.json()["donation_count"] == 1
        assert resp.json()["active_requests"] == 0


class TestDoctorRoutes:
    """Tests for the /doctors endpoints"""

    async def test_pending_verifications_and_stats(self, client, cast, make_request):
        """Should queue a matched request for the doctor and count it once verified"""
        requester, donor, doctor, _ = await cast()
        req = await make_request(requester, status=RequestStatus.MATCHED, assigned_donor_id=donor.id,
                                 matched_at=datetime.utcnow())

        resp = await client.get(f"{PREFIX}/doctors/pending-verifications", headers=auth(doctor))
        assert resp.status_code == 200
        assert [item["id"] for item in resp.json()["requests"]] == [str(req.id)]

        await client.put(
            f"{PREFIX}/requests/{req.id}/fulfill",
            json={
                "status": "rejected",
                "donation_date": (datetime.utcnow() - timedelta(hours=1)).isoformat(),
                "hospital_name": "Victoria Hospital",
                "notes": "Sample clotted",
            },
            headers=auth(doctor),
        )

        resp = await client.get(f"{PREFIX}/doctors/stats", headers=auth(doctor))
        assert resp.status_code == 200
        body = resp.json()
        assert (body["total_verifications"], body["verified"], body["rejected"]) == (1, 0, 1)
        assert body["pending_verifications"] == 0

    async def test_donor_cannot_see_the_queue(self, client, cast):
        """Should keep the verification queue to doctors"""
        _, donor, *_ = await cast()
        resp = await client.get(f"{PREFIX}/doctors/pending-verifications", headers=auth(donor))
        assert resp.status_code == 403
