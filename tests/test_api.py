"""HTTP-level tests: routing, bearer auth and the JSON error format."""

import httpx
import pytest
import pytest_asyncio

from config import settings
from conftest import owner_step, parcel_step, seed_edge, seed_owner, seed_parcel
from core.auth import create_access_token
from db.session import get_db
from main import app


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def auth(actor) -> dict:
    return {"Authorization": f"Bearer {create_access_token(actor)}"}


# ═══════════════════════════════════════════════════
# Status & auth
# ═══════════════════════════════════════════════════

class TestStatusAndAuth:

    @pytest.mark.asyncio
    async def test_root(self, client):
        r = await client.get("/")
        assert r.status_code == 200
        assert r.json()["status"] == "operational"

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        r = await client.post("/sessions")
        assert r.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        r = await client.post("/sessions", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    @pytest.mark.asyncio
    async def test_error_body_shape(self, client, maker):
        r = await client.get("/sessions/does-not-exist", headers=auth(maker))
        assert r.status_code == 404
        body = r.json()
        assert body["error"] == "NOT_FOUND"
        assert "does-not-exist" in body["message"]


# ═══════════════════════════════════════════════════
# Registration wizard over HTTP
# ═══════════════════════════════════════════════════

class TestWizardFlow:

    @pytest.mark.asyncio
    async def test_register_submit_and_approve(self, client, maker, subcity_admin):
        r = await client.post("/sessions", headers=auth(maker))
        assert r.status_code == 201
        sid = r.json()["session_id"]

        r = await client.post(f"/sessions/{sid}/steps", headers=auth(maker),
                              json={"step": "parcel", "data": parcel_step()})
        assert r.status_code == 200
        r = await client.post(f"/sessions/{sid}/steps", headers=auth(maker),
                              json={"step": "owner", "data": owner_step()})
        assert r.status_code == 200

        r = await client.post(
            f"/sessions/{sid}/documents", headers=auth(maker),
            data={"step": "parcel-docs"},
            files={"file": ("site-plan.pdf", b"%PDF-1.4 plan", "application/pdf")},
        )
        assert r.status_code == 201
        assert r.json()["name"] == "site-plan.pdf"

        r = await client.get(f"/sessions/{sid}/validate", headers=auth(maker))
        assert r.json() == {"valid": True, "missing": []}

        r = await client.post(f"/sessions/{sid}/submit", headers=auth(maker))
        assert r.status_code == 200
        assert r.json()["requires_approval"] is True
        request_id = r.json()["approval_request_id"]

        r = await client.get("/approvals/requests", headers=auth(subcity_admin))
        assert [x["request_id"] for x in r.json()] == [request_id]

        r = await client.post(f"/approvals/requests/{request_id}/approve", headers=auth(subcity_admin),
                              json={"comments": "documents verified"})
        assert r.status_code == 200
        assert r.json()["status"] == "APPROVED"

        r = await client.get("/parcels/UPIN-001", headers=auth(maker))
        assert r.status_code == 200
        assert r.json()["allocated_share"] == "1.000000"
        r = await client.get("/parcels/UPIN-001/owners", headers=auth(maker))
        assert len(r.json()) == 1

    @pytest.mark.asyncio
    async def test_oversized_upload_is_refused(self, client, maker, upload_root, monkeypatch):
        monkeypatch.setattr(settings, "MAX_UPLOAD_MB", 1)
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]

        r = await client.post(
            f"/sessions/{sid}/documents", headers=auth(maker),
            data={"step": "parcel-docs"},
            files={"file": ("scan.tif", b"x" * (1024 * 1024 + 1), "image/tiff")},
        )
        assert r.status_code == 422
        assert r.json()["error"] == "INVALID_PAYLOAD"
        r = await client.get(f"/sessions/{sid}", headers=auth(maker))
        assert r.json()["parcel_docs"] == []
        assert not (upload_root / sid).exists()

    @pytest.mark.asyncio
    async def test_request_hidden_from_other_makers(self, client, maker, other_maker, subcity_admin):
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]
        await client.post(f"/sessions/{sid}/steps", headers=auth(maker), json={"step": "parcel", "data": parcel_step()})
        await client.post(f"/sessions/{sid}/steps", headers=auth(maker), json={"step": "owner", "data": owner_step()})
        request_id = (await client.post(f"/sessions/{sid}/submit", headers=auth(maker))).json()["approval_request_id"]

        r = await client.get(f"/approvals/requests/{request_id}", headers=auth(other_maker))
        assert r.status_code == 403
        r = await client.get(f"/approvals/requests/{request_id}", headers=auth(subcity_admin))
        assert r.status_code == 200
        assert r.json()["logs"][0]["action"] == "CREATE"

    @pytest.mark.asyncio
    async def test_invalid_step_payload_is_422(self, client, maker):
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]
        bad = dict(parcel_step(), total_area_m2="-1")
        r = await client.post(f"/sessions/{sid}/steps", headers=auth(maker), json={"step": "parcel", "data": bad})
        assert r.status_code == 422
        assert r.json()["error"] == "INVALID_PAYLOAD"
        assert r.json()["details"]

    @pytest.mark.asyncio
    async def test_submit_incomplete_is_not_ready(self, client, maker):
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]
        r = await client.post(f"/sessions/{sid}/submit", headers=auth(maker))
        assert r.status_code == 422
        assert r.json()["error"] == "NOT_READY"
        assert r.json()["details"]["missing"] == ["Parcel Information", "Owner Information"]

    @pytest.mark.asyncio
    async def test_other_users_session_is_forbidden(self, client, maker, other_maker):
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]
        r = await client.get(f"/sessions/{sid}", headers=auth(other_maker))
        assert r.status_code == 403
        assert r.json()["error"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, client, maker, subcity_admin):
        sid = (await client.post("/sessions", headers=auth(maker))).json()["session_id"]
        await client.post(f"/sessions/{sid}/steps", headers=auth(maker), json={"step": "parcel", "data": parcel_step()})
        await client.post(f"/sessions/{sid}/steps", headers=auth(maker), json={"step": "owner", "data": owner_step()})
        request_id = (await client.post(f"/sessions/{sid}/submit", headers=auth(maker))).json()["approval_request_id"]

        r = await client.post(f"/approvals/requests/{request_id}/reject", headers=auth(subcity_admin), json={})
        assert r.status_code == 422

        r = await client.post(f"/approvals/requests/{request_id}/reject", headers=auth(subcity_admin),
                              json={"reason": "missing signature"})
        assert r.json()["status"] == "REJECTED"
        r = await client.post(f"/sessions/{sid}/reopen", headers=auth(maker))
        assert r.json()["status"] == "DRAFT"


# ═══════════════════════════════════════════════════
# Parcel actions over HTTP
# ═══════════════════════════════════════════════════

class TestParcelRoutes:

    @pytest.mark.asyncio
    async def test_transfer_is_parked_for_maker(self, client, db, maker):
        await seed_parcel(db, "P-1")
        holder = (await seed_owner(db, "NID-H", "Holder")).owner_id
        buyer = (await seed_owner(db, "NID-B", "Buyer")).owner_id
        await seed_edge(db, "P-1", holder, "1")

        r = await client.post("/parcels/P-1/transfer", headers=auth(maker), json={
            "from_owner_id": holder, "to_owner_id": buyer, "share_ratio": "0.25", "transfer_type": "GIFT",
        })
        assert r.status_code == 200
        assert r.json()["requires_approval"] is True

    @pytest.mark.asyncio
    async def test_share_update_applied_by_city_admin(self, client, db, city_admin):
        await seed_parcel(db, "P-1")
        holder = (await seed_owner(db, "NID-H", "Holder")).owner_id
        edge_id = (await seed_edge(db, "P-1", holder, "0.5")).parcel_owner_id

        r = await client.put(f"/parcels/ownership/{edge_id}/share", headers=auth(city_admin),
                             json={"share_ratio": "0.75"})
        assert r.status_code == 200
        assert r.json()["requires_approval"] is False

        r = await client.get("/parcels/P-1/history", headers=auth(city_admin))
        assert [h["transfer_type"] for h in r.json()] == ["SHARE_ADJUSTMENT"]

    @pytest.mark.asyncio
    async def test_over_allocation_is_409(self, client, db, city_admin):
        await seed_parcel(db, "P-1")
        holder = (await seed_owner(db, "NID-H", "Holder")).owner_id
        other = (await seed_owner(db, "NID-O", "Other")).owner_id
        await seed_edge(db, "P-1", holder, "0.9")

        r = await client.post("/parcels/P-1/owners", headers=auth(city_admin),
                              json={"owner_id": other, "share_ratio": "0.2"})
        assert r.status_code == 409
        assert r.json()["error"] == "OVER_ALLOCATION"

    @pytest.mark.asyncio
    async def test_unknown_parcel_is_404(self, client, maker):
        r = await client.get("/parcels/NOPE", headers=auth(maker))
        assert r.status_code == 404
