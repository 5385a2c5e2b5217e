"""
api/routes_parcels.py — Parcel Registry API Endpoints

Reads go straight to the entity store. Every mutation goes through the
approval router, so the response says whether it was applied or parked.

Endpoints:
    GET  /parcels/{upin}                            → Parcel with children
    GET  /parcels/{upin}/owners                     → Active ownership edges
    GET  /parcels/{upin}/history                    → Transfer history
    POST /parcels/{upin}/owners                     → Add a co-owner
    POST /parcels/{upin}/transfer                   → Transfer a share
    POST /parcels/{upin}/subdivide                  → Split into child parcels
    PUT  /parcels/ownership/{parcel_owner_id}/share → Correct one owner's share
    GET  /parcels/{upin}/encumbrances               → Encumbrances on a parcel
    POST /parcels/{upin}/encumbrances               → Register an encumbrance
    POST /parcels/encumbrances/{id}/release         → Release an encumbrance
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_actor
from core.actions import AddOwnerPayload, CreateEncumbrancePayload, SubdividePayload, TransferPayload
from core.auth import Actor
from core.errors import NotFound
from core.policy import ActionType
from core.wizard import ShareRatio
from db.session import get_db
from modules import approvals, encumbrances, ownership, store

router = APIRouter()


class ShareUpdateRequest(BaseModel):
    share_ratio: ShareRatio


class ReleaseRequest(BaseModel):
    reason: Optional[str] = None


async def _require_parcel(db: AsyncSession, upin: str):
    parcel = await store.get_parcel(db, upin)
    if parcel is None:
        raise NotFound(f"Parcel {upin} not found")
    return parcel


# ── Reads ─────────────────────────────────────────────────────────────────────
@router.get("/{upin}")
async def get_parcel(
    upin: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    parcel = await _require_parcel(db, upin)
    body = store.parcel_to_dict(parcel)
    body["children"] = [c.upin for c in await store.list_child_parcels(db, upin)]
    body["allocated_share"] = str(await ownership.active_share_total(db, upin))
    return body


@router.get("/{upin}/owners")
async def list_owners(
    upin: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await _require_parcel(db, upin)
    return [store.ownership_to_dict(e) for e in await store.list_active_ownership(db, upin)]


@router.get("/{upin}/history")
async def list_history(
    upin: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await _require_parcel(db, upin)
    return [store.history_to_dict(h) for h in await store.list_transfer_history(db, upin)]


@router.get("/{upin}/encumbrances")
async def list_encumbrances(
    upin: str,
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await _require_parcel(db, upin)
    return await encumbrances.list_encumbrances(db, upin, active_only=active_only)


# ── Mutations (through the approval router) ───────────────────────────────────
@router.post("/{upin}/owners")
async def add_owner(
    upin: str,
    body: AddOwnerPayload,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.request_action(db, actor, ActionType.ADD_OWNER, upin, body)


@router.post("/{upin}/transfer")
async def transfer(
    upin: str,
    body: TransferPayload,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.request_action(db, actor, ActionType.TRANSFER_OWNERSHIP, upin, body)


@router.post("/{upin}/subdivide")
async def subdivide(
    upin: str,
    body: SubdividePayload,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.request_action(db, actor, ActionType.SUBDIVIDE_PARCEL, upin, body)


@router.put("/ownership/{parcel_owner_id}/share")
async def update_share(
    parcel_owner_id: str,
    body: ShareUpdateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    edge = await store.get_ownership(db, parcel_owner_id)
    if edge is None:
        raise NotFound(f"Ownership {parcel_owner_id} not found")
    payload = {"parcel_owner_id": parcel_owner_id, "share_ratio": body.share_ratio}
    return await approvals.request_action(db, actor, ActionType.UPDATE_SHARE, edge.upin, payload)


@router.post("/{upin}/encumbrances")
async def create_encumbrance(
    upin: str,
    body: CreateEncumbrancePayload,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.request_action(db, actor, ActionType.CREATE_ENCUMBRANCE, upin, body)


@router.post("/encumbrances/{encumbrance_id}/release")
async def release_encumbrance(
    encumbrance_id: str,
    body: Optional[ReleaseRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    encumbrance = await encumbrances.get_encumbrance(db, encumbrance_id)
    payload = {"encumbrance_id": encumbrance_id, "reason": body.reason if body else None}
    return await approvals.request_action(db, actor, ActionType.RELEASE_ENCUMBRANCE, encumbrance.upin, payload)
