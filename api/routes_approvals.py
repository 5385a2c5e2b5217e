"""
api/routes_approvals.py — Checker API Endpoints

Endpoints:
    GET  /approvals/requests               → Pending requests for the caller's role
    GET  /approvals/requests/{id}          → One request with its log (maker or eligible checker)
    POST /approvals/requests/{id}/approve  → Approve and apply
    POST /approvals/requests/{id}/reject   → Reject with a reason
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_actor
from core.auth import Actor
from db.session import get_db
from modules import approvals

router = APIRouter()


class ApproveRequest(BaseModel):
    comments: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/requests")
async def list_pending(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.list_pending_requests(db, actor)


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.get_request(db, request_id, actor)


@router.post("/requests/{request_id}/approve")
async def approve_request(
    request_id: str,
    body: Optional[ApproveRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    comments = body.comments if body else None
    return await approvals.decide_approval_request(db, request_id, "APPROVE", actor, reason=comments)


@router.post("/requests/{request_id}/reject")
async def reject_request(
    request_id: str,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.decide_approval_request(db, request_id, "REJECT", actor, reason=body.reason)
