"""
api/routes_sessions.py — Registration Wizard API Endpoints

Endpoints:
    POST   /sessions                          → Create or resume the caller's draft
    GET    /sessions                          → Caller's recent sessions
    GET    /sessions/{id}                     → Session with available steps and documents
    DELETE /sessions/{id}                     → Abandon a draft
    POST   /sessions/{id}/steps               → Save one step's payload
    POST   /sessions/{id}/documents           → Upload a document to a doc step (multipart)
    DELETE /sessions/{id}/documents/{doc_id}  → Remove an attached document
    GET    /sessions/{id}/validate            → Completeness check
    POST   /sessions/{id}/submit              → Hand to the approval router
    POST   /sessions/{id}/resubmit            → Submit a rejected session again
    POST   /sessions/{id}/reopen              → Move a rejected session back to DRAFT
"""

from typing import Any

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_actor
from config import settings
from core.auth import Actor
from core.errors import InvalidPayload
from db.session import get_db
from modules import approvals, registration

router = APIRouter()


class StepRequest(BaseModel):
    step: str
    data: Any = None


@router.post("", status_code=201)
async def create_session(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.create_session(db, actor)


@router.get("")
async def list_sessions(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.list_user_sessions(db, actor)


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.get_session(db, session_id, actor)


@router.delete("/{session_id}")
async def abandon_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.abandon_session(db, session_id, actor)


@router.post("/{session_id}/steps")
async def save_step(
    session_id: str,
    body: StepRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.save_step(db, session_id, body.step, body.data, actor)


@router.post("/{session_id}/documents", status_code=201)
async def upload_document(
    session_id: str,
    step: str = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    limit = settings.MAX_UPLOAD_MB * 1024 * 1024
    # one byte past the limit is enough to know it is too large
    content = await file.read(limit + 1)
    if len(content) > limit:
        raise InvalidPayload(f"{file.filename} exceeds the {settings.MAX_UPLOAD_MB} MB upload limit")
    return await registration.upload_document(db, session_id, step, file.filename or "document", content, actor)


@router.delete("/{session_id}/documents/{document_id}")
async def remove_document(
    session_id: str,
    document_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.remove_document(db, session_id, document_id, actor)


@router.get("/{session_id}/validate")
async def validate_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.validate_session(db, session_id, actor)


@router.post("/{session_id}/submit")
async def submit_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.submit_for_approval(db, session_id, actor)


@router.post("/{session_id}/resubmit")
async def resubmit_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await approvals.resubmit(db, session_id, actor)


@router.post("/{session_id}/reopen")
async def reopen_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await registration.reopen_session(db, session_id, actor)
