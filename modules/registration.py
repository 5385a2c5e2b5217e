"""
modules/registration.py — Registration Session Engine
======================================================
Server side of the parcel registration wizard. A session is a per-user
draft that collects typed payloads step by step:

    parcel → parcel-docs → owner → owner-docs → lease → lease-docs → validation

Which steps apply is recomputed from the payload (core/wizard.py). Nothing
here touches the canonical parcel tables: a complete session is handed to
the approval router (modules/approvals.py), which merges it.

Every public function commits once at the end or not at all. Mutations of
one session run under its session lock (the same one submit takes), and the
row's version counter refuses a write from a copy read before another
process changed it.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from core.auth import Actor
from core.documents import DocumentHandle, document_gateway
from core.errors import Expired, InvalidPayload, InvalidState, NotFound, ParcelExists, PermissionDenied
from core.locks import keyed_locks, session_key
from core.policy import ActionType, approval_policy
from core.wizard import (
    DOC_STEPS, EDITABLE_STATUSES, STEP_SLOTS, LeaseStepData, OwnerStepData, ParcelStepData,
    RegistrationPayload, Step, available_steps, check_slots, load_slot, parse_step,
    parse_step_payload, transition,
)
from db.models import (
    ApprovalRequest, RegistrationSession, SessionDocument, SessionStatus, TenureType, utcnow,
)
from modules import store

logger = logging.getLogger("cadastre.registration")

RECENT_SESSIONS_LIMIT = 20
DOC_STEP_ORDER = (Step.PARCEL_DOCS, Step.OWNER_DOCS, Step.LEASE_DOCS)


# ── Lookups ───────────────────────────────────────────────────────────────────
async def load_session(db: AsyncSession, session_id: str) -> RegistrationSession:
    session = await db.get(RegistrationSession, session_id, populate_existing=True)
    if session is None:
        raise NotFound(f"Session {session_id} not found")
    return session


async def owned_session(db: AsyncSession, session_id: str, actor: Actor) -> RegistrationSession:
    session = await load_session(db, session_id)
    if session.user_id != actor.user_id:
        logger.warning(f"Session {session_id} access DENIED for {actor.user_id}")
        raise PermissionDenied("Session belongs to another user")
    return session


async def _open_draft(db: AsyncSession, user_id: str) -> Optional[RegistrationSession]:
    result = await db.execute(
        select(RegistrationSession).where(
            RegistrationSession.user_id == user_id,
            RegistrationSession.status == SessionStatus.DRAFT.value,
        )
    )
    return result.scalars().first()


def is_stale(session: RegistrationSession, now: Optional[datetime] = None) -> bool:
    return (
        session.status == SessionStatus.DRAFT.value
        and session.expires_at <= (now or utcnow())
    )


async def write_session(db: AsyncSession, session: RegistrationSession, commit: bool = True):
    """
    Flush (or commit) pending changes to `session`. When another process
    changed the row since it was read, the version check fails: everything
    is rolled back and Expired or InvalidState raised with the row's
    current status.
    """
    session_id = session.session_id
    try:
        if commit:
            await db.commit()
        else:
            await db.flush()
    except StaleDataError:
        await db.rollback()
        current = await load_session(db, session_id)
        logger.warning(f"Session {session_id}: concurrent change detected, now {current.status}")
        if current.status == SessionStatus.EXPIRED.value:
            raise Expired(f"Session {session_id} expired at {current.expires_at.isoformat()}")
        raise InvalidState(f"Session {session_id} was changed concurrently and is now {current.status}")


async def ensure_editable(db: AsyncSession, session: RegistrationSession):
    """
    Editable means DRAFT or REJECTED. A DRAFT found past its TTL is moved to
    EXPIRED (committed) before Expired is raised.
    """
    if SessionStatus(session.status) not in EDITABLE_STATUSES:
        raise InvalidState(f"Session {session.session_id} is {session.status} and cannot be edited")
    if is_stale(session):
        transition(session, SessionStatus.EXPIRED)
        await write_session(db, session)
        raise Expired(f"Session {session.session_id} expired at {session.expires_at.isoformat()}")


# ── Serialization ─────────────────────────────────────────────────────────────
def documents_by_step(session: RegistrationSession) -> dict:
    grouped = {step.value: [] for step in DOC_STEP_ORDER}
    for doc in session.documents:
        grouped.setdefault(doc.step, []).append(document_to_handle(doc).model_dump(mode="json"))
    return grouped


def document_to_handle(doc: SessionDocument) -> DocumentHandle:
    return DocumentHandle(id=doc.document_id, url=doc.file_url, name=doc.file_name, uploaded_at=doc.uploaded_at)


def session_to_dict(session: RegistrationSession, request: Optional[ApprovalRequest] = None) -> dict:
    docs = documents_by_step(session)
    body = {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "user_role": session.user_role,
        "sub_city_id": session.sub_city_id,
        "status": session.status,
        "current_step": session.current_step,
        "available_steps": [s.value for s in available_steps(session)],
        "parcel_data": session.parcel_data,
        "owner_data": session.owner_data,
        "lease_data": session.lease_data,
        "parcel_docs": docs[Step.PARCEL_DOCS.value],
        "owner_docs": docs[Step.OWNER_DOCS.value],
        "lease_docs": docs[Step.LEASE_DOCS.value],
        "approval_request_id": session.approval_request_id,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
        "expires_at": session.expires_at.isoformat(),
        "submitted_at": session.submitted_at.isoformat() if session.submitted_at else None,
        "merged_at": session.merged_at.isoformat() if session.merged_at else None,
    }
    if request is not None:
        body["approval_request"] = {
            "request_id": request.request_id,
            "status": request.status,
            "approver_role": request.approver_role,
            "rejection_reason": request.rejection_reason,
        }
    return body


def session_summary(session: RegistrationSession) -> dict:
    parcel = session.parcel_data or {}
    return {
        "session_id": session.session_id,
        "status": session.status,
        "current_step": session.current_step,
        "upin": parcel.get("upin"),
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
        "expires_at": session.expires_at.isoformat(),
    }


def build_payload(session: RegistrationSession) -> RegistrationPayload:
    """Typed aggregate of a complete session, as snapshotted into an approval request."""
    parcel = load_slot(ParcelStepData, session.parcel_data)
    owners = load_slot(OwnerStepData, session.owner_data)
    lease = None
    if parcel.tenure_type == TenureType.LEASE:
        lease = load_slot(LeaseStepData, session.lease_data)
    steps = set(available_steps(session))
    documents = {}
    for doc in session.documents:
        if Step(doc.step) in steps:
            documents.setdefault(doc.step, []).append(document_to_handle(doc))
    return RegistrationPayload(parcel=parcel, owners=owners, lease=lease, documents=documents)


# ── Lifecycle ─────────────────────────────────────────────────────────────────
async def create_session(db: AsyncSession, actor: Actor) -> dict:
    """Resume the actor's open draft, or start a new one."""
    approval_policy.check_can_make(actor, ActionType.SUBMIT_REGISTRATION)

    existing = await _open_draft(db, actor.user_id)
    if existing is not None and not is_stale(existing):
        logger.info(f"Resuming session {existing.session_id} for {actor.user_id}")
        return session_to_dict(existing)
    if existing is not None:
        await _expire_stale(db, utcnow(), user_id=actor.user_id)

    now = utcnow()
    session = RegistrationSession(
        user_id=actor.user_id,
        user_role=actor.role,
        sub_city_id=actor.sub_city_id,
        status=SessionStatus.DRAFT.value,
        current_step=Step.PARCEL.value,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=settings.SESSION_TTL_HOURS),
        documents=[],
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError:
        # another request created the draft first
        await db.rollback()
        existing = await _open_draft(db, actor.user_id)
        if existing is None:
            raise
        return session_to_dict(existing)

    logger.info(f"Session {session.session_id} created for {actor.user_id} ({actor.role})")
    return session_to_dict(session)


async def get_session(db: AsyncSession, session_id: str, actor: Actor) -> dict:
    session = await owned_session(db, session_id, actor)
    request = None
    if session.approval_request_id:
        request = await db.get(ApprovalRequest, session.approval_request_id)
    return session_to_dict(session, request)


async def save_step(db: AsyncSession, session_id: str, step: str, payload, actor: Actor) -> dict:
    """Validate `payload` against the step's schema and write only that slot."""
    step = parse_step(step)
    async with keyed_locks.hold(session_key(session_id)):
        session = await owned_session(db, session_id, actor)
        await ensure_editable(db, session)
        if step not in available_steps(session):
            raise InvalidPayload(f"Step '{step.value}' does not apply to this session")

        data = parse_step_payload(step, payload)
        if step == Step.PARCEL:
            if await store.get_parcel(db, data.upin) is not None:
                raise ParcelExists(f"Parcel {data.upin} is already registered")
            if await store.get_parcel_by_file_number(db, data.file_number) is not None:
                raise ParcelExists(f"File number {data.file_number} is already registered")
        elif step == Step.OWNER:
            for entry in data.owners:
                if entry.is_existing and await store.get_owner(db, entry.owner_id) is None:
                    raise InvalidPayload(f"Owner {entry.owner_id} does not exist")

        if data is not None:
            slot, _ = STEP_SLOTS[step]
            setattr(session, slot, data.model_dump(mode="json"))
        session.current_step = step.value
        session.updated_at = utcnow()
        await write_session(db, session)
    logger.info(f"Session {session_id}: saved step {step.value}")
    return session_to_dict(session)


# ── Documents ─────────────────────────────────────────────────────────────────
async def _doc_step(db: AsyncSession, session: RegistrationSession, step: str) -> Step:
    step = parse_step(step)
    if step not in DOC_STEPS:
        raise InvalidPayload(f"Documents cannot be attached to step '{step.value}'")
    await ensure_editable(db, session)
    if step not in available_steps(session):
        raise InvalidPayload(f"Step '{step.value}' does not apply to this session")
    return step


async def attach_document(
    db: AsyncSession, session_id: str, step: str, handle: DocumentHandle, actor: Actor,
) -> dict:
    async with keyed_locks.hold(session_key(session_id)):
        session = await owned_session(db, session_id, actor)
        step = await _doc_step(db, session, step)
        session.documents.append(SessionDocument(
            document_id=handle.id,
            step=step.value,
            file_url=handle.url,
            file_name=handle.name,
            uploaded_at=handle.uploaded_at,
        ))
        session.updated_at = utcnow()
        await write_session(db, session)
    logger.info(f"Session {session_id}: attached {handle.name} to {step.value}")
    return handle.model_dump(mode="json")


async def upload_document(
    db: AsyncSession, session_id: str, step: str, filename: str, content: bytes, actor: Actor,
) -> dict:
    """
    Check the session accepts documents, store the bytes, then attach the
    handle. attach_document checks again under the session lock.
    """
    session = await owned_session(db, session_id, actor)
    await _doc_step(db, session, step)
    handle = document_gateway.store_handle(session_id, filename, content)
    try:
        return await attach_document(db, session_id, step, handle, actor)
    except Exception:
        document_gateway.delete_handle(session_id, handle.id)
        raise


async def remove_document(db: AsyncSession, session_id: str, document_id: str, actor: Actor) -> dict:
    async with keyed_locks.hold(session_key(session_id)):
        session = await owned_session(db, session_id, actor)
        await ensure_editable(db, session)
        doc = next((d for d in session.documents if d.document_id == document_id), None)
        if doc is None:
            raise NotFound(f"Document {document_id} is not attached to session {session_id}")
        session.documents.remove(doc)
        session.updated_at = utcnow()
        await write_session(db, session)
    document_gateway.delete_handle(session_id, document_id)
    logger.info(f"Session {session_id}: removed document {document_id}")
    return {"session_id": session_id, "document_id": document_id, "removed": True}


# ── Validation ────────────────────────────────────────────────────────────────
async def validate_session(db: AsyncSession, session_id: str, actor: Optional[Actor] = None) -> dict:
    """Read-only completeness check; never changes state."""
    if actor is not None:
        session = await owned_session(db, session_id, actor)
    else:
        session = await load_session(db, session_id)
    valid, missing = check_slots(session)
    return {"valid": valid, "missing": missing}


# ── Abandon / reopen / list ───────────────────────────────────────────────────
async def abandon_session(db: AsyncSession, session_id: str, actor: Actor) -> dict:
    """
    Delete a DRAFT and its stored documents. A draft that was reopened after
    a rejection keeps its approval trail, so it is expired instead.
    """
    async with keyed_locks.hold(session_key(session_id)):
        session = await owned_session(db, session_id, actor)
        if session.status != SessionStatus.DRAFT.value:
            raise InvalidState(f"Only a DRAFT can be abandoned, session {session_id} is {session.status}")

        if session.approval_request_id:
            transition(session, SessionStatus.EXPIRED)
            await write_session(db, session)
            logger.info(f"Session {session_id} abandoned (expired, has approval history)")
            return {"session_id": session_id, "deleted": False, "status": session.status}

        doc_ids = [d.document_id for d in session.documents]
        await db.delete(session)
        await write_session(db, session)
    for doc_id in doc_ids:
        document_gateway.delete_handle(session_id, doc_id)
    logger.info(f"Session {session_id} abandoned and deleted")
    return {"session_id": session_id, "deleted": True}


async def reopen_session(db: AsyncSession, session_id: str, actor: Actor) -> dict:
    """REJECTED → DRAFT, with a fresh TTL. Refused while another draft is open."""
    async with keyed_locks.hold(session_key(session_id)):
        session = await owned_session(db, session_id, actor)
        if session.status != SessionStatus.REJECTED.value:
            raise InvalidState(
                f"Only a REJECTED session can be reopened, session {session_id} is {session.status}"
            )
        if await _open_draft(db, actor.user_id) is not None:
            raise InvalidState("Finish or abandon the open draft before reopening another session")

        transition(session, SessionStatus.DRAFT)
        now = utcnow()
        session.expires_at = now + timedelta(hours=settings.SESSION_TTL_HOURS)
        session.updated_at = now
        try:
            await write_session(db, session)
        except IntegrityError:
            await db.rollback()
            raise InvalidState("Finish or abandon the open draft before reopening another session")
    return session_to_dict(session)


async def list_user_sessions(db: AsyncSession, actor: Actor) -> List[dict]:
    result = await db.execute(
        select(RegistrationSession)
        .where(RegistrationSession.user_id == actor.user_id)
        .order_by(RegistrationSession.updated_at.desc())
        .limit(RECENT_SESSIONS_LIMIT)
    )
    return [session_summary(s) for s in result.scalars().all()]


# ── Expiry ────────────────────────────────────────────────────────────────────
async def _expire_stale(db: AsyncSession, now: datetime, user_id: Optional[str] = None) -> int:
    """
    One conditional UPDATE: only rows that are still DRAFT and past their TTL
    when the statement runs are touched, so a session submitted in the
    meantime is left alone. The version is bumped so in-flight writers of
    the expired rows fail their version check.
    """
    stmt = (
        update(RegistrationSession)
        .where(
            RegistrationSession.status == SessionStatus.DRAFT.value,
            RegistrationSession.expires_at <= now,
        )
        .values(
            status=SessionStatus.EXPIRED.value,
            updated_at=now,
            version=RegistrationSession.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if user_id is not None:
        stmt = stmt.where(RegistrationSession.user_id == user_id)
    result = await db.execute(stmt)
    return result.rowcount


async def expire_sessions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Move every DRAFT past its TTL to EXPIRED. Returns how many were expired."""
    expired = await _expire_stale(db, now or utcnow())
    await db.commit()
    if expired:
        logger.info(f"Expired {expired} stale registration session(s)")
    return expired
