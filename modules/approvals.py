"""
modules/approvals.py — Approval Router (Maker-Checker)
=======================================================
The only way a change reaches the canonical cadastre tables.

    submit_for_approval()     a complete registration session
    request_action()          a direct parcel action (add owner, transfer, subdivide, ...)
    decide_approval_request() the checker's APPROVE / REJECT

For each of these the policy (core/policy.py) decides whether the maker may
apply the change now or must park it as a PENDING ApprovalRequest holding a
snapshot of the validated payload. Self-approval and checker approval run the
same apply path.

Every write happens under the per-key locks (core/locks.py), inside one
transaction that commits at the end or rolls back entirely.
"""

import logging
from datetime import date
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.actions import parse_action_payload
from core.auth import Actor
from core.errors import (
    CadastreError, DuplicateRequest, Expired, InvalidPayload, InvalidState, NotFound,
    NotReady, ParcelExists, StaleRequest,
)
from core.locks import keyed_locks, parcel_key, session_key
from core.policy import SUBCITY_ROLES, ActionType, ApprovalPolicy, approval_policy
from core.wizard import SUBMITTABLE_STATUSES, RegistrationPayload, Step, check_slots, transition
from db.models import (
    ApprovalLog, ApprovalRequest, AuditLog, Document, DocumentCategory, LeaseAgreement,
    RegistrationSession, RequestStatus, SessionStatus, utcnow,
)
from modules import encumbrances, ownership, registration, store

logger = logging.getLogger("cadastre.approvals")

SESSION_ENTITY = "registration_sessions"
PARCEL_ENTITY = "land_parcels"

DOC_CATEGORIES = {
    Step.PARCEL_DOCS.value: DocumentCategory.PARCEL,
    Step.OWNER_DOCS.value: DocumentCategory.OWNER,
    Step.LEASE_DOCS.value: DocumentCategory.LEASE,
}


# ── Helpers ───────────────────────────────────────────────────────────────────
def _audit(db: AsyncSession, actor: Actor, action: str, entity_type: str, entity_id: str, details=None):
    db.add(AuditLog(
        actor_id=actor.user_id,
        actor_role=actor.role,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    ))


def _log(db: AsyncSession, request: ApprovalRequest, action: str, actor: Actor,
         previous: Optional[str], comments: Optional[str] = None):
    db.add(ApprovalLog(
        request_id=request.request_id,
        action=action,
        performed_by=actor.user_id,
        performed_by_role=actor.role,
        previous_status=previous,
        new_status=request.status,
        comments=comments,
    ))


def _add_years(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return start.replace(year=start.year + years, day=28)


def _lock_keys(action: ActionType, entity_id: str, data: dict, session_id: Optional[str] = None) -> list:
    keys = [session_key(session_id)] if session_id else []
    if action == ActionType.SUBMIT_REGISTRATION:
        upin = ((data or {}).get("parcel") or {}).get("upin")
        if upin:
            keys.append(parcel_key(upin))
        return keys
    keys.append(parcel_key(entity_id))
    if action == ActionType.SUBDIVIDE_PARCEL:
        keys.extend(parcel_key(u) for u in ownership.subdivision_upins(entity_id, (data or {}).get("children") or []))
    return keys


async def _pending_for_entity(db: AsyncSession, entity_id: str, action: ActionType) -> Optional[ApprovalRequest]:
    result = await db.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.entity_type == PARCEL_ENTITY,
            ApprovalRequest.entity_id == entity_id,
            ApprovalRequest.action_type == action.value,
            ApprovalRequest.status == RequestStatus.PENDING.value,
        )
    )
    return result.scalars().first()


def request_to_dict(r: ApprovalRequest, with_logs: bool = False) -> dict:
    body = {
        "request_id": r.request_id,
        "entity_type": r.entity_type,
        "entity_id": r.entity_id,
        "action_type": r.action_type,
        "session_id": r.session_id,
        "status": r.status,
        "maker_id": r.maker_id,
        "maker_role": r.maker_role,
        "approver_role": r.approver_role,
        "sub_city_id": r.sub_city_id,
        "request_data": r.request_data,
        "rejection_reason": r.rejection_reason,
        "decided_by": r.decided_by,
        "created_at": r.created_at.isoformat(),
        "approved_at": r.approved_at.isoformat() if r.approved_at else None,
        "rejected_at": r.rejected_at.isoformat() if r.rejected_at else None,
    }
    if with_logs:
        body["logs"] = [
            {
                "action": log.action,
                "performed_by": log.performed_by,
                "performed_by_role": log.performed_by_role,
                "previous_status": log.previous_status,
                "new_status": log.new_status,
                "comments": log.comments,
                "created_at": log.created_at.isoformat(),
            }
            for log in r.logs
        ]
    return body


# ── Apply ─────────────────────────────────────────────────────────────────────
async def apply_registration(
    db: AsyncSession, payload: RegistrationPayload, sub_city_id: Optional[str] = None,
) -> dict:
    """
    Write a registration to the canonical tables: parcel, owners, ownership
    edges (through the ownership engine), lease and documents. Flush only.
    """
    parcel_data = payload.parcel
    if await store.get_parcel(db, parcel_data.upin, for_update=True) is not None:
        raise ParcelExists(f"Parcel {parcel_data.upin} is already registered")
    if await store.get_parcel_by_file_number(db, parcel_data.file_number) is not None:
        raise ParcelExists(f"File number {parcel_data.file_number} is already registered")

    fields = parcel_data.model_dump(exclude={"upin"})
    fields["tenure_type"] = parcel_data.tenure_type.value
    parcel = await store.upsert_parcel(db, parcel_data.upin, sub_city_id=sub_city_id, **fields)

    edges = []
    for entry, share in zip(payload.owners.owners, payload.owners.resolved_shares()):
        if entry.is_existing:
            owner = await store.get_owner(db, entry.owner_id)
            if owner is None:
                raise NotFound(f"Owner {entry.owner_id} not found")
        else:
            owner = await store.upsert_owner(
                db, entry.national_id,
                full_name=entry.full_name,
                phone_number=entry.phone_number,
                tin_number=entry.tin_number,
                sub_city_id=sub_city_id,
            )
        edges.append(await ownership.create_initial_ownership(
            db, parcel.upin, owner.owner_id, share, entry.acquired_at,
        ))

    lease_id = None
    if payload.lease is not None:
        lease = LeaseAgreement(
            upin=parcel.upin,
            expiry_date=_add_years(payload.lease.start_date, payload.lease.lease_period_years),
            **payload.lease.model_dump(),
        )
        db.add(lease)
        await db.flush()
        lease_id = lease.lease_id

    documents = 0
    for step, handles in payload.documents.items():
        category = DOC_CATEGORIES.get(step)
        if category is None:
            continue
        for handle in handles:
            db.add(Document(
                upin=parcel.upin,
                lease_id=lease_id if category == DocumentCategory.LEASE else None,
                category=category.value,
                file_url=handle.url,
                file_name=handle.name,
                uploaded_at=handle.uploaded_at,
            ))
            documents += 1
    await db.flush()

    logger.info(f"Registered parcel {parcel.upin} with {len(edges)} owner(s), {documents} document(s)")
    return {"upin": parcel.upin, "owners": edges, "lease_id": lease_id, "documents": documents}


async def execute_action(db: AsyncSession, action: ActionType, upin: str, payload, actor: Actor) -> dict:
    """Dispatch a direct action to the engine that owns it. Flush only."""
    action = ActionType(action)
    data = parse_action_payload(action, payload)

    if action == ActionType.ADD_OWNER:
        return await ownership.create_initial_ownership(db, upin, data.owner_id, data.share_ratio, data.acquired_at)
    if action == ActionType.TRANSFER_OWNERSHIP:
        return await ownership.transfer_ownership(
            db, upin, data.from_owner_id, data.to_owner_id, data.share_ratio,
            data.transfer_type, price=data.price, reference=data.reference,
        )
    if action == ActionType.SUBDIVIDE_PARCEL:
        return await ownership.subdivide_parcel(db, upin, data.children)
    if action == ActionType.UPDATE_SHARE:
        edge = await store.get_ownership(db, data.parcel_owner_id)
        if edge is None or edge.upin != upin:
            raise InvalidPayload(f"Ownership {data.parcel_owner_id} does not belong to parcel {upin}")
        return await ownership.update_share(db, data.parcel_owner_id, data.share_ratio)
    if action == ActionType.CREATE_ENCUMBRANCE:
        return await encumbrances.create_encumbrance(db, upin, data, created_by=actor.user_id)
    if action == ActionType.RELEASE_ENCUMBRANCE:
        encumbrance = await encumbrances.get_encumbrance(db, data.encumbrance_id)
        if encumbrance.upin != upin:
            raise InvalidPayload(f"Encumbrance {data.encumbrance_id} does not belong to parcel {upin}")
        return await encumbrances.release_encumbrance(db, data.encumbrance_id, data.reason)
    raise InvalidPayload(f"{action.value} is not a direct action")


async def _merge_session(db: AsyncSession, session: RegistrationSession, payload: RegistrationPayload) -> dict:
    result = await apply_registration(db, payload, session.sub_city_id)
    if session.status == SessionStatus.PENDING_APPROVAL.value:
        transition(session, SessionStatus.APPROVED)
    transition(session, SessionStatus.MERGED)
    session.merged_at = utcnow()
    await db.flush()
    return result


# ── Registration submit ───────────────────────────────────────────────────────
async def submit_for_approval(
    db: AsyncSession, session_id: str, actor: Actor, policy: ApprovalPolicy = approval_policy,
) -> dict:
    """
    Hand a complete session to the router. Returns
    {requires_approval: False, result} when the maker may self-approve, or
    {requires_approval: True, approval_request_id} when it was parked.
    """
    action = ActionType.SUBMIT_REGISTRATION
    async with keyed_locks.hold(session_key(session_id)):
        session = await registration.owned_session(db, session_id, actor)
        if SessionStatus(session.status) not in SUBMITTABLE_STATUSES:
            raise InvalidState(f"Session {session_id} is {session.status} and cannot be submitted")
        if registration.is_stale(session):
            transition(session, SessionStatus.EXPIRED)
            await registration.write_session(db, session)
            raise Expired(f"Session {session_id} expired at {session.expires_at.isoformat()}")

        valid, missing = check_slots(session)
        if not valid:
            raise NotReady(f"Session {session_id} is incomplete", details={"missing": missing})
        policy.check_can_make(actor, action)
        payload = registration.build_payload(session)

        # claim the row first: an expiry or edit committed elsewhere since the
        # read fails the version check here, before anything else is written
        session.submitted_at = utcnow()
        await registration.write_session(db, session, commit=False)

        if not policy.requires_approval(actor, action):
            async with keyed_locks.hold(parcel_key(payload.parcel.upin)):
                try:
                    result = await _merge_session(db, session, payload)
                    _audit(db, actor, "REGISTER_PARCEL", PARCEL_ENTITY, payload.parcel.upin,
                           {"session_id": session_id, "self_approved": True})
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
            logger.info(f"Session {session_id} self-approved and merged by {actor.user_id}")
            return {"requires_approval": False, "session_id": session_id, "status": SessionStatus.MERGED.value,
                    "result": result}

        request = ApprovalRequest(
            entity_type=SESSION_ENTITY,
            entity_id=session_id,
            action_type=action.value,
            session_id=session_id,
            status=RequestStatus.PENDING.value,
            maker_id=actor.user_id,
            maker_role=actor.role,
            approver_role=policy.approver_role_for(actor, action),
            sub_city_id=session.sub_city_id or actor.sub_city_id,
            request_data=payload.model_dump(mode="json"),
        )
        db.add(request)
        try:
            await db.flush()
        except IntegrityError:
            # the partial unique index allows one PENDING request per session
            await db.rollback()
            raise DuplicateRequest(f"Session {session_id} already has a pending request")

        transition(session, SessionStatus.PENDING_APPROVAL)
        session.approval_request_id = request.request_id
        _log(db, request, "CREATE", actor, None, comments=f"Registration of {payload.parcel.upin}")
        _audit(db, actor, "SUBMIT_REGISTRATION", SESSION_ENTITY, session_id,
               {"approval_request_id": request.request_id})
        request_id = request.request_id
        await db.commit()

    logger.info(f"Session {session_id} submitted for approval → request {request_id} ({request.approver_role})")
    return {"requires_approval": True, "session_id": session_id, "status": SessionStatus.PENDING_APPROVAL.value,
            "approval_request_id": request_id}


async def resubmit(
    db: AsyncSession, session_id: str, actor: Actor, policy: ApprovalPolicy = approval_policy,
) -> dict:
    """Submit a REJECTED session again. Always creates a new request."""
    session = await registration.owned_session(db, session_id, actor)
    if session.status != SessionStatus.REJECTED.value:
        raise InvalidState(f"Only a REJECTED session can be resubmitted, session {session_id} is {session.status}")
    return await submit_for_approval(db, session_id, actor, policy)


# ── Direct actions ────────────────────────────────────────────────────────────
async def request_action(
    db: AsyncSession,
    actor: Actor,
    action,
    entity_id: str,
    payload,
    policy: ApprovalPolicy = approval_policy,
) -> dict:
    """
    Gate for a direct parcel action. `entity_id` is the parcel UPIN. Executes
    immediately when the policy allows, otherwise parks a PENDING request
    (one per parcel and action).
    """
    try:
        action = ActionType(action)
    except ValueError:
        raise InvalidPayload(f"Unknown action {action!r}")
    if action == ActionType.SUBMIT_REGISTRATION:
        raise InvalidPayload("Registrations are submitted through a registration session")
    policy.check_can_make(actor, action)
    data = parse_action_payload(action, payload)
    snapshot = data.model_dump(mode="json")

    async with keyed_locks.hold(*_lock_keys(action, entity_id, snapshot)):
        parcel = await store.get_parcel(db, entity_id)
        if parcel is None:
            raise NotFound(f"Parcel {entity_id} not found")

        if not policy.requires_approval(actor, action):
            try:
                result = await execute_action(db, action, entity_id, data, actor)
                _audit(db, actor, action.value, PARCEL_ENTITY, entity_id, {"payload": snapshot, "self_approved": True})
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            logger.info(f"{action.value} on {entity_id} applied directly by {actor.user_id} ({actor.role})")
            return {"requires_approval": False, "action_type": action.value, "result": result}

        pending = await _pending_for_entity(db, entity_id, action)
        if pending is not None:
            raise DuplicateRequest(
                f"A {action.value} request for {entity_id} is already pending",
                details={"approval_request_id": pending.request_id},
            )
        request = ApprovalRequest(
            entity_type=PARCEL_ENTITY,
            entity_id=entity_id,
            action_type=action.value,
            status=RequestStatus.PENDING.value,
            maker_id=actor.user_id,
            maker_role=actor.role,
            approver_role=policy.approver_role_for(actor, action),
            sub_city_id=actor.sub_city_id or parcel.sub_city_id,
            request_data=snapshot,
        )
        db.add(request)
        await db.flush()
        _log(db, request, "CREATE", actor, None)
        _audit(db, actor, f"REQUEST_{action.value}", PARCEL_ENTITY, entity_id,
               {"approval_request_id": request.request_id})
        request_id = request.request_id
        approver_role = request.approver_role
        await db.commit()

    logger.info(f"{action.value} on {entity_id} parked as request {request_id} for {approver_role}")
    return {"requires_approval": True, "action_type": action.value, "approval_request_id": request_id}


# ── Decisions ─────────────────────────────────────────────────────────────────
async def decide_approval_request(
    db: AsyncSession,
    request_id: str,
    decision: str,
    actor: Actor,
    reason: Optional[str] = None,
    policy: ApprovalPolicy = approval_policy,
) -> dict:
    decision = (decision or "").upper()
    if decision not in ("APPROVE", "REJECT"):
        raise InvalidPayload(f"Decision must be APPROVE or REJECT, got {decision!r}")
    if decision == "REJECT" and not (reason and reason.strip()):
        raise InvalidPayload("A rejection reason is required")

    request = await db.get(ApprovalRequest, request_id)
    if request is None:
        raise NotFound(f"Approval request {request_id} not found")
    action = ActionType(request.action_type)
    session_id = request.session_id

    async with keyed_locks.hold(*_lock_keys(action, request.entity_id, request.request_data, session_id)):
        await db.refresh(request)
        if request.status != RequestStatus.PENDING.value:
            raise InvalidState(f"Request {request_id} is already {request.status}")
        policy.check_can_decide(actor, request)
        session = await registration.load_session(db, session_id) if session_id else None

        if decision == "REJECT":
            request.status = RequestStatus.REJECTED.value
            request.rejection_reason = reason.strip()
            request.rejected_at = utcnow()
            request.decided_by = actor.user_id
            _log(db, request, "REJECT", actor, RequestStatus.PENDING.value, comments=request.rejection_reason)
            if session is not None:
                transition(session, SessionStatus.REJECTED)
            _audit(db, actor, f"REJECT_{action.value}", request.entity_type, request.entity_id,
                   {"approval_request_id": request_id, "reason": request.rejection_reason})
            await db.commit()
            logger.info(f"Request {request_id} rejected by {actor.user_id}: {request.rejection_reason}")
            return {"request_id": request_id, "status": RequestStatus.REJECTED.value,
                    "session_id": session_id, "rejection_reason": request.rejection_reason}

        entity_type, entity_id = request.entity_type, request.entity_id
        maker = Actor(user_id=request.maker_id, role=request.maker_role, sub_city_id=request.sub_city_id)
        try:
            if session is not None:
                try:
                    payload = RegistrationPayload.model_validate(request.request_data)
                except ValidationError as exc:
                    raise InvalidPayload(f"Snapshot of request {request_id} no longer validates", details=str(exc))
                result = await _merge_session(db, session, payload)
            else:
                result = await execute_action(db, action, entity_id, request.request_data, maker)
        except (CadastreError, IntegrityError, StaleDataError) as exc:
            await db.rollback()
            if isinstance(exc, CadastreError):
                cause = exc.to_dict()
            elif isinstance(exc, StaleDataError):
                cause = {"error": "CONCURRENT_UPDATE"}
            else:
                cause = {"error": "INTEGRITY_ERROR"}
            logger.error(f"Request {request_id} ({action.value} on {entity_id}) is stale: {cause}")
            raise StaleRequest(
                f"Request {request_id} can no longer be applied and needs manual reconciliation",
                details={"cause": cause},
            ) from exc

        request.status = RequestStatus.APPROVED.value
        request.approved_at = utcnow()
        request.decided_by = actor.user_id
        _log(db, request, "APPROVE", actor, RequestStatus.PENDING.value, comments=reason)
        _audit(db, actor, f"APPROVE_{action.value}", entity_type, entity_id,
               {"approval_request_id": request_id, "maker_id": maker.user_id})
        await db.commit()

    logger.info(f"Request {request_id} approved by {actor.user_id} and applied")
    return {"request_id": request_id, "status": RequestStatus.APPROVED.value,
            "session_id": session_id, "result": result}


# ── Queries ───────────────────────────────────────────────────────────────────
async def list_pending_requests(db: AsyncSession, actor: Actor) -> list:
    """Requests waiting for this actor's role (and sub-city), excluding their own."""
    stmt = select(ApprovalRequest).where(
        ApprovalRequest.status == RequestStatus.PENDING.value,
        ApprovalRequest.approver_role == actor.role,
        ApprovalRequest.maker_id != actor.user_id,
    )
    if actor.role in SUBCITY_ROLES:
        stmt = stmt.where(ApprovalRequest.sub_city_id == actor.sub_city_id)
    result = await db.execute(stmt.order_by(ApprovalRequest.created_at))
    return [request_to_dict(r) for r in result.scalars().all()]


async def get_request(
    db: AsyncSession, request_id: str, actor: Actor, policy: ApprovalPolicy = approval_policy,
) -> dict:
    """One request with its log. Visible to its maker and to the checkers who may decide it."""
    request = await db.get(ApprovalRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFound(f"Approval request {request_id} not found")
    if actor.user_id != request.maker_id:
        policy.check_can_decide(actor, request)
    return request_to_dict(request, with_logs=True)
