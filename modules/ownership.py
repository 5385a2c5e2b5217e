"""
modules/ownership.py — Ownership Invariant Engine
==================================================
Every change to who owns how much of a parcel goes through here:

    create_initial_ownership()   first allocation of a share to an owner
    transfer_ownership()         move a share between owners (or out of old possession)
    subdivide_parcel()           split a parcel, replicating its owners onto each child
    update_share()               correct a single ownership edge

Invariants held after every call:
    Σ active share_ratio of a parcel  ≤ 1  (exact, 6 decimal places)
    Σ child areas of a subdivision    ≤ parent area + 0.1 m²
    every ownership change            → one transfer_history row

Functions flush but never commit. The caller owns the transaction and holds
`keyed_locks.hold(parcel_key(upin))` for the parcels involved.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.actions import ChildParcelSpec, parse_action_payload
from core.errors import (
    AreaExceeded, DuplicateChildUPIN, InsufficientShare, InvalidArea, InvalidPayload,
    InvalidShare, InvalidState, NotFound, OverAllocation, ParcelExists,
)
from core.policy import ActionType
from core.wizard import SHARE_QUANTUM
from db.models import Parcel, ParcelStatus, TransferType, USER_TRANSFER_TYPES
from modules import store

logger = logging.getLogger("cadastre.ownership")

AREA_TOLERANCE_M2 = Decimal("0.1")
ZERO = Decimal("0")
ONE = Decimal("1")


# ── Checks ────────────────────────────────────────────────────────────────────
def check_share(value) -> Decimal:
    """Share must be in (0, 1] with at most 6 decimal places. Never rounded."""
    try:
        share = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidShare(f"Share {value!r} is not a number")
    if not share.is_finite() or share <= ZERO or share > ONE:
        raise InvalidShare(f"Share {share} must be greater than 0 and at most 1")
    if share != share.quantize(SHARE_QUANTUM):
        raise InvalidShare(f"Share {share} has more than 6 decimal places")
    return share


async def _active_parcel(db: AsyncSession, upin: str) -> Parcel:
    parcel = await store.get_parcel(db, upin, for_update=True)
    if parcel is None:
        raise NotFound(f"Parcel {upin} not found")
    if parcel.status != ParcelStatus.ACTIVE.value:
        raise InvalidState(f"Parcel {upin} is {parcel.status}")
    return parcel


async def _existing_owner(db: AsyncSession, owner_id: str):
    owner = await store.get_owner(db, owner_id)
    if owner is None:
        raise NotFound(f"Owner {owner_id} not found")
    return owner


def _total(edges) -> Decimal:
    return sum((Decimal(e.share_ratio) for e in edges), ZERO)


async def active_share_total(db: AsyncSession, upin: str) -> Decimal:
    return _total(await store.list_active_ownership(db, upin))


# ── Initial allocation ────────────────────────────────────────────────────────
async def create_initial_ownership(
    db: AsyncSession,
    upin: str,
    owner_id: str,
    share_ratio,
    acquired_at: Optional[date] = None,
) -> dict:
    share = check_share(share_ratio)
    acquired_at = acquired_at or date.today()
    if acquired_at > date.today():
        raise InvalidPayload(f"acquired_at {acquired_at.isoformat()} lies in the future")

    await _active_parcel(db, upin)
    await _existing_owner(db, owner_id)

    edges = await store.list_active_ownership(db, upin)
    if any(e.owner_id == owner_id for e in edges):
        raise InvalidPayload(f"Owner {owner_id} already holds a share of parcel {upin}")
    total = _total(edges)
    if total + share > ONE:
        logger.warning(f"Over-allocation on {upin}: {total} + {share} > 1")
        raise OverAllocation(
            f"Parcel {upin} has {ONE - total} unallocated, cannot add {share}",
            details={"allocated": str(total), "requested": str(share)},
        )

    edge = await store.insert_ownership(db, upin, owner_id, share, acquired_at)
    await store.append_transfer_history(
        db, upin, TransferType.INITIAL_ALLOCATION.value,
        to_owner_id=owner_id, share_transferred=share,
    )
    logger.info(f"Owner {owner_id} allocated {share} of {upin}")
    return store.ownership_to_dict(edge)


# ── Transfer ──────────────────────────────────────────────────────────────────
async def transfer_ownership(
    db: AsyncSession,
    upin: str,
    from_owner_id: Optional[str],
    to_owner_id: str,
    share_ratio,
    transfer_type,
    price: Optional[Decimal] = None,
    reference: Optional[str] = None,
) -> dict:
    """
    Move `share_ratio` of `upin` from one owner to another. A missing
    `from_owner_id` allocates from the unowned remainder (old possession).
    """
    share = check_share(share_ratio)
    try:
        transfer_type = TransferType(transfer_type)
    except ValueError:
        raise InvalidPayload(f"Unknown transfer type {transfer_type!r}")
    if transfer_type not in USER_TRANSFER_TYPES:
        raise InvalidPayload(f"{transfer_type.value} transfers are recorded by the system only")
    if from_owner_id and from_owner_id == to_owner_id:
        raise InvalidPayload("Cannot transfer a share to the same owner")

    await _active_parcel(db, upin)
    await _existing_owner(db, to_owner_id)

    edges = await store.list_active_ownership(db, upin)
    by_owner = {e.owner_id: e for e in edges}
    source = None
    if from_owner_id:
        source = by_owner.get(from_owner_id)
        held = Decimal(source.share_ratio) if source else ZERO
        if held < share:
            logger.warning(f"Insufficient share on {upin}: {from_owner_id} holds {held}, asked {share}")
            raise InsufficientShare(
                f"Owner {from_owner_id} holds {held} of {upin}, cannot transfer {share}",
                details={"held": str(held), "requested": str(share)},
            )
    else:
        total = _total(edges)
        if total + share > ONE:
            logger.warning(f"Over-allocation on {upin}: {total} + {share} > 1")
            raise OverAllocation(
                f"Parcel {upin} has {ONE - total} unallocated, cannot transfer {share}",
                details={"allocated": str(total), "requested": str(share)},
            )

    if source is not None:
        remaining = Decimal(source.share_ratio) - share
        if remaining == ZERO:
            await store.remove_ownership(db, source)
        else:
            await store.update_ownership(db, source, remaining)

    target = by_owner.get(to_owner_id)
    if target is not None:
        target = await store.update_ownership(db, target, Decimal(target.share_ratio) + share)
    else:
        target = await store.insert_ownership(db, upin, to_owner_id, share, date.today())

    entry = await store.append_transfer_history(
        db, upin, transfer_type.value,
        from_owner_id=from_owner_id,
        to_owner_id=to_owner_id,
        share_transferred=share,
        price=price,
        reference=reference,
    )
    logger.info(f"Transfer {transfer_type.value} on {upin}: {from_owner_id or 'unallocated'} → {to_owner_id} ({share})")
    return {
        "upin": upin,
        "history_id": entry.history_id,
        "from_owner_id": from_owner_id,
        "to_owner_id": to_owner_id,
        "share_transferred": str(share),
        "target_share": str(target.share_ratio),
        "transfer_type": transfer_type.value,
    }


# ── Subdivision ───────────────────────────────────────────────────────────────
def subdivision_upins(parent_upin: str, children: Iterable) -> list:
    """Every UPIN a subdivision touches, for lock acquisition."""
    upins = [parent_upin]
    for child in children:
        upin = child.upin if isinstance(child, ChildParcelSpec) else (child or {}).get("upin")
        if upin:
            upins.append(upin)
    return upins


async def subdivide_parcel(db: AsyncSession, parent_upin: str, children: Iterable) -> dict:
    specs = parse_action_payload(ActionType.SUBDIVIDE_PARCEL, {"children": list(children)}).children
    if len(specs) < 2:
        raise InvalidPayload("A subdivision needs at least two child parcels")
    for spec in specs:
        if spec.total_area_m2 <= ZERO:
            raise InvalidArea(f"Child {spec.upin} has non-positive area {spec.total_area_m2}")

    upins = [s.upin for s in specs]
    if len(set(upins)) != len(upins) or parent_upin in upins:
        raise DuplicateChildUPIN("Child UPINs must be distinct from each other and from the parent")

    parent = await _active_parcel(db, parent_upin)
    for upin in upins:
        if await store.get_parcel(db, upin) is not None:
            raise DuplicateChildUPIN(f"UPIN {upin} already exists")

    file_numbers = [s.file_number for s in specs]
    if len(set(file_numbers)) != len(file_numbers):
        raise ParcelExists("Child file numbers must be distinct")
    for file_number in file_numbers:
        if await store.get_parcel_by_file_number(db, file_number) is not None:
            raise ParcelExists(f"File number {file_number} already exists")

    child_area = sum((s.total_area_m2 for s in specs), ZERO)
    parent_area = Decimal(parent.total_area_m2)
    if child_area > parent_area + AREA_TOLERANCE_M2:
        logger.warning(f"Subdivision of {parent_upin} rejected: {child_area} m² > {parent_area} m²")
        raise AreaExceeded(
            f"Children total {child_area} m², parent {parent_upin} is {parent_area} m²",
            details={"children_area": str(child_area), "parent_area": str(parent_area)},
        )

    edges = await store.list_active_ownership(db, parent_upin)
    created = []
    for spec in specs:
        overrides = spec.model_dump(exclude={"upin"})
        child = await store.create_child_parcel(db, parent, spec.upin, **overrides)
        for edge in edges:
            await store.insert_ownership(db, child.upin, edge.owner_id, Decimal(edge.share_ratio), edge.acquired_at)
        created.append(child)

    await store.retire_parcel(db, parent)
    entry = await store.append_transfer_history(
        db, parent_upin, TransferType.SUBDIVISION.value,
        reference=f"SUBDIVISION-{parent_upin}",
        event_snapshot={
            "children": [{"upin": c.upin, "total_area_m2": str(c.total_area_m2)} for c in created],
            "owners": [store.ownership_to_dict(e) for e in edges],
        },
    )
    logger.info(f"Parcel {parent_upin} subdivided into {', '.join(upins)}")
    return {
        "parent_upin": parent_upin,
        "history_id": entry.history_id,
        "children": [store.parcel_to_dict(c) for c in created],
    }


# ── Share correction ──────────────────────────────────────────────────────────
async def update_share(db: AsyncSession, parcel_owner_id: str, new_share_ratio) -> dict:
    share = check_share(new_share_ratio)
    edge = await store.get_ownership(db, parcel_owner_id)
    if edge is None:
        raise NotFound(f"Ownership {parcel_owner_id} not found")
    if not edge.is_active:
        raise InvalidState(f"Ownership {parcel_owner_id} is no longer active")

    await _active_parcel(db, edge.upin)
    old = Decimal(edge.share_ratio)
    total = await active_share_total(db, edge.upin)
    if total - old + share > ONE:
        logger.warning(f"Over-allocation on {edge.upin}: {total} - {old} + {share} > 1")
        raise OverAllocation(
            f"Parcel {edge.upin} would be allocated {total - old + share}",
            details={"allocated": str(total), "current": str(old), "requested": str(share)},
        )

    await store.update_ownership(db, edge, share)
    await store.append_transfer_history(
        db, edge.upin, TransferType.SHARE_ADJUSTMENT.value,
        to_owner_id=edge.owner_id,
        share_transferred=share,
        event_snapshot={"previous_share": str(old), "new_share": str(share)},
    )
    logger.info(f"Share of {edge.owner_id} on {edge.upin}: {old} → {share}")
    return store.ownership_to_dict(edge)
