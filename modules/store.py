"""
modules/store.py — Entity Store
================================
Plain data access for the canonical cadastre rows. No business rules live
here: callers (the ownership engine, the approval router) decide what is
allowed and call these helpers inside their own transaction.

Reads that precede an ownership mutation pass `for_update=True`, which
becomes SELECT ... FOR UPDATE on databases that support row locks.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    Owner, Parcel, ParcelOwner, ParcelStatus, TransferHistory, utcnow,
)

logger = logging.getLogger("cadastre.store")

PARCEL_FIELDS = (
    "file_number", "sub_city_id", "tabia", "ketena", "block", "total_area_m2",
    "land_use", "land_grade", "tenure_type", "boundary_coords",
    "boundary_north", "boundary_east", "boundary_south", "boundary_west",
)
OWNER_FIELDS = ("full_name", "phone_number", "tin_number", "sub_city_id")


# ── Parcels ───────────────────────────────────────────────────────────────────
async def get_parcel(db: AsyncSession, upin: str, for_update: bool = False) -> Optional[Parcel]:
    stmt = select(Parcel).where(Parcel.upin == upin)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalars().first()


async def get_parcel_by_file_number(db: AsyncSession, file_number: str) -> Optional[Parcel]:
    result = await db.execute(select(Parcel).where(Parcel.file_number == file_number))
    return result.scalars().first()


async def upsert_parcel(db: AsyncSession, upin: str, **fields) -> Parcel:
    """Create the parcel, or update its mutable attributes. The UPIN never changes."""
    parcel = await get_parcel(db, upin, for_update=True)
    values = {k: v for k, v in fields.items() if k in PARCEL_FIELDS}
    if parcel is None:
        parcel = Parcel(upin=upin, **values)
        db.add(parcel)
    else:
        for key, value in values.items():
            setattr(parcel, key, value)
    await db.flush()
    return parcel


async def create_child_parcel(db: AsyncSession, parent: Parcel, upin: str, **overrides) -> Parcel:
    """New ACTIVE parcel carved out of `parent`; unset attributes come from the parent."""
    values = {}
    for key in PARCEL_FIELDS:
        override = overrides.get(key)
        values[key] = override if override is not None else getattr(parent, key)
    child = Parcel(upin=upin, parent_upin=parent.upin, status=ParcelStatus.ACTIVE.value, **values)
    db.add(child)
    await db.flush()
    return child


async def retire_parcel(db: AsyncSession, parcel: Parcel) -> Parcel:
    parcel.status = ParcelStatus.RETIRED.value
    await db.flush()
    logger.info(f"Parcel {parcel.upin} retired")
    return parcel


async def list_child_parcels(db: AsyncSession, parent_upin: str) -> list:
    result = await db.execute(
        select(Parcel).where(Parcel.parent_upin == parent_upin).order_by(Parcel.upin)
    )
    return list(result.scalars().all())


# ── Owners ────────────────────────────────────────────────────────────────────
async def get_owner(db: AsyncSession, owner_id: str) -> Optional[Owner]:
    return await db.get(Owner, owner_id)


async def get_owner_by_national_id(db: AsyncSession, national_id: str) -> Optional[Owner]:
    result = await db.execute(select(Owner).where(Owner.national_id == national_id))
    return result.scalars().first()


async def upsert_owner(db: AsyncSession, national_id: str, **fields) -> Owner:
    """Owners are keyed by national id: reuse the existing row, refreshing contact details."""
    owner = await get_owner_by_national_id(db, national_id)
    values = {k: v for k, v in fields.items() if k in OWNER_FIELDS and v is not None}
    if owner is None:
        owner = Owner(national_id=national_id, **values)
        db.add(owner)
    else:
        for key, value in values.items():
            setattr(owner, key, value)
    await db.flush()
    return owner


# ── Ownership edges ───────────────────────────────────────────────────────────
async def list_active_ownership(db: AsyncSession, upin: str) -> list:
    result = await db.execute(
        select(ParcelOwner)
        .where(ParcelOwner.upin == upin, ParcelOwner.is_active == True)  # noqa: E712
        .order_by(ParcelOwner.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_ownership(db: AsyncSession, parcel_owner_id: str) -> Optional[ParcelOwner]:
    return await db.get(ParcelOwner, parcel_owner_id, populate_existing=True)


async def insert_ownership(
    db: AsyncSession,
    upin: str,
    owner_id: str,
    share_ratio: Decimal,
    acquired_at: date,
) -> ParcelOwner:
    edge = ParcelOwner(
        upin=upin,
        owner_id=owner_id,
        share_ratio=share_ratio,
        acquired_at=acquired_at,
        is_active=True,
    )
    db.add(edge)
    await db.flush()
    return edge


async def update_ownership(db: AsyncSession, edge: ParcelOwner, share_ratio: Decimal) -> ParcelOwner:
    edge.share_ratio = share_ratio
    await db.flush()
    return edge


async def remove_ownership(db: AsyncSession, edge: ParcelOwner) -> ParcelOwner:
    """Edges are deactivated, not deleted, so past ownership stays queryable."""
    edge.is_active = False
    edge.retired_at = utcnow()
    await db.flush()
    return edge


# ── Transfer history ──────────────────────────────────────────────────────────
async def append_transfer_history(
    db: AsyncSession,
    upin: str,
    transfer_type: str,
    to_owner_id: Optional[str] = None,
    from_owner_id: Optional[str] = None,
    share_transferred: Optional[Decimal] = None,
    price: Optional[Decimal] = None,
    reference: Optional[str] = None,
    event_snapshot: Optional[dict] = None,
) -> TransferHistory:
    entry = TransferHistory(
        upin=upin,
        transfer_type=transfer_type,
        from_owner_id=from_owner_id,
        to_owner_id=to_owner_id,
        share_transferred=share_transferred,
        price=price,
        reference=reference,
        event_snapshot=event_snapshot,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_transfer_history(db: AsyncSession, upin: str) -> list:
    result = await db.execute(
        select(TransferHistory)
        .where(TransferHistory.upin == upin)
        .order_by(TransferHistory.created_at)
    )
    return list(result.scalars().all())


# ── Serializers ───────────────────────────────────────────────────────────────
def parcel_to_dict(p: Parcel) -> dict:
    return {
        "upin": p.upin,
        "file_number": p.file_number,
        "sub_city_id": p.sub_city_id,
        "tabia": p.tabia,
        "ketena": p.ketena,
        "block": p.block,
        "total_area_m2": str(p.total_area_m2),
        "land_use": p.land_use,
        "land_grade": str(p.land_grade) if p.land_grade is not None else None,
        "tenure_type": p.tenure_type,
        "status": p.status,
        "parent_upin": p.parent_upin,
        "boundary_coords": p.boundary_coords,
        "boundary_north": p.boundary_north,
        "boundary_east": p.boundary_east,
        "boundary_south": p.boundary_south,
        "boundary_west": p.boundary_west,
    }


def ownership_to_dict(edge: ParcelOwner) -> dict:
    return {
        "parcel_owner_id": edge.parcel_owner_id,
        "upin": edge.upin,
        "owner_id": edge.owner_id,
        "share_ratio": str(edge.share_ratio),
        "acquired_at": edge.acquired_at.isoformat(),
        "is_active": edge.is_active,
    }


def history_to_dict(h: TransferHistory) -> dict:
    return {
        "history_id": h.history_id,
        "upin": h.upin,
        "transfer_type": h.transfer_type,
        "from_owner_id": h.from_owner_id,
        "to_owner_id": h.to_owner_id,
        "share_transferred": str(h.share_transferred) if h.share_transferred is not None else None,
        "price": str(h.price) if h.price is not None else None,
        "reference": h.reference,
        "created_at": h.created_at.isoformat(),
    }
