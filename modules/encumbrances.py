"""
modules/encumbrances.py — Encumbrance Register
================================================
Mortgages, court freezes and government reservations recorded against a
parcel. An encumbrance is created ACTIVE, may be RELEASED once, and is never
deleted. Both mutations are reached through the approval router.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.actions import CreateEncumbrancePayload
from core.errors import ConflictError, InvalidState, NotFound
from db.models import Encumbrance, EncumbranceStatus, ParcelStatus, utcnow
from modules import store

logger = logging.getLogger("cadastre.encumbrances")


async def get_encumbrance(db: AsyncSession, encumbrance_id: str) -> Encumbrance:
    encumbrance = await db.get(Encumbrance, encumbrance_id)
    if encumbrance is None:
        raise NotFound(f"Encumbrance {encumbrance_id} not found")
    return encumbrance


async def create_encumbrance(
    db: AsyncSession,
    upin: str,
    payload: CreateEncumbrancePayload,
    created_by: Optional[str] = None,
) -> dict:
    parcel = await store.get_parcel(db, upin, for_update=True)
    if parcel is None:
        raise NotFound(f"Parcel {upin} not found")
    if parcel.status != ParcelStatus.ACTIVE.value:
        raise InvalidState(f"Parcel {upin} is {parcel.status}")

    if payload.reference_number:
        existing = await db.execute(
            select(Encumbrance).where(Encumbrance.reference_number == payload.reference_number)
        )
        if existing.scalars().first() is not None:
            raise ConflictError(f"Reference number {payload.reference_number} is already registered")

    encumbrance = Encumbrance(
        upin=upin,
        type=payload.type.value,
        issuing_entity=payload.issuing_entity,
        reference_number=payload.reference_number,
        registration_date=payload.registration_date or date.today(),
        status=EncumbranceStatus.ACTIVE.value,
        created_by=created_by,
    )
    db.add(encumbrance)
    await db.flush()
    logger.info(f"Encumbrance {encumbrance.type} registered on {upin} by {payload.issuing_entity}")
    return encumbrance_to_dict(encumbrance)


async def release_encumbrance(db: AsyncSession, encumbrance_id: str, reason: Optional[str] = None) -> dict:
    encumbrance = await get_encumbrance(db, encumbrance_id)
    if encumbrance.status != EncumbranceStatus.ACTIVE.value:
        raise InvalidState(f"Encumbrance {encumbrance_id} is already {encumbrance.status}")
    encumbrance.status = EncumbranceStatus.RELEASED.value
    encumbrance.released_at = utcnow()
    encumbrance.release_reason = reason
    await db.flush()
    logger.info(f"Encumbrance {encumbrance_id} on {encumbrance.upin} released")
    return encumbrance_to_dict(encumbrance)


async def list_encumbrances(db: AsyncSession, upin: str, active_only: bool = False) -> list:
    stmt = select(Encumbrance).where(Encumbrance.upin == upin)
    if active_only:
        stmt = stmt.where(Encumbrance.status == EncumbranceStatus.ACTIVE.value)
    result = await db.execute(stmt.order_by(Encumbrance.registration_date))
    return [encumbrance_to_dict(e) for e in result.scalars().all()]


def encumbrance_to_dict(e: Encumbrance) -> dict:
    return {
        "encumbrance_id": e.encumbrance_id,
        "upin": e.upin,
        "type": e.type,
        "issuing_entity": e.issuing_entity,
        "reference_number": e.reference_number,
        "status": e.status,
        "registration_date": e.registration_date.isoformat(),
        "released_at": e.released_at.isoformat() if e.released_at else None,
        "release_reason": e.release_reason,
    }
