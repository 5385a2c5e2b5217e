"""Tests for the encumbrance register (modules/encumbrances.py)."""

from datetime import date

import pytest

from conftest import seed_parcel
from core.actions import CreateEncumbrancePayload
from core.errors import ConflictError, InvalidState, NotFound
from db.models import Encumbrance
from modules import encumbrances


def mortgage(reference="MTG-1"):
    return CreateEncumbrancePayload(
        type="MORTGAGE", issuing_entity="Commercial Bank", reference_number=reference,
        registration_date=date(2024, 3, 1),
    )


class TestEncumbrances:

    @pytest.mark.asyncio
    async def test_create_and_list(self, db):
        await seed_parcel(db, "P-1")
        created = await encumbrances.create_encumbrance(db, "P-1", mortgage(), created_by="user-city-1")
        await db.commit()

        assert created["status"] == "ACTIVE"
        assert created["registration_date"] == "2024-03-01"
        listed = await encumbrances.list_encumbrances(db, "P-1")
        assert [e["encumbrance_id"] for e in listed] == [created["encumbrance_id"]]

    @pytest.mark.asyncio
    async def test_unknown_parcel(self, db):
        with pytest.raises(NotFound):
            await encumbrances.create_encumbrance(db, "NOPE", mortgage())

    @pytest.mark.asyncio
    async def test_reference_number_is_unique(self, db):
        await seed_parcel(db, "P-1")
        await encumbrances.create_encumbrance(db, "P-1", mortgage("MTG-9"))
        await db.commit()
        with pytest.raises(ConflictError):
            await encumbrances.create_encumbrance(db, "P-1", mortgage("MTG-9"))

    @pytest.mark.asyncio
    async def test_release_once(self, db):
        await seed_parcel(db, "P-1")
        created = await encumbrances.create_encumbrance(db, "P-1", mortgage())
        await db.commit()

        released = await encumbrances.release_encumbrance(db, created["encumbrance_id"], "loan repaid")
        await db.commit()
        assert released["status"] == "RELEASED"
        assert released["release_reason"] == "loan repaid"
        assert await encumbrances.list_encumbrances(db, "P-1", active_only=True) == []

        with pytest.raises(InvalidState):
            await encumbrances.release_encumbrance(db, created["encumbrance_id"])

    @pytest.mark.asyncio
    async def test_never_deleted(self, db):
        await seed_parcel(db, "P-1")
        created = await encumbrances.create_encumbrance(db, "P-1", mortgage())
        await db.commit()

        row = await db.get(Encumbrance, created["encumbrance_id"])
        await db.delete(row)
        with pytest.raises(InvalidState):
            await db.flush()
