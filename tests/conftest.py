"""Shared fixtures for the cadastre registry test suite."""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import Actor
from core.documents import document_gateway
from core.policy import CITY_ADMIN, SUBCITY_ADMIN, SUBCITY_AUDITOR, SUBCITY_NORMAL
from db.session import build_engine, init_db
from modules import store


# ═══════════════════════════════════════════════════
# Database (fresh SQLite file per test)
# ═══════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cadastre_test.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def upload_root(tmp_path, monkeypatch):
    """Keep stored documents inside the test's tmp dir."""
    root = tmp_path / "uploads"
    monkeypatch.setattr(document_gateway, "root", root)
    return root


# ═══════════════════════════════════════════════════
# Actors
# ═══════════════════════════════════════════════════

@pytest.fixture
def maker():
    return Actor(user_id="user-normal-1", role=SUBCITY_NORMAL, sub_city_id="SC-01")


@pytest.fixture
def other_maker():
    return Actor(user_id="user-normal-2", role=SUBCITY_NORMAL, sub_city_id="SC-01")


@pytest.fixture
def auditor():
    return Actor(user_id="user-auditor-1", role=SUBCITY_AUDITOR, sub_city_id="SC-01")


@pytest.fixture
def subcity_admin():
    return Actor(user_id="user-admin-1", role=SUBCITY_ADMIN, sub_city_id="SC-01")


@pytest.fixture
def foreign_admin():
    return Actor(user_id="user-admin-9", role=SUBCITY_ADMIN, sub_city_id="SC-09")


@pytest.fixture
def city_admin():
    return Actor(user_id="user-city-1", role=CITY_ADMIN)


# ═══════════════════════════════════════════════════
# Step payloads (dicts shaped like client requests)
# ═══════════════════════════════════════════════════

def parcel_step(upin="UPIN-001", file_number="FN-001", area="1000.00", tenure="OLD_POSSESSION"):
    return {
        "upin": upin,
        "file_number": file_number,
        "tabia": "Tabia 03",
        "ketena": "K-2",
        "block": "B-14",
        "total_area_m2": area,
        "land_use": "RESIDENTIAL",
        "land_grade": "1.00",
        "tenure_type": tenure,
        "boundary_north": "Road",
        "boundary_south": "Plot 28",
    }


def owner_step(*owners):
    return {"owners": list(owners) or [new_owner()]}


def new_owner(national_id="NID-1001", name="Abebe Kebede", share=None):
    entry = {"full_name": name, "national_id": national_id, "phone_number": "+251911000000"}
    if share is not None:
        entry["share_ratio"] = share
    return entry


def lease_step():
    return {
        "total_lease_amount": "500000.00",
        "down_payment_amount": "50000.00",
        "other_payment": "0",
        "price_per_m2": "500.00",
        "lease_period_years": 60,
        "payment_term_years": 30,
        "legal_framework": "Proclamation 721/2011",
        "contract_date": "2024-01-10",
        "start_date": "2024-02-01",
    }


@pytest.fixture
def parcel_payload():
    return parcel_step()


@pytest.fixture
def owner_payload():
    return owner_step()


# ═══════════════════════════════════════════════════
# Seeded canonical rows
# ═══════════════════════════════════════════════════

async def seed_parcel(db, upin="P-100", area="1000.00", file_number=None, sub_city_id="SC-01"):
    parcel = await store.upsert_parcel(
        db, upin,
        file_number=file_number or f"FN-{upin}",
        sub_city_id=sub_city_id,
        tabia="Tabia 01",
        total_area_m2=Decimal(area),
        land_use="RESIDENTIAL",
    )
    await db.commit()
    return parcel


async def seed_owner(db, national_id="NID-X", name="Owner X"):
    owner = await store.upsert_owner(db, national_id, full_name=name, phone_number="+251900000000")
    await db.commit()
    return owner


async def seed_edge(db, upin, owner_id, share):
    edge = await store.insert_ownership(db, upin, owner_id, Decimal(share), date(2020, 1, 1))
    await db.commit()
    return edge
