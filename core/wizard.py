"""
core/wizard.py — Registration Wizard Steps, Payloads & State Machine
=====================================================================
Pure definitions, no database access:

    Step / STEP_ORDER        the ordered wizard steps
    available_steps()        which steps apply, recomputed from the payload
    ParcelStepData, OwnerStepData, LeaseStepData
                             typed payload per data step (never trust the client)
    SESSION_TRANSITIONS      the legal session status edges
    check_slots()            the read-only completeness check behind validate
"""

import json
import logging
from datetime import date
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Annotated, Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.documents import DocumentHandle
from core.errors import InvalidPayload, InvalidState
from db.models import SessionStatus, TenureType

logger = logging.getLogger("cadastre.wizard")

SHARE_QUANTUM = Decimal("0.000001")
UPIN_REGEX = r"^[A-Za-z0-9\-_]+$"

ShareRatio = Annotated[Decimal, Field(gt=0, le=1, decimal_places=6)]


def not_in_future(value: Optional[date]) -> Optional[date]:
    if value is not None and value > date.today():
        raise ValueError(f"{value.isoformat()} lies in the future")
    return value


# ── Steps ─────────────────────────────────────────────────────────────────────
class Step(str, Enum):
    PARCEL = "parcel"
    PARCEL_DOCS = "parcel-docs"
    OWNER = "owner"
    OWNER_DOCS = "owner-docs"
    LEASE = "lease"
    LEASE_DOCS = "lease-docs"
    VALIDATION = "validation"


STEP_ORDER = [
    Step.PARCEL, Step.PARCEL_DOCS, Step.OWNER, Step.OWNER_DOCS,
    Step.LEASE, Step.LEASE_DOCS, Step.VALIDATION,
]

DOC_STEPS = {Step.PARCEL_DOCS, Step.OWNER_DOCS, Step.LEASE_DOCS}


# ── Payload schemas ───────────────────────────────────────────────────────────
class ParcelStepData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    upin: str = Field(min_length=1, max_length=64, pattern=UPIN_REGEX)
    file_number: str = Field(min_length=1, max_length=100)
    tabia: str = Field(min_length=1, max_length=100)
    ketena: str = ""
    block: str = ""
    total_area_m2: Decimal = Field(gt=0, decimal_places=2)
    land_use: str = Field(min_length=1, max_length=100)
    land_grade: Decimal = Field(default=Decimal("1"), ge=0, decimal_places=2)
    tenure_type: TenureType = TenureType.OLD_POSSESSION
    boundary_coords: Optional[Any] = None
    boundary_north: Optional[str] = None
    boundary_east: Optional[str] = None
    boundary_south: Optional[str] = None
    boundary_west: Optional[str] = None


class OwnerEntry(BaseModel):
    """Either a reference to an existing owner or the details of a new one."""
    model_config = ConfigDict(str_strip_whitespace=True)

    owner_id: Optional[str] = None
    full_name: Optional[str] = None
    national_id: Optional[str] = None
    phone_number: Optional[str] = None
    tin_number: Optional[str] = None
    share_ratio: Optional[ShareRatio] = None
    acquired_at: Optional[date] = None

    @field_validator("acquired_at")
    @classmethod
    def _acquired_in_past(cls, value):
        return not_in_future(value)

    @model_validator(mode="after")
    def _existing_or_complete(self):
        if self.owner_id:
            return self
        missing = [f for f in ("full_name", "national_id", "phone_number") if not getattr(self, f)]
        if missing:
            raise ValueError(f"new owner requires {', '.join(missing)}")
        return self

    @property
    def is_existing(self) -> bool:
        return bool(self.owner_id)


class OwnerStepData(BaseModel):
    owners: List[OwnerEntry] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_owner(cls, data):
        # a bare owner object or a bare list are accepted as shorthand
        if isinstance(data, list):
            return {"owners": data}
        if isinstance(data, dict) and "owners" not in data:
            return {"owners": [data]}
        return data

    @model_validator(mode="after")
    def _consistent_owners(self):
        keys = [o.owner_id or f"nid:{o.national_id}" for o in self.owners]
        if len(set(keys)) != len(keys):
            raise ValueError("the same owner is listed more than once")
        given = [o.share_ratio for o in self.owners if o.share_ratio is not None]
        if given and len(given) != len(self.owners):
            raise ValueError("share_ratio must be given for every owner or for none")
        if sum(given, Decimal("0")) > 1:
            raise ValueError("owner shares add up to more than 1")
        return self

    def resolved_shares(self) -> List[Decimal]:
        """Shares as given, or an equal split rounded down to 6 places."""
        if self.owners[0].share_ratio is not None:
            return [o.share_ratio for o in self.owners]
        each = (Decimal("1") / len(self.owners)).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)
        return [each] * len(self.owners)

    @property
    def all_existing(self) -> bool:
        return all(o.is_existing for o in self.owners)


class LeaseStepData(BaseModel):
    total_lease_amount: Decimal = Field(gt=0, decimal_places=2)
    down_payment_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    other_payment: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    price_per_m2: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    lease_period_years: int = Field(gt=0, le=99)
    payment_term_years: int = Field(gt=0)
    legal_framework: str = ""
    contract_date: date
    start_date: date

    @model_validator(mode="after")
    def _payments_fit(self):
        if self.down_payment_amount + self.other_payment >= self.total_lease_amount:
            raise ValueError("down payment plus other payment must be less than total lease amount")
        if self.payment_term_years > self.lease_period_years:
            raise ValueError("payment term cannot exceed the lease period")
        return self


STEP_SLOTS = {
    Step.PARCEL: ("parcel_data", ParcelStepData),
    Step.OWNER: ("owner_data", OwnerStepData),
    Step.LEASE: ("lease_data", LeaseStepData),
}


class RegistrationPayload(BaseModel):
    """The aggregate a session hands to the approval router (and snapshots)."""
    parcel: ParcelStepData
    owners: OwnerStepData
    lease: Optional[LeaseStepData] = None
    documents: dict[str, List[DocumentHandle]] = Field(default_factory=dict)


def _raise_invalid(label: str, exc: ValidationError):
    raise InvalidPayload(f"Invalid {label} data", details=json.loads(exc.json(include_url=False)))


def parse_step(step: str) -> Step:
    try:
        return Step(step)
    except ValueError:
        raise InvalidPayload(f"Unknown step '{step}'")


def parse_step_payload(step: Step, payload: Any):
    """Validate a client payload against its step's schema. Doc/validation steps carry none."""
    if step not in STEP_SLOTS:
        return None
    _, schema = STEP_SLOTS[step]
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        _raise_invalid(step.value, exc)


def load_slot(schema, data: Optional[dict]):
    """Rebuild a typed payload from a stored JSON slot."""
    if data is None:
        return None
    return schema.model_validate(data)


# ── Step availability ─────────────────────────────────────────────────────────
def available_steps(session) -> List[Step]:
    """
    Steps that apply to this session, in order. Recomputed from the payload:
    owner-docs drops out when every owner already exists, lease and
    lease-docs drop out unless the parcel is held under LEASE tenure.
    """
    parcel = session.parcel_data or {}
    owners = session.owner_data
    is_lease = parcel.get("tenure_type") == TenureType.LEASE.value

    skip = set()
    if owners and owners.get("owners") and all(o.get("owner_id") for o in owners["owners"]):
        skip.add(Step.OWNER_DOCS)
    if not is_lease:
        skip.update({Step.LEASE, Step.LEASE_DOCS})
    return [s for s in STEP_ORDER if s not in skip]


# ── Completeness ──────────────────────────────────────────────────────────────
def check_slots(session) -> Tuple[bool, List[str]]:
    """Read-only completeness check. Missing data is reported, never raised."""
    missing = []
    if not session.parcel_data:
        missing.append("Parcel Information")
    if not session.owner_data:
        missing.append("Owner Information")
    parcel = session.parcel_data or {}
    if parcel.get("tenure_type") == TenureType.LEASE.value and not session.lease_data:
        missing.append("Lease Information")
    return len(missing) == 0, missing


# ── Session state machine ─────────────────────────────────────────────────────
SESSION_TRANSITIONS = {
    SessionStatus.DRAFT: {SessionStatus.PENDING_APPROVAL, SessionStatus.MERGED, SessionStatus.EXPIRED},
    SessionStatus.PENDING_APPROVAL: {SessionStatus.APPROVED, SessionStatus.REJECTED},
    SessionStatus.APPROVED: {SessionStatus.MERGED},
    SessionStatus.REJECTED: {SessionStatus.DRAFT, SessionStatus.PENDING_APPROVAL, SessionStatus.MERGED},
    SessionStatus.MERGED: set(),
    SessionStatus.EXPIRED: set(),
}

EDITABLE_STATUSES = {SessionStatus.DRAFT, SessionStatus.REJECTED}
SUBMITTABLE_STATUSES = {SessionStatus.DRAFT, SessionStatus.REJECTED}


def can_transition(current: str, target: str) -> bool:
    return SessionStatus(target) in SESSION_TRANSITIONS[SessionStatus(current)]


def transition(session, target: SessionStatus):
    """Move a session along a documented edge or raise InvalidState."""
    if not can_transition(session.status, target):
        raise InvalidState(
            f"Session {session.session_id} cannot move from {session.status} to {SessionStatus(target).value}"
        )
    logger.info(f"Session {session.session_id}: {session.status} → {SessionStatus(target).value}")
    session.status = SessionStatus(target).value
