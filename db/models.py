"""
db/models.py — Database Table Definitions
==========================================
Each class = one table.
Canonical cadastre rows (parcels, owners, ownership edges, history,
encumbrances, leases, documents) live next to the workflow rows
(registration sessions, approval requests) that stage changes to them.
"""

import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, DateTime, Date, Boolean, Text, Integer, Numeric, ForeignKey, JSON,
    CheckConstraint, Index, event, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.errors import InvalidPayload, InvalidState
from db.session import Base


def new_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from the DB."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


UPIN_PATTERN = re.compile(r"^[A-Za-z0-9\-_]+$")


# ── Enumerations ──────────────────────────────────────────────────────────────
class TenureType(str, Enum):
    OLD_POSSESSION = "OLD_POSSESSION"
    LEASE = "LEASE"


class ParcelStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class TransferType(str, Enum):
    SALE = "SALE"
    GIFT = "GIFT"
    HEREDITY = "HEREDITY"
    CONVERSION = "CONVERSION"
    # written by the system only
    INITIAL_ALLOCATION = "INITIAL_ALLOCATION"
    SUBDIVISION = "SUBDIVISION"
    SHARE_ADJUSTMENT = "SHARE_ADJUSTMENT"


USER_TRANSFER_TYPES = {
    TransferType.SALE, TransferType.GIFT, TransferType.HEREDITY, TransferType.CONVERSION,
}


class EncumbranceType(str, Enum):
    MORTGAGE = "MORTGAGE"
    COURT_FREEZE = "COURT_FREEZE"
    GOVT_RESERVATION = "GOVT_RESERVATION"


class EncumbranceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class SessionStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MERGED = "MERGED"
    EXPIRED = "EXPIRED"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DocumentCategory(str, Enum):
    PARCEL = "PARCEL"
    OWNER = "OWNER"
    LEASE = "LEASE"


# ── 1. Parcels ────────────────────────────────────────────────────────────────
class Parcel(Base):
    __tablename__ = "land_parcels"
    __table_args__ = (
        CheckConstraint("total_area_m2 > 0", name="ck_parcel_area_positive"),
    )

    upin: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    sub_city_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    tabia: Mapped[str] = mapped_column(String(100), default="")
    ketena: Mapped[str] = mapped_column(String(100), default="")
    block: Mapped[str] = mapped_column(String(100), default="")
    total_area_m2: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    land_use: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    land_grade: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("1.00"))
    tenure_type: Mapped[str] = mapped_column(String(30), default=TenureType.OLD_POSSESSION.value)
    status: Mapped[str] = mapped_column(String(20), default=ParcelStatus.ACTIVE.value)
    parent_upin: Mapped[Optional[str]] = mapped_column(ForeignKey("land_parcels.upin"), nullable=True)
    boundary_coords: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    boundary_north: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    boundary_east: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    boundary_south: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    boundary_west: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    owners: Mapped[list["ParcelOwner"]] = relationship(back_populates="parcel")
    encumbrances: Mapped[list["Encumbrance"]] = relationship(back_populates="parcel")

    @validates("upin")
    def _check_upin(self, key, value):
        if self.upin is not None and value != self.upin:
            raise InvalidState(f"UPIN of parcel {self.upin} cannot be changed")
        if not value or not UPIN_PATTERN.match(value):
            raise InvalidPayload(f"Invalid UPIN '{value}'")
        return value

    def __repr__(self) -> str:
        return f"<Parcel {self.upin} {self.status}>"


# ── 2. Owners ─────────────────────────────────────────────────────────────────
class Owner(Base):
    __tablename__ = "owners"

    owner_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    national_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    tin_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sub_city_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    parcels: Mapped[list["ParcelOwner"]] = relationship(back_populates="owner")


# ── 3. Ownership edges ────────────────────────────────────────────────────────
class ParcelOwner(Base):
    __tablename__ = "parcel_owners"
    __table_args__ = (
        CheckConstraint("share_ratio > 0 AND share_ratio <= 1", name="ck_share_ratio_range"),
        Index("ix_parcel_owners_upin_active", "upin", "is_active"),
    )

    parcel_owner_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    upin: Mapped[str] = mapped_column(ForeignKey("land_parcels.upin"), nullable=False)
    owner_id: Mapped[str] = mapped_column(ForeignKey("owners.owner_id"), nullable=False)
    share_ratio: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False)
    acquired_at: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    retired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    parcel: Mapped["Parcel"] = relationship(back_populates="owners")
    owner: Mapped["Owner"] = relationship(back_populates="parcels")


# ── 4. Transfer history (append-only) ─────────────────────────────────────────
class TransferHistory(Base):
    __tablename__ = "transfer_history"

    history_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    upin: Mapped[str] = mapped_column(ForeignKey("land_parcels.upin"), nullable=False, index=True)
    from_owner_id: Mapped[Optional[str]] = mapped_column(ForeignKey("owners.owner_id"), nullable=True)
    to_owner_id: Mapped[Optional[str]] = mapped_column(ForeignKey("owners.owner_id"), nullable=True)
    share_transferred: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 6), nullable=True)
    transfer_type: Mapped[str] = mapped_column(String(30), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    event_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 5. Encumbrances (never deleted) ───────────────────────────────────────────
class Encumbrance(Base):
    __tablename__ = "encumbrances"

    encumbrance_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    upin: Mapped[str] = mapped_column(ForeignKey("land_parcels.upin"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    issuing_entity: Mapped[str] = mapped_column(String(255), nullable=False)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=EncumbranceStatus.ACTIVE.value)
    registration_date: Mapped[date] = mapped_column(Date, nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    release_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    parcel: Mapped["Parcel"] = relationship(back_populates="encumbrances")


# ── 6. Lease agreements ───────────────────────────────────────────────────────
class LeaseAgreement(Base):
    __tablename__ = "lease_agreements"

    lease_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    upin: Mapped[str] = mapped_column(ForeignKey("land_parcels.upin"), nullable=False, index=True)
    total_lease_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    down_payment_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    other_payment: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    price_per_m2: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    lease_period_years: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_term_years: Mapped[int] = mapped_column(Integer, nullable=False)
    legal_framework: Mapped[str] = mapped_column(String(255), default="")
    contract_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 7. Permanent documents ────────────────────────────────────────────────────
class Document(Base):
    __tablename__ = "documents"

    document_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    upin: Mapped[str] = mapped_column(ForeignKey("land_parcels.upin"), nullable=False, index=True)
    lease_id: Mapped[Optional[str]] = mapped_column(ForeignKey("lease_agreements.lease_id"), nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    file_url: Mapped[str] = mapped_column(String(512), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 8. Registration sessions (wizard drafts) ──────────────────────────────────
class RegistrationSession(Base):
    __tablename__ = "registration_sessions"
    __table_args__ = (
        Index(
            "uq_registration_sessions_one_draft_per_user", "user_id",
            unique=True,
            sqlite_where=text("status = 'DRAFT'"),
            postgresql_where=text("status = 'DRAFT'"),
        ),
    )

    session_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_role: Mapped[str] = mapped_column(String(50), nullable=False)
    sub_city_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(30), default=SessionStatus.DRAFT.value)
    current_step: Mapped[str] = mapped_column(String(30), default="parcel")
    parcel_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    owner_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    lease_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    approval_request_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    merged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # bumped on every UPDATE; a write from a stale copy matches no row
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    documents: Mapped[list["SessionDocument"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", lazy="selectin",
        order_by="SessionDocument.uploaded_at",
    )

    __mapper_args__ = {"version_id_col": version}


class SessionDocument(Base):
    __tablename__ = "session_documents"

    document_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("registration_sessions.session_id", ondelete="CASCADE"), nullable=False, index=True
    )
    step: Mapped[str] = mapped_column(String(30), nullable=False)
    file_url: Mapped[str] = mapped_column(String(512), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped["RegistrationSession"] = relationship(back_populates="documents")


# ── 9. Approval requests (maker-checker) ──────────────────────────────────────
class ApprovalRequest(Base):
    __tablename__ = "approval_requests"
    __table_args__ = (
        Index(
            "uq_approval_requests_one_pending_per_session", "session_id",
            unique=True,
            sqlite_where=text("status = 'PENDING' AND session_id IS NOT NULL"),
            postgresql_where=text("status = 'PENDING' AND session_id IS NOT NULL"),
        ),
        Index("ix_approval_requests_entity", "entity_type", "entity_id", "status"),
    )

    request_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("registration_sessions.session_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default=RequestStatus.PENDING.value)
    maker_id: Mapped[str] = mapped_column(String(64), nullable=False)
    maker_role: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    sub_city_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    request_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    logs: Mapped[list["ApprovalLog"]] = relationship(
        back_populates="request", lazy="selectin", order_by="ApprovalLog.created_at",
    )


class ApprovalLog(Base):
    __tablename__ = "approval_logs"

    log_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    request_id: Mapped[str] = mapped_column(ForeignKey("approval_requests.request_id"), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)     # CREATE | APPROVE | REJECT
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    performed_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    request: Mapped["ApprovalRequest"] = relationship(back_populates="logs")


# ── 10. Audit Log ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    actor_id: Mapped[str] = mapped_column(String(64))          # who acted
    actor_role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    action: Mapped[str] = mapped_column(String(100))           # CREATE | UPDATE | TRANSFER | SUBDIVIDE ...
    entity_type: Mapped[str] = mapped_column(String(100))      # land_parcels | parcel_owners | ...
    entity_id: Mapped[str] = mapped_column(String(255))
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── Append-only guards ────────────────────────────────────────────────────────
@event.listens_for(TransferHistory, "before_update")
def _history_is_immutable(mapper, connection, target):
    raise InvalidState(f"Transfer history {target.history_id} is immutable")


@event.listens_for(TransferHistory, "before_delete")
def _history_is_never_deleted(mapper, connection, target):
    raise InvalidState(f"Transfer history {target.history_id} cannot be deleted")


@event.listens_for(Encumbrance, "before_delete")
def _encumbrance_is_never_deleted(mapper, connection, target):
    raise InvalidState(f"Encumbrance {target.encumbrance_id} cannot be deleted; release it instead")
