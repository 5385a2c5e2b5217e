"""
core/actions.py — Direct Action Payloads
=========================================
Typed request bodies for the mutating actions that bypass the wizard.
The approval router validates a payload against its schema before it either
executes it or snapshots it into an ApprovalRequest, and validates the
snapshot again on approval.
"""

import json
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors import InvalidPayload
from core.policy import ActionType
from core.wizard import ShareRatio, UPIN_REGEX, not_in_future
from db.models import EncumbranceType, TransferType, USER_TRANSFER_TYPES


class AddOwnerPayload(BaseModel):
    owner_id: str = Field(min_length=1)
    share_ratio: ShareRatio
    acquired_at: Optional[date] = None

    @field_validator("acquired_at")
    @classmethod
    def _acquired_in_past(cls, value):
        return not_in_future(value)


class TransferPayload(BaseModel):
    from_owner_id: Optional[str] = None
    to_owner_id: str = Field(min_length=1)
    share_ratio: ShareRatio
    transfer_type: TransferType
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    reference: Optional[str] = Field(default=None, max_length=100)

    @field_validator("transfer_type")
    @classmethod
    def _user_transfer_type(cls, value):
        if value not in USER_TRANSFER_TYPES:
            raise ValueError(f"{value.value} transfers are recorded by the system only")
        return value


class ChildParcelSpec(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    upin: str = Field(min_length=1, max_length=64, pattern=UPIN_REGEX)
    file_number: str = Field(min_length=1, max_length=100)
    total_area_m2: Decimal = Field(decimal_places=2)
    land_use: Optional[str] = None
    land_grade: Optional[Decimal] = None
    boundary_coords: Optional[Any] = None
    boundary_north: Optional[str] = None
    boundary_east: Optional[str] = None
    boundary_south: Optional[str] = None
    boundary_west: Optional[str] = None


class SubdividePayload(BaseModel):
    # count and area checks belong to the ownership engine so they
    # raise the same typed errors on every path
    children: List[ChildParcelSpec]


class UpdateSharePayload(BaseModel):
    parcel_owner_id: str = Field(min_length=1)
    share_ratio: ShareRatio


class CreateEncumbrancePayload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    type: EncumbranceType
    issuing_entity: str = Field(min_length=1, max_length=255)
    reference_number: Optional[str] = Field(default=None, max_length=100)
    registration_date: Optional[date] = None


class ReleaseEncumbrancePayload(BaseModel):
    encumbrance_id: str = Field(min_length=1)
    reason: Optional[str] = None


ACTION_PAYLOADS = {
    ActionType.ADD_OWNER: AddOwnerPayload,
    ActionType.TRANSFER_OWNERSHIP: TransferPayload,
    ActionType.SUBDIVIDE_PARCEL: SubdividePayload,
    ActionType.UPDATE_SHARE: UpdateSharePayload,
    ActionType.CREATE_ENCUMBRANCE: CreateEncumbrancePayload,
    ActionType.RELEASE_ENCUMBRANCE: ReleaseEncumbrancePayload,
}


def parse_action_payload(action: ActionType, payload: Any) -> BaseModel:
    schema = ACTION_PAYLOADS.get(ActionType(action))
    if schema is None:
        raise InvalidPayload(f"{ActionType(action).value} is not a direct action")
    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayload(
            f"Invalid {ActionType(action).value} payload",
            details=json.loads(exc.json(include_url=False)),
        )
