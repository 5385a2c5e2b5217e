"""
core/errors.py — Cadastre Error Taxonomy
==========================================
Every failure the core can report is one of these. Modules raise them and
never swallow them; main.py turns them into JSON responses.

Families:
    ValidationError   : caller mistakes, never retried          (422)
    ConflictError     : detected against current state at commit (409)
    StateError        : illegal for the entity's lifecycle       (409)
    NotFound          : referenced row does not exist            (404)
    PermissionDenied  : actor may not perform this operation     (403)
"""

from typing import Any, Optional


class CadastreError(Exception):
    """Base class. `code` is the stable machine-readable name."""

    status_code = 400
    code = "CADASTRE_ERROR"

    def __init__(self, message: str = "", details: Optional[Any] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


# ── Validation errors ─────────────────────────────────────────────────────────
class ValidationError(CadastreError):
    status_code = 422
    code = "VALIDATION_ERROR"


class InvalidShare(ValidationError):
    code = "INVALID_SHARE"


class InvalidArea(ValidationError):
    code = "INVALID_AREA"


class DuplicateChildUPIN(ValidationError):
    code = "DUPLICATE_CHILD_UPIN"


class NotReady(ValidationError):
    code = "NOT_READY"


class InvalidPayload(ValidationError):
    code = "INVALID_PAYLOAD"


# ── Conflict errors ───────────────────────────────────────────────────────────
class ConflictError(CadastreError):
    status_code = 409
    code = "CONFLICT"


class OverAllocation(ConflictError):
    code = "OVER_ALLOCATION"


class InsufficientShare(ConflictError):
    code = "INSUFFICIENT_SHARE"


class AreaExceeded(ConflictError):
    code = "AREA_EXCEEDED"


class ParcelExists(ConflictError):
    code = "PARCEL_EXISTS"


class DuplicateRequest(ConflictError):
    code = "DUPLICATE_REQUEST"


class Expired(ConflictError):
    code = "EXPIRED"


class StaleRequest(ConflictError):
    """Approved snapshot no longer applies. Left for manual reconciliation."""
    code = "STALE_REQUEST"


# ── State errors ──────────────────────────────────────────────────────────────
class StateError(CadastreError):
    status_code = 409
    code = "STATE_ERROR"


class InvalidState(StateError):
    code = "INVALID_STATE"


# ── Lookup / access ───────────────────────────────────────────────────────────
class NotFound(CadastreError):
    status_code = 404
    code = "NOT_FOUND"


class PermissionDenied(CadastreError):
    status_code = 403
    code = "PERMISSION_DENIED"
