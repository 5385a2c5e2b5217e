"""
core/policy.py — Maker-Checker Approval Policy
===============================================
The approval gate. Called by the approval router before any mutating action.
Roles are opaque capability tokens; this table is the only place that gives
them meaning.

For every (role, action) pair the policy answers two questions:
    requires_approval(actor, action) → may the actor apply the change now?
    approver_role_for(actor, action) → which role must check it otherwise?

Default hierarchy:
    SUBCITY_NORMAL / SUBCITY_AUDITOR → checked by SUBCITY_ADMIN (same sub-city)
    SUBCITY_ADMIN                    → self-approves sub-city actions,
                                       encumbrance release goes to CITY_ADMIN
    CITY_ADMIN                       → self-approves everything
"""

import logging
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from core.auth import Actor
from core.errors import PermissionDenied

logger = logging.getLogger("cadastre.policy")


class ActionType(str, Enum):
    SUBMIT_REGISTRATION = "SUBMIT_REGISTRATION"
    ADD_OWNER = "ADD_OWNER"
    TRANSFER_OWNERSHIP = "TRANSFER_OWNERSHIP"
    SUBDIVIDE_PARCEL = "SUBDIVIDE_PARCEL"
    UPDATE_SHARE = "UPDATE_SHARE"
    CREATE_ENCUMBRANCE = "CREATE_ENCUMBRANCE"
    RELEASE_ENCUMBRANCE = "RELEASE_ENCUMBRANCE"


class ApprovalRule(BaseModel):
    requires_approval: bool
    approver_role: str
    same_sub_city: bool = True


SUBCITY_NORMAL = "SUBCITY_NORMAL"
SUBCITY_AUDITOR = "SUBCITY_AUDITOR"
SUBCITY_ADMIN = "SUBCITY_ADMIN"
CITY_ADMIN = "CITY_ADMIN"

MAKER_ROLES = {SUBCITY_NORMAL, SUBCITY_AUDITOR, SUBCITY_ADMIN, CITY_ADMIN}
SUBCITY_ROLES = {SUBCITY_NORMAL, SUBCITY_AUDITOR, SUBCITY_ADMIN}

DEFAULT_RULE = ApprovalRule(requires_approval=True, approver_role=SUBCITY_ADMIN, same_sub_city=True)


def _default_rules() -> Dict[Tuple[str, ActionType], ApprovalRule]:
    rules = {}
    for action in ActionType:
        for maker in (SUBCITY_NORMAL, SUBCITY_AUDITOR):
            rules[(maker, action)] = ApprovalRule(requires_approval=True, approver_role=SUBCITY_ADMIN)
        rules[(SUBCITY_ADMIN, action)] = ApprovalRule(requires_approval=False, approver_role=SUBCITY_ADMIN)
        rules[(CITY_ADMIN, action)] = ApprovalRule(
            requires_approval=False, approver_role=CITY_ADMIN, same_sub_city=False
        )
    rules[(SUBCITY_ADMIN, ActionType.RELEASE_ENCUMBRANCE)] = ApprovalRule(
        requires_approval=True, approver_role=CITY_ADMIN, same_sub_city=False
    )
    return rules


class ApprovalPolicy:
    """
    Role-based rules table. Swap the table (or the whole object) to change
    policy; the router only ever calls the methods below.
    """

    def __init__(self, rules: Optional[Dict[Tuple[str, ActionType], ApprovalRule]] = None):
        self.rules = rules if rules is not None else _default_rules()

    def rule_for(self, role: str, action: ActionType) -> ApprovalRule:
        return self.rules.get((role, ActionType(action)), DEFAULT_RULE)

    def requires_approval(self, actor: Actor, action: ActionType) -> bool:
        return self.rule_for(actor.role, action).requires_approval

    def approver_role_for(self, actor: Actor, action: ActionType) -> str:
        return self.rule_for(actor.role, action).approver_role

    def check_can_make(self, actor: Actor, action: ActionType):
        """Raise PermissionDenied unless the actor may start this action at all."""
        if actor.role not in MAKER_ROLES:
            logger.warning(f"Maker DENIED: {actor.user_id} ({actor.role}) → {action}")
            raise PermissionDenied(f"Role {actor.role} cannot request {ActionType(action).value}")
        if actor.role in SUBCITY_ROLES and not actor.sub_city_id:
            raise PermissionDenied("Sub-city assignment required for this action")

    def check_can_decide(self, actor: Actor, request) -> None:
        """
        Raise PermissionDenied unless `actor` may approve/reject `request`
        (an ApprovalRequest row). Makers never check their own requests.
        """
        if actor.user_id == request.maker_id:
            logger.warning(f"Checker DENIED: {actor.user_id} tried to decide own request {request.request_id}")
            raise PermissionDenied("A maker cannot decide their own request")
        if actor.role != request.approver_role:
            logger.warning(
                f"Checker DENIED: {actor.user_id} ({actor.role}) → request {request.request_id} "
                f"needs {request.approver_role}"
            )
            raise PermissionDenied(f"Only {request.approver_role} may decide this request")
        rule = self.rule_for(request.maker_role, request.action_type)
        if rule.same_sub_city and request.sub_city_id != actor.sub_city_id:
            raise PermissionDenied("Can only decide requests from your sub-city")


# Singleton, import this everywhere:  from core.policy import approval_policy
approval_policy = ApprovalPolicy()
