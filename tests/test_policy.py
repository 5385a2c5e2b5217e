"""Tests for the maker-checker policy table (core/policy.py)."""

from types import SimpleNamespace

import pytest

from core.auth import Actor
from core.errors import PermissionDenied
from core.policy import (
    CITY_ADMIN, SUBCITY_ADMIN, SUBCITY_AUDITOR, SUBCITY_NORMAL,
    ActionType, ApprovalPolicy, ApprovalRule,
)


def request_row(maker_id="user-normal-1", maker_role=SUBCITY_NORMAL, approver_role=SUBCITY_ADMIN,
                sub_city_id="SC-01", action=ActionType.SUBMIT_REGISTRATION):
    return SimpleNamespace(
        request_id="req-1", maker_id=maker_id, maker_role=maker_role,
        approver_role=approver_role, sub_city_id=sub_city_id, action_type=action.value,
    )


@pytest.fixture
def policy():
    return ApprovalPolicy()


# ═══════════════════════════════════════════════════
# requires_approval / approver_role_for
# ═══════════════════════════════════════════════════

class TestRules:

    @pytest.mark.parametrize("role", [SUBCITY_NORMAL, SUBCITY_AUDITOR])
    @pytest.mark.parametrize("action", list(ActionType))
    def test_normal_roles_always_need_admin(self, policy, role, action):
        actor = Actor(user_id="u", role=role, sub_city_id="SC-01")
        assert policy.requires_approval(actor, action)
        assert policy.approver_role_for(actor, action) == SUBCITY_ADMIN

    def test_subcity_admin_self_approves_registration(self, policy, subcity_admin):
        assert not policy.requires_approval(subcity_admin, ActionType.SUBMIT_REGISTRATION)

    def test_subcity_admin_release_goes_to_city(self, policy, subcity_admin):
        assert policy.requires_approval(subcity_admin, ActionType.RELEASE_ENCUMBRANCE)
        assert policy.approver_role_for(subcity_admin, ActionType.RELEASE_ENCUMBRANCE) == CITY_ADMIN

    @pytest.mark.parametrize("action", list(ActionType))
    def test_city_admin_self_approves_everything(self, policy, city_admin, action):
        assert not policy.requires_approval(city_admin, action)

    def test_unknown_role_falls_back_to_default(self, policy):
        actor = Actor(user_id="u", role="SURVEYOR", sub_city_id="SC-01")
        assert policy.requires_approval(actor, ActionType.ADD_OWNER)
        assert policy.approver_role_for(actor, ActionType.ADD_OWNER) == SUBCITY_ADMIN

    def test_custom_table(self, maker):
        rules = {(SUBCITY_NORMAL, ActionType.ADD_OWNER): ApprovalRule(
            requires_approval=False, approver_role=SUBCITY_ADMIN,
        )}
        policy = ApprovalPolicy(rules)
        assert not policy.requires_approval(maker, ActionType.ADD_OWNER)
        assert policy.requires_approval(maker, ActionType.TRANSFER_OWNERSHIP)


# ═══════════════════════════════════════════════════
# check_can_make
# ═══════════════════════════════════════════════════

class TestCanMake:

    def test_maker_allowed(self, policy, maker):
        policy.check_can_make(maker, ActionType.SUBMIT_REGISTRATION)

    def test_unknown_role_denied(self, policy):
        with pytest.raises(PermissionDenied):
            policy.check_can_make(Actor(user_id="u", role="VIEWER", sub_city_id="SC-01"), ActionType.ADD_OWNER)

    def test_subcity_role_without_sub_city_denied(self, policy):
        with pytest.raises(PermissionDenied):
            policy.check_can_make(Actor(user_id="u", role=SUBCITY_NORMAL), ActionType.ADD_OWNER)

    def test_city_admin_needs_no_sub_city(self, policy, city_admin):
        policy.check_can_make(city_admin, ActionType.SUBDIVIDE_PARCEL)


# ═══════════════════════════════════════════════════
# check_can_decide
# ═══════════════════════════════════════════════════

class TestCanDecide:

    def test_admin_same_sub_city(self, policy, subcity_admin):
        policy.check_can_decide(subcity_admin, request_row())

    def test_maker_cannot_decide_own(self, policy):
        admin_maker = Actor(user_id="user-admin-1", role=SUBCITY_ADMIN, sub_city_id="SC-01")
        with pytest.raises(PermissionDenied):
            policy.check_can_decide(admin_maker, request_row(maker_id="user-admin-1"))

    def test_wrong_role(self, policy, other_maker, auditor):
        for actor in (other_maker, auditor):
            with pytest.raises(PermissionDenied):
                policy.check_can_decide(actor, request_row())

    def test_other_sub_city(self, policy, foreign_admin):
        with pytest.raises(PermissionDenied):
            policy.check_can_decide(foreign_admin, request_row())

    def test_city_admin_decides_across_sub_cities(self, policy, city_admin):
        row = request_row(
            maker_id="user-admin-1", maker_role=SUBCITY_ADMIN, approver_role=CITY_ADMIN,
            sub_city_id="SC-07", action=ActionType.RELEASE_ENCUMBRANCE,
        )
        policy.check_can_decide(city_admin, row)
