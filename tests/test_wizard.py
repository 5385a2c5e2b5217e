"""Tests for wizard steps, payload schemas and the session state machine (core/wizard.py)."""

from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from conftest import lease_step, new_owner, owner_step, parcel_step
from core.errors import InvalidPayload, InvalidState
from core.wizard import (
    SESSION_TRANSITIONS, OwnerStepData, Step, available_steps, can_transition, check_slots,
    parse_step, parse_step_payload, transition,
)
from db.models import SessionStatus


def fake_session(parcel=None, owners=None, lease=None, status="DRAFT"):
    return SimpleNamespace(
        session_id="s-1", status=status, parcel_data=parcel, owner_data=owners, lease_data=lease,
    )


# ═══════════════════════════════════════════════════
# available_steps
# ═══════════════════════════════════════════════════

class TestAvailableSteps:

    def test_empty_session_hides_lease_steps(self):
        steps = available_steps(fake_session())
        assert steps == [Step.PARCEL, Step.PARCEL_DOCS, Step.OWNER, Step.OWNER_DOCS, Step.VALIDATION]

    def test_lease_tenure_shows_lease_steps(self):
        steps = available_steps(fake_session(parcel=parcel_step(tenure="LEASE")))
        assert Step.LEASE in steps and Step.LEASE_DOCS in steps
        assert steps.index(Step.LEASE) < steps.index(Step.LEASE_DOCS) < steps.index(Step.VALIDATION)

    def test_existing_owners_skip_owner_docs(self):
        owners = {"owners": [{"owner_id": "o-1"}, {"owner_id": "o-2"}]}
        assert Step.OWNER_DOCS not in available_steps(fake_session(owners=owners))

    def test_one_new_owner_keeps_owner_docs(self):
        owners = {"owners": [{"owner_id": "o-1"}, new_owner()]}
        assert Step.OWNER_DOCS in available_steps(fake_session(owners=owners))

    def test_recomputed_when_tenure_changes(self):
        session = fake_session(parcel=parcel_step(tenure="LEASE"))
        assert Step.LEASE in available_steps(session)
        session.parcel_data = parcel_step(tenure="OLD_POSSESSION")
        assert Step.LEASE not in available_steps(session)


# ═══════════════════════════════════════════════════
# Payload schemas
# ═══════════════════════════════════════════════════

class TestStepPayloads:

    def test_parse_step_unknown(self):
        with pytest.raises(InvalidPayload):
            parse_step("billing")

    def test_parcel_payload_valid(self):
        data = parse_step_payload(Step.PARCEL, parcel_step())
        assert data.total_area_m2 == Decimal("1000.00")
        assert data.tenure_type.value == "OLD_POSSESSION"

    @pytest.mark.parametrize("field,value", [
        ("upin", "bad upin!"),
        ("total_area_m2", "0"),
        ("total_area_m2", "10.123"),
        ("tenure_type", "FREEHOLD"),
    ])
    def test_parcel_payload_invalid(self, field, value):
        payload = parcel_step()
        payload[field] = value
        with pytest.raises(InvalidPayload) as exc:
            parse_step_payload(Step.PARCEL, payload)
        assert exc.value.details

    def test_owner_new_requires_identity(self):
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.OWNER, {"owners": [{"full_name": "No Id"}]})

    def test_owner_single_object_shorthand(self):
        data = parse_step_payload(Step.OWNER, new_owner())
        assert len(data.owners) == 1

    def test_owner_shares_must_fit(self):
        payload = owner_step(new_owner("N-1", share="0.6"), new_owner("N-2", share="0.5"))
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.OWNER, payload)

    def test_owner_shares_all_or_none(self):
        payload = owner_step(new_owner("N-1", share="0.6"), new_owner("N-2"))
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.OWNER, payload)

    def test_owner_duplicates_rejected(self):
        payload = owner_step(new_owner("N-1"), new_owner("N-1", name="Someone Else"))
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.OWNER, payload)

    def test_owner_acquired_in_future(self):
        owner = dict(new_owner(), acquired_at=(date.today() + timedelta(days=30)).isoformat())
        with pytest.raises(InvalidPayload) as exc:
            parse_step_payload(Step.OWNER, owner_step(owner))
        assert "lies in the future" in str(exc.value.details)

    def test_owner_acquired_today_or_earlier(self):
        owner = dict(new_owner(), acquired_at=date.today().isoformat())
        data = parse_step_payload(Step.OWNER, owner_step(owner))
        assert data.owners[0].acquired_at == date.today()

    def test_owner_over_precise_share(self):
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.OWNER, owner_step(new_owner(share="0.1234567")))

    def test_equal_split_rounds_down(self):
        data = OwnerStepData.model_validate(owner_step(new_owner("N-1"), new_owner("N-2"), new_owner("N-3")))
        shares = data.resolved_shares()
        assert shares == [Decimal("0.333333")] * 3
        assert sum(shares) <= 1

    def test_lease_payments_must_be_below_total(self):
        payload = lease_step()
        payload["down_payment_amount"] = "500000.00"
        with pytest.raises(InvalidPayload):
            parse_step_payload(Step.LEASE, payload)

    def test_doc_steps_carry_no_payload(self):
        assert parse_step_payload(Step.PARCEL_DOCS, {"anything": 1}) is None


# ═══════════════════════════════════════════════════
# Completeness
# ═══════════════════════════════════════════════════

class TestCheckSlots:

    def test_empty(self):
        assert check_slots(fake_session()) == (False, ["Parcel Information", "Owner Information"])

    def test_old_possession_complete_without_lease(self):
        assert check_slots(fake_session(parcel=parcel_step(), owners=owner_step())) == (True, [])

    def test_lease_tenure_requires_lease(self):
        valid, missing = check_slots(fake_session(parcel=parcel_step(tenure="LEASE"), owners=owner_step()))
        assert not valid
        assert missing == ["Lease Information"]


# ═══════════════════════════════════════════════════
# State machine legality
# ═══════════════════════════════════════════════════

LEGAL = {
    ("DRAFT", "PENDING_APPROVAL"), ("DRAFT", "MERGED"), ("DRAFT", "EXPIRED"),
    ("PENDING_APPROVAL", "APPROVED"), ("PENDING_APPROVAL", "REJECTED"),
    ("APPROVED", "MERGED"),
    ("REJECTED", "DRAFT"), ("REJECTED", "PENDING_APPROVAL"), ("REJECTED", "MERGED"),
}


class TestStateMachine:

    @pytest.mark.parametrize("current", [s.value for s in SessionStatus])
    @pytest.mark.parametrize("target", [s.value for s in SessionStatus])
    def test_only_documented_edges_are_legal(self, current, target):
        assert can_transition(current, target) == ((current, target) in LEGAL)

    def test_terminal_states(self):
        assert SESSION_TRANSITIONS[SessionStatus.MERGED] == set()
        assert SESSION_TRANSITIONS[SessionStatus.EXPIRED] == set()

    def test_transition_updates_status(self):
        session = fake_session()
        transition(session, SessionStatus.PENDING_APPROVAL)
        assert session.status == "PENDING_APPROVAL"

    def test_illegal_transition_raises(self):
        session = fake_session(status="MERGED")
        with pytest.raises(InvalidState):
            transition(session, SessionStatus.DRAFT)
        assert session.status == "MERGED"
