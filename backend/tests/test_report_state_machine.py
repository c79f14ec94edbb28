"""
Report state machine tests.

Verifies:
- Only the four transitions in the table exist
- Actor guards (owner for submit/delete, authority for decisions)
- Signature, remarks and required-field validation
- apply_event never mutates its input snapshot
"""

from datetime import datetime

import pytest

from reportflow.errors import Forbidden, InvalidTransition, ValidationError
from reportflow.services.report_state_machine import (
    EVENT_APPROVE,
    EVENT_DELETE,
    EVENT_REJECT,
    EVENT_SUBMIT,
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    ReportSnapshot,
    TransitionContext,
    allowed_events,
    apply_event,
    can_transition,
    missing_required_fields,
)

NOW = datetime(2026, 10, 18, 9, 30)
TECH_ID = 10
LEADER_ID = 20
REQUIRED = ("complaint_no", "location")


def snapshot(status=STATUS_DRAFT, **kwargs):
    values = {
        "id": 1,
        "technician_id": TECH_ID,
        "status": status,
        "details": {"complaint_no": "C-1", "location": "Plant 4"},
        "technician_signature": "sig-tech",
    }
    values.update(kwargs)
    return ReportSnapshot(**values)


def owner_ctx(**kwargs):
    return TransitionContext(actor_id=TECH_ID, actor_has_authority=False, now=NOW, required_fields=REQUIRED, **kwargs)


def leader_ctx(authority=True):
    return TransitionContext(actor_id=LEADER_ID, actor_has_authority=authority, now=NOW)


# =============================================================================
# TRANSITION TABLE
# =============================================================================


class TestTransitionTable:
    def test_allowed_events_per_status(self):
        assert allowed_events(STATUS_DRAFT) == {EVENT_SUBMIT, EVENT_DELETE}
        assert allowed_events(STATUS_SUBMITTED) == {EVENT_APPROVE, EVENT_REJECT}
        assert allowed_events(STATUS_APPROVED) == set()
        assert allowed_events(STATUS_REJECTED) == set()

    @pytest.mark.parametrize(
        "status,event",
        [
            (STATUS_DRAFT, EVENT_APPROVE),
            (STATUS_DRAFT, EVENT_REJECT),
            (STATUS_SUBMITTED, EVENT_SUBMIT),
            (STATUS_SUBMITTED, EVENT_DELETE),
            (STATUS_APPROVED, EVENT_APPROVE),
            (STATUS_APPROVED, EVENT_REJECT),
            (STATUS_REJECTED, EVENT_APPROVE),
            (STATUS_REJECTED, EVENT_SUBMIT),
        ],
    )
    def test_missing_pairs_raise_invalid_transition(self, status, event):
        assert not can_transition(status, event)
        with pytest.raises(InvalidTransition) as exc:
            apply_event(snapshot(status), event, leader_ctx(), {"signature": "s", "remarks": "r"})
        assert exc.value.current_status == status
        assert exc.value.event == event
        assert status in exc.value.detail

    def test_unknown_event(self):
        with pytest.raises(InvalidTransition):
            apply_event(snapshot(STATUS_SUBMITTED), "archive", leader_ctx())

    def test_transition_check_precedes_actor_guard(self):
        # A stranger asking to approve an approved report learns it is terminal
        with pytest.raises(InvalidTransition):
            apply_event(snapshot(STATUS_APPROVED), EVENT_APPROVE, leader_ctx(authority=False), {"signature": "s"})


# =============================================================================
# SUBMIT / DELETE
# =============================================================================


class TestSubmit:
    def test_submit_moves_to_submitted(self):
        before = snapshot(team_leader_signature="stale")
        result = apply_event(before, EVENT_SUBMIT, owner_ctx())

        assert result.after.status == STATUS_SUBMITTED
        assert result.after.submitted_at == NOW
        assert result.after.team_leader_signature is None
        assert result.audit_action == "SUBMIT"
        assert before.status == STATUS_DRAFT  # input untouched

    def test_payload_signature_is_used(self):
        result = apply_event(snapshot(technician_signature=None), EVENT_SUBMIT, owner_ctx(), {"signature": "fresh"})
        assert result.after.technician_signature == "fresh"

    def test_missing_signature(self):
        with pytest.raises(ValidationError) as exc:
            apply_event(snapshot(technician_signature="  "), EVENT_SUBMIT, owner_ctx())
        assert exc.value.field == "technician_signature"

    def test_missing_required_fields_are_named(self):
        with pytest.raises(ValidationError) as exc:
            apply_event(snapshot(details={"complaint_no": "C-1", "location": ""}), EVENT_SUBMIT, owner_ctx())
        assert exc.value.field == "location"
        assert "location" in exc.value.detail

    def test_only_owner_may_submit(self):
        with pytest.raises(Forbidden):
            apply_event(snapshot(), EVENT_SUBMIT, leader_ctx())

    def test_missing_required_fields_helper(self):
        assert missing_required_fields({"a": "x", "b": [], "c": None}, ("a", "b", "c", "d")) == ["b", "c", "d"]


class TestDelete:
    def test_owner_deletes_draft(self):
        result = apply_event(snapshot(), EVENT_DELETE, owner_ctx())
        assert result.removed
        assert result.audit_action == "DELETE"

    def test_other_user_cannot_delete(self):
        with pytest.raises(Forbidden):
            apply_event(snapshot(), EVENT_DELETE, leader_ctx())


# =============================================================================
# DECISIONS
# =============================================================================


class TestDecisions:
    def test_approve(self):
        result = apply_event(
            snapshot(STATUS_SUBMITTED), EVENT_APPROVE, leader_ctx(), {"signature": "sig-tl", "notes": "good work"}
        )
        after = result.after
        assert after.status == STATUS_APPROVED
        assert after.team_leader_signature == "sig-tl"
        assert after.approval_notes == "good work"
        assert after.approved_by == LEADER_ID
        assert after.approved_at == NOW
        assert result.audit_action == "APPROVE"

    def test_reject_requires_remarks_before_signature(self):
        with pytest.raises(ValidationError) as exc:
            apply_event(snapshot(STATUS_SUBMITTED), EVENT_REJECT, leader_ctx(), {"remarks": ""})
        assert exc.value.detail.startswith("rejection_remarks required")

    def test_reject_requires_signature(self):
        with pytest.raises(ValidationError) as exc:
            apply_event(snapshot(STATUS_SUBMITTED), EVENT_REJECT, leader_ctx(), {"remarks": "missing reading"})
        assert exc.value.field == "team_leader_signature"

    def test_approve_requires_signature(self):
        with pytest.raises(ValidationError):
            apply_event(snapshot(STATUS_SUBMITTED), EVENT_APPROVE, leader_ctx(), {})

    def test_reject(self):
        result = apply_event(
            snapshot(STATUS_SUBMITTED), EVENT_REJECT, leader_ctx(),
            {"remarks": " missing thermistor reading ", "signature": "sig-tl"},
        )
        assert result.after.status == STATUS_REJECTED
        assert result.after.rejection_remarks == "missing thermistor reading"
        assert result.after.approval_notes is None

    def test_decision_without_authority(self):
        with pytest.raises(Forbidden) as exc:
            apply_event(snapshot(STATUS_SUBMITTED), EVENT_APPROVE, leader_ctx(authority=False), {"signature": "s"})
        assert exc.value.rule == "hierarchy"

    def test_event_name_is_normalized(self):
        result = apply_event(snapshot(STATUS_SUBMITTED), " Approve ", leader_ctx(), {"signature": "s"})
        assert result.event == EVENT_APPROVE
