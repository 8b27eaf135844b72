"""
Append-only and write-once enforcement for permit audit records.

Verifies:
- Action history entries cannot be updated or deleted
- Approval records cannot be changed once decided, nor deleted
- A permit's number cannot be changed after issue
- Table constraints keep extension and closure fields consistent
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.exceptions import ImmutabilityViolationError
from tests.factories import make_draft


class TestActionHistoryImmutability:

    def test_update_rejected(self, session, lifecycle, permit_in_status, fireman):
        permit = permit_in_status(PermitStatus.REVOKED)
        [entry] = lifecycle.history.list_for_permit(permit.id)

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session.begin_nested():
                entry.comment = "rewritten"
                session.flush()

        assert exc_info.value.entity_type == "ActionHistoryEntry"
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"

    def test_delete_rejected(self, session, lifecycle, permit_in_status):
        permit = permit_in_status(PermitStatus.REVOKED)
        [entry] = lifecycle.history.list_for_permit(permit.id)

        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                session.delete(entry)
                session.flush()


class TestApprovalRecordImmutability:

    def test_decided_record_cannot_change(self, session, lifecycle, requester, fireman):
        _, approval = lifecycle.create_permit(make_draft(), requester)
        lifecycle.decide(approval.id, "APPROVED", "ok", fireman)

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session.begin_nested():
                approval.comment = "edited afterwards"
                session.flush()
        assert "APPROVED" in exc_info.value.reason

    def test_decision_cannot_be_flipped_directly(self, session, lifecycle, requester, fireman):
        _, approval = lifecycle.create_permit(make_draft(), requester)
        lifecycle.decide(approval.id, "REJECTED", "no gas test", fireman)

        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                approval.decision = "APPROVED"
                session.flush()

    def test_reapproval_record_is_frozen(self, session, lifecycle, permit_in_status, fireman):
        permit = permit_in_status(PermitStatus.REVOKED)
        _, record = lifecycle.reapprove(permit.id, "fixed", "sig", fireman)

        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                record.signature = "forged"
                session.flush()

    def test_pending_record_accepts_its_decision(self, session, lifecycle, requester):
        _, approval = lifecycle.create_permit(make_draft(), requester)

        approval.comment = "looking into it"
        session.flush()

        assert lifecycle.approvals.get(approval.id).comment == "looking into it"

    def test_delete_rejected(self, session, lifecycle, requester):
        _, approval = lifecycle.create_permit(make_draft(), requester)

        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                session.delete(approval)
                session.flush()


class TestPermitNumberWriteOnce:

    def test_number_change_rejected(self, session, lifecycle, requester):
        permit, _ = lifecycle.create_permit(make_draft(), requester)

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session.begin_nested():
                permit.permit_number = "RGDGTLWP JAN 2024 - 0999"
                session.flush()
        assert "write-once" in exc_info.value.reason

    def test_other_fields_remain_writable(self, session, lifecycle, requester):
        permit, _ = lifecycle.create_permit(make_draft(), requester)

        permit.description = "updated scope"
        session.flush()

        assert lifecycle.lock_permit(permit.id).description == "updated scope"


class TestPermitConstraints:

    def test_extension_fields_must_agree(self, session, lifecycle, requester):
        permit, _ = lifecycle.create_permit(make_draft(), requester)

        with pytest.raises(IntegrityError):
            with session.begin_nested():
                permit.is_extended = True
                session.flush()

    def test_closed_at_requires_closed_status(self, session, lifecycle, requester):
        permit, _ = lifecycle.create_permit(make_draft(), requester)

        with pytest.raises(IntegrityError):
            with session.begin_nested():
                permit.closed_at = datetime(2024, 1, 5, tzinfo=timezone.utc)
                session.flush()

    def test_unknown_status_rejected(self, session, lifecycle, requester):
        permit, _ = lifecycle.create_permit(make_draft(), requester)

        with pytest.raises(IntegrityError):
            with session.begin_nested():
                permit.status = "ARCHIVED"
                session.flush()
