"""
Audit recorder tests.

Verifies:
- record() appends exactly one entry inside the caller's unit of work
- Entries cannot be updated or deleted through the ORM
- Integrity hash detects tampering
- Filtering, diffing and CSV export
"""

import csv
import hashlib
import hmac
import io
import json
from datetime import datetime

import pytest

from reportflow.models import AuditEntry, AuditImmutableError
from reportflow.services import audit_service


def _record(actor_id=1, action="UPDATE", target_id=7, before=None, after=None, **kwargs):
    return audit_service.record(
        actor_id, action, audit_service.TABLE_SERVICE_REPORTS, target_id,
        before if before is not None else {"status": "draft"},
        after if after is not None else {"status": "submitted"},
        **kwargs,
    )


class TestRecord:
    def test_record_flushes_without_committing(self, db_session):
        entry = _record()
        assert entry.id is not None

        db_session.rollback()
        assert db_session.query(AuditEntry).count() == 0

    def test_record_fields(self, db_session):
        when = datetime(2026, 10, 18, 8, 0, 0)
        entry = _record(action="approve", actor_role="team_leader", occurred_at=when,
                        after={"status": "approved", "approved_at": when})
        db_session.commit()

        stored = db_session.get(AuditEntry, entry.id)
        assert stored.action == "APPROVE"
        assert stored.actor_role == "team_leader"
        assert stored.after == {"status": "approved", "approved_at": "2026-10-18T08:00:00Z"}
        assert stored.to_dict()["timestamp"] == "2026-10-18T08:00:00Z"

    def test_action_and_target_are_required(self, db_session):
        with pytest.raises(ValueError):
            audit_service.record(1, "", "users", 1, None, None)
        with pytest.raises(ValueError):
            audit_service.record(1, "CREATE", "users", None, None, None)


class TestImmutability:
    def test_update_is_rejected(self, db_session):
        entry = _record()
        db_session.commit()

        entry.action = "DELETE"
        with pytest.raises(AuditImmutableError):
            db_session.commit()
        db_session.rollback()
        assert db_session.get(AuditEntry, entry.id).action == "UPDATE"

    def test_delete_is_rejected(self, db_session):
        entry = _record()
        db_session.commit()

        db_session.delete(entry)
        with pytest.raises(AuditImmutableError):
            db_session.commit()
        db_session.rollback()
        assert db_session.query(AuditEntry).count() == 1


class TestIntegrity:
    def test_hash_is_set_and_verifies(self, db_session):
        entry = _record()
        db_session.commit()
        assert entry.integrity_hash
        assert audit_service.verify_entry(entry)

    def test_tampered_values_fail_verification(self, db_session):
        entry = _record()
        db_session.commit()

        entry.after = {"status": "approved"}  # in memory only; never flushed
        assert not audit_service.verify_entry(entry)
        db_session.rollback()

    def test_hash_is_keyed_hmac_sha256(self, db_session):
        entry = _record(occurred_at=datetime(2026, 10, 18, 8, 0, 0))
        canonical = json.dumps({
            "actor_id": 1,
            "action": "UPDATE",
            "target_table": "service_reports",
            "target_id": 7,
            "before": {"status": "draft"},
            "after": {"status": "submitted"},
            "timestamp": "2026-10-18T08:00:00Z",
        }, sort_keys=True)
        expected = hmac.new(b"audit-key", canonical.encode(), hashlib.sha256).hexdigest()

        assert audit_service.compute_integrity_hash(entry, "audit-key") == expected

    def test_wrong_secret_fails_verification(self, db_session):
        entry = _record()
        db_session.commit()
        assert not audit_service.verify_entry(entry, secret="other-secret")


class TestBrowsing:
    def test_filters_and_order(self, db_session):
        first = _record(actor_id=1, action="SUBMIT", target_id=1, occurred_at=datetime(2026, 10, 1, 9))
        second = _record(actor_id=2, action="APPROVE", target_id=1, occurred_at=datetime(2026, 10, 2, 9))
        third = _record(actor_id=2, action="REJECT", target_id=2, occurred_at=datetime(2026, 10, 3, 9))
        db_session.commit()

        assert [e.id for e in audit_service.list_entries()] == [third.id, second.id, first.id]
        assert [e.id for e in audit_service.list_entries(actor_id=2)] == [third.id, second.id]
        assert [e.id for e in audit_service.list_entries(action="approve")] == [second.id]
        assert [e.id for e in audit_service.list_entries(target_id=1)] == [second.id, first.id]
        assert [e.id for e in audit_service.list_entries(since=datetime(2026, 10, 2))] == [third.id, second.id]
        assert [e.id for e in audit_service.list_entries(until=datetime(2026, 10, 1, 23))] == [first.id]
        assert len(audit_service.list_entries(limit=1, offset=1)) == 1

    def test_compute_diff(self):
        diff = audit_service.compute_diff(
            {"status": "submitted", "title": "A"},
            {"status": "approved", "title": "A", "approved_by": 4},
        )
        assert diff == {
            "approved_by": {"before": None, "after": 4},
            "status": {"before": "submitted", "after": "approved"},
        }
        assert audit_service.compute_diff(None, None) == {}

    def test_export_csv(self, db_session):
        _record(action="SUBMIT")
        _record(action="APPROVE", before={"status": "submitted"}, after={"status": "approved"})
        db_session.commit()

        out = io.StringIO()
        count = audit_service.export_csv(audit_service.list_entries(), out)
        assert count == 2

        rows = list(csv.reader(io.StringIO(out.getvalue())))
        assert rows[0] == audit_service.EXPORT_COLUMNS
        assert rows[1][4] == "APPROVE"
        assert '"status"' in rows[1][7]
