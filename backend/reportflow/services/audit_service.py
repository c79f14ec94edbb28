# Overview: Append-only audit recording; every mutation leaves one explainable row.

"""
Audit Recorder Invariants (authoritative)

- record() appends exactly one AuditEntry and flushes it in the caller's
  session. It never commits: the entry belongs to the same unit of work as
  the mutation it explains.
- Failures propagate. An un-audited mutation is a correctness defect, so the
  caller's unit of work must fail with it (no retries here).
- Entries are never updated or deleted (see models.audit listeners).
- timestamp is server time at the moment of recording.
"""

from __future__ import annotations

import csv
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Iterable, Optional, TextIO

from flask import current_app, has_app_context

from ..extensions import db
from ..models import AuditEntry
from reportflow.time_utils import utcnow, to_utc_z


ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"
ACTION_SUBMIT = "SUBMIT"
ACTION_APPROVE = "APPROVE"
ACTION_REJECT = "REJECT"

TABLE_SERVICE_REPORTS = "service_reports"
TABLE_USERS = "users"


def _json_safe(value: Any) -> Any:
    """Round-trip through JSON so datetimes and other scalars store as text."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=_default_serializer))


def _default_serializer(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc_z(value)
    return str(value)


def _integrity_secret() -> str | None:
    if not has_app_context():
        return None
    return current_app.config.get("AUDIT_INTEGRITY_SECRET") or current_app.config.get("SECRET_KEY")


def compute_integrity_hash(entry: AuditEntry, secret: str) -> str:
    """HMAC-SHA256 over the canonical JSON of the entry."""
    canonical_data = {
        "actor_id": entry.actor_id,
        "actor_role": entry.actor_role,
        "action": entry.action,
        "target_table": entry.target_table,
        "target_id": entry.target_id,
        "before": entry.before,
        "after": entry.after,
        "context": entry.context,
        "timestamp": to_utc_z(entry.occurred_at),
    }
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hmac.new(secret.encode(), canonical_json.encode(), hashlib.sha256).hexdigest()


def record(
    actor_id: int | None,
    action: str,
    table: str,
    target_id: int,
    before: dict | None,
    after: dict | None,
    *,
    actor_role: str | None = None,
    context: dict | None = None,
    occurred_at: Optional[datetime] = None,
) -> AuditEntry:
    """
    Append one audit entry to the current unit of work.

    Raises whatever the session raises; callers roll back the whole
    operation.
    """
    if not action:
        raise ValueError("audit action is required")
    if target_id is None:
        raise ValueError("audit target_id is required")

    entry = AuditEntry(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action.upper(),
        target_table=table,
        target_id=target_id,
        before=_json_safe(before),
        after=_json_safe(after),
        context=_json_safe(context),
        occurred_at=(occurred_at or utcnow()).replace(microsecond=0),
    )

    secret = _integrity_secret()
    if secret:
        entry.integrity_hash = compute_integrity_hash(entry, secret)

    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def verify_entry(entry: AuditEntry, secret: str | None = None) -> bool:
    """Recompute the integrity hash; False if the row was tampered with."""
    secret = secret or _integrity_secret()
    if not secret or not entry.integrity_hash:
        return False
    return hmac.compare_digest(compute_integrity_hash(entry, secret), entry.integrity_hash)


def list_entries(
    *,
    actor_id: int | None = None,
    action: str | None = None,
    target_table: str | None = None,
    target_id: int | None = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditEntry]:
    """Audit entries newest first with optional filtering."""
    query = db.session.query(AuditEntry)

    if actor_id is not None:
        query = query.filter(AuditEntry.actor_id == actor_id)
    if action:
        query = query.filter(AuditEntry.action == action.upper())
    if target_table:
        query = query.filter(AuditEntry.target_table == target_table)
    if target_id is not None:
        query = query.filter(AuditEntry.target_id == target_id)
    if since is not None:
        query = query.filter(AuditEntry.occurred_at >= since)
    if until is not None:
        query = query.filter(AuditEntry.occurred_at <= until)

    query = query.order_by(AuditEntry.occurred_at.desc(), AuditEntry.id.desc())
    return query.limit(limit).offset(offset).all()


def compute_diff(before: dict | None, after: dict | None) -> dict:
    """Changed keys only: {key: {"before": ..., "after": ...}}."""
    before = before or {}
    after = after or {}
    diff = {}
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            diff[key] = {"before": before.get(key), "after": after.get(key)}
    return diff


EXPORT_COLUMNS = ["id", "timestamp", "actor_id", "actor_role", "action", "target_table", "target_id", "changes"]


def export_csv(entries: Iterable[AuditEntry], out: TextIO) -> int:
    """Write entries as CSV; returns the number of rows written."""
    writer = csv.writer(out)
    writer.writerow(EXPORT_COLUMNS)
    count = 0
    for entry in entries:
        writer.writerow([
            entry.id,
            to_utc_z(entry.occurred_at),
            entry.actor_id,
            entry.actor_role,
            entry.action,
            entry.target_table,
            entry.target_id,
            json.dumps(compute_diff(entry.before, entry.after), sort_keys=True),
        ])
        count += 1
    return count
