# Overview: Domain error taxonomy shared by services, routes and the CLI.

"""
Every rejected operation names the rule it violated.

The HTTP layer maps each error to its status code and returns
{"error": kind, "detail": detail}; the CLI prints the same pair.
NotificationFailure never reaches callers of decide(): the dispatcher
recovers it through the retry queue.
"""

from __future__ import annotations


class ReportFlowError(Exception):
    """Base class for domain errors."""

    status_code = 400

    def __init__(self, detail: str, *, rule: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.rule = rule

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        payload = {"error": self.kind, "detail": self.detail}
        if self.rule:
            payload["rule"] = self.rule
        return payload


class Forbidden(ReportFlowError):
    """Hierarchy check failed: the actor has no authority over the subject."""

    status_code = 403


class InvalidTransition(ReportFlowError):
    """The report state machine has no transition for (current state, event)."""

    status_code = 409

    def __init__(self, current_status: str, event: str, detail: str | None = None):
        self.current_status = current_status
        self.event = event
        super().__init__(
            detail or f"cannot {event} a report in '{current_status}' status",
            rule="transition_table",
        )


class ValidationError(ReportFlowError):
    """Missing signature, remarks or required field."""

    status_code = 400

    def __init__(self, detail: str, *, field: str | None = None, rule: str | None = None):
        super().__init__(detail, rule=rule)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class NotFound(ReportFlowError):
    """Report or user missing."""

    status_code = 404


class PersistenceFailure(ReportFlowError):
    """A repository call failed; the whole unit of work was rolled back."""

    status_code = 503


class NotificationFailure(ReportFlowError):
    """A delivery attempt failed. Recovered locally by the retry queue."""

    status_code = 502
