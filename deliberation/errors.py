"""Error taxonomy shared by the engines, the gateway and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class DeliberationError(Exception):
    status_code = 500
    code = "error"
    default_message = "Unexpected deliberation error."

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class Unauthenticated(DeliberationError):
    status_code = 401
    code = "unauthenticated"
    default_message = "An authenticated participant is required."


class Forbidden(DeliberationError):
    status_code = 403
    code = "forbidden"
    default_message = "This action requires a facilitator."


class NotFound(DeliberationError):
    status_code = 404
    code = "not_found"
    default_message = "Requested record not found."


class PhaseClosed(DeliberationError):
    status_code = 409
    code = "phase_closed"
    default_message = "This action is not allowed in the current session phase."


class InvalidTransition(DeliberationError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Illegal session status transition."


class IneligibleCandidate(DeliberationError):
    status_code = 409
    code = "ineligible_candidate"
    default_message = "Candidate is not eligible for this ballot."


class QuotaExceeded(DeliberationError):
    """Only raised when the strict quota policy is enabled."""

    status_code = 409
    code = "quota_exceeded"
    default_message = "Selection quota reached for this role."


class InvalidRequest(DeliberationError):
    status_code = 400
    code = "invalid_request"
    default_message = "Invalid request."


class MalformedRecord(DeliberationError):
    status_code = 500
    code = "malformed_record"
    default_message = "A stored record could not be translated."


class TransientIO(DeliberationError):
    status_code = 503
    code = "transient_io"
    default_message = "Storage is temporarily unavailable; please retry."
