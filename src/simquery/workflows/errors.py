"""Typed failures raised by the query pipeline.

Single source of truth for how a failure is classified at the boundary: the
machine code, the outcome name, the HTTP status and the suggestion shown to
the operator.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..core.keys import K_CODE, K_DETAILS, K_ERROR, K_OUTCOME, K_SUGGESTION
from .query_config import CONNECTION_CLOSED_HINTS


class QueryError(Exception):
    code = "server_error"
    outcome = "serverError"
    http_status = 500
    suggestion = "Please wait 10 seconds and retry, or contact support."
    counts_against_identifier = False

    def __init__(self, message: str, *, detail: Optional[str] = None, suggestion: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail
        if suggestion is not None:
            self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_ERROR: str(self),
            K_CODE: self.code,
            K_OUTCOME: self.outcome,
            K_SUGGESTION: self.suggestion,
        }
        if self.detail:
            payload[K_DETAILS] = self.detail
        return payload


class InvalidInput(QueryError):
    code = "invalid_input"
    outcome = "badRequest"
    http_status = 400
    suggestion = "ICCID must be 19-20 digits; re-enter the number."


class Denied(QueryError):
    code = "denied"
    outcome = "tooManyFailures"
    http_status = 429
    suggestion = "Too many failed attempts for this ICCID; try a different ICCID or wait."


class AuthFailure(QueryError):
    code = "auth_failure"
    suggestion = "Could not log in to the CRM; check credentials or retry in a few minutes."


class SessionInvalid(QueryError):
    """Mid-flight signal that the CRM session expired; recovered by re-login."""

    code = "session_invalid"
    suggestion = "The CRM session expired; retry the query."


class RemoteRejected(QueryError):
    code = "remote_rejected"
    outcome = "badRequest"
    http_status = 400
    suggestion = "The CRM rejected this ICCID; re-enter a correct 19-20 digit ICCID."
    counts_against_identifier = True


class NoData(QueryError):
    code = "no_data"
    outcome = "notFound"
    http_status = 404
    suggestion = "No data for this ICCID; verify the number."
    counts_against_identifier = True


class Timeout(QueryError):
    code = "timeout"
    suggestion = "The CRM did not answer in time; retry in a few minutes."


class DataTimeout(Timeout):
    """The enquiry page loaded but its data never arrived for this ICCID."""

    counts_against_identifier = True


class Unavailable(QueryError):
    code = "unavailable"
    suggestion = "The automation browser is unavailable; retry in a few seconds."


class RateLimited(QueryError):
    code = "rate_limited"
    outcome = "rateLimited"
    http_status = 429
    suggestion = "Too many requests; wait one minute and retry."


def mentions_closed_connection(exc: BaseException) -> bool:
    """True when an error reads like the browser or socket went away under us."""

    text = f"{exc} {getattr(exc, 'detail', '') or ''}".lower()
    return any(hint in text for hint in CONNECTION_CLOSED_HINTS)


__all__ = [
    "QueryError",
    "InvalidInput",
    "Denied",
    "AuthFailure",
    "SessionInvalid",
    "RemoteRejected",
    "NoData",
    "Timeout",
    "DataTimeout",
    "Unavailable",
    "RateLimited",
    "mentions_closed_connection",
]
