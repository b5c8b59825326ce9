"""
Shared - Outcome Classifier

Decides what a failed dependency call means for the caller. The table is
fixed; the call's role only matters for 402, which is a business decline
when charging a payment and a plain upstream failure anywhere else.
"""

from enum import Enum

from .dependency import DependencyOutcome, OutcomeKind
from .errors import ErrorKind, ServiceError


class CallRole(str, Enum):
    FETCH_USER = "fetch_user"
    CHARGE_PAYMENT = "charge_payment"
    REFUND = "refund"
    READ = "read"


def _remote_reason(body) -> str:
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    if isinstance(body, str) and body:
        return body
    return "declined"


def classify(
    outcome: DependencyOutcome,
    role: CallRole,
    *,
    service: str,
    resource: str | None = None,
    failure_message: str | None = None,
) -> ServiceError | None:
    """
    Map a dependency outcome to the error the caller should surface.

    `service` is the human name of the dependency ("User service") and
    `resource` describes what was looked up ("User with ID 7").
    `failure_message` replaces the generic text of a 500-class error.
    Returns None on success.
    """
    kind = outcome.kind
    if kind is OutcomeKind.SUCCESS:
        return None
    if kind is OutcomeKind.UNAVAILABLE:
        return ServiceError(ErrorKind.SERVICE_UNAVAILABLE, f"{service} unavailable")
    if kind is OutcomeKind.TIMEOUT:
        return ServiceError(
            ErrorKind.SERVICE_TIMEOUT, f"{service} request timed out"
        )
    if kind is OutcomeKind.NOT_FOUND or (
        kind is OutcomeKind.UPSTREAM_ERROR and outcome.status_code == 404
    ):
        return ServiceError(
            ErrorKind.NOT_FOUND, f"{resource or 'Resource'} not found"
        )
    if kind is OutcomeKind.UPSTREAM_ERROR:
        if outcome.status_code == 402 and role is CallRole.CHARGE_PAYMENT:
            return ServiceError(
                ErrorKind.PAYMENT_DECLINED,
                f"Payment failed: {_remote_reason(outcome.body)}",
            )
        return ServiceError(
            ErrorKind.UPSTREAM_FAILURE,
            failure_message or f"{service} returned an error",
        )
    return ServiceError(
        ErrorKind.INTERNAL_FAILURE, failure_message or f"{service} call failed"
    )
