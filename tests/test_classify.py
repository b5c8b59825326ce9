"""Tests for the Outcome Classifier and the Response Translator status table."""

import pytest

from services.shared.classify import CallRole, classify
from services.shared.dependency import DependencyOutcome, OutcomeKind
from services.shared.errors import ErrorKind, ServiceError
from services.shared.responses import error_response, status_for


def outcome(kind, status_code=None, body=None):
    return DependencyOutcome("dep", kind, status_code=status_code, body=body)


class TestClassify:
    def test_success_is_not_an_error(self):
        assert classify(outcome(OutcomeKind.SUCCESS, 200), CallRole.READ, service="X") is None

    def test_unavailable(self):
        err = classify(outcome(OutcomeKind.UNAVAILABLE), CallRole.FETCH_USER, service="User service")
        assert err.kind is ErrorKind.SERVICE_UNAVAILABLE
        assert err.message == "User service unavailable"

    def test_timeout(self):
        err = classify(outcome(OutcomeKind.TIMEOUT), CallRole.CHARGE_PAYMENT, service="Payment service")
        assert err.kind is ErrorKind.SERVICE_TIMEOUT
        assert err.message == "Payment service request timed out"

    def test_not_found_names_the_resource(self):
        err = classify(
            outcome(OutcomeKind.NOT_FOUND, 404),
            CallRole.FETCH_USER,
            service="User service",
            resource="User with ID 99",
        )
        assert err.kind is ErrorKind.NOT_FOUND
        assert err.message == "User with ID 99 not found"

    def test_402_is_a_decline_when_charging(self):
        err = classify(
            outcome(OutcomeKind.UPSTREAM_ERROR, 402, {"error": "Insufficient funds"}),
            CallRole.CHARGE_PAYMENT,
            service="Payment service",
        )
        assert err.kind is ErrorKind.PAYMENT_DECLINED
        assert err.message == "Payment failed: Insufficient funds"

    @pytest.mark.parametrize("role", [CallRole.FETCH_USER, CallRole.REFUND, CallRole.READ])
    def test_402_is_an_upstream_failure_for_other_roles(self, role):
        err = classify(outcome(OutcomeKind.UPSTREAM_ERROR, 402), role, service="X")
        assert err.kind is ErrorKind.UPSTREAM_FAILURE

    def test_500_uses_failure_message(self):
        err = classify(
            outcome(OutcomeKind.UPSTREAM_ERROR, 500, "stack trace"),
            CallRole.FETCH_USER,
            service="User service",
            failure_message="Failed to create order",
        )
        assert err.kind is ErrorKind.UPSTREAM_FAILURE
        assert err.message == "Failed to create order"

    def test_unknown_failure_is_internal(self):
        err = classify(outcome(OutcomeKind.UNKNOWN_FAILURE), CallRole.READ, service="Order service")
        assert err.kind is ErrorKind.INTERNAL_FAILURE


class TestStatusTable:
    @pytest.mark.parametrize(
        "kind,status",
        [
            (ErrorKind.VALIDATION, 400),
            (ErrorKind.NOT_FOUND, 404),
            (ErrorKind.SERVICE_UNAVAILABLE, 503),
            (ErrorKind.SERVICE_TIMEOUT, 504),
            (ErrorKind.PAYMENT_DECLINED, 402),
            (ErrorKind.CONFLICT, 400),
            (ErrorKind.UPSTREAM_FAILURE, 500),
            (ErrorKind.INTERNAL_FAILURE, 500),
        ],
    )
    def test_kind_to_status(self, kind, status):
        assert status_for(kind) == status

    def test_server_errors_never_echo_extra_detail(self):
        response = error_response(
            ServiceError(ErrorKind.UPSTREAM_FAILURE, "Failed to process payment", cause="secret")
        )
        assert response.status_code == 500
        assert b"secret" not in response.body
