"""Tests for mapping arbitrary exceptions onto the error taxonomy."""

import asyncio

import httpx
import pytest
from psycopg import errors as pg_errors
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from redis import exceptions as redis_errors

from festguard.service.classifier import classify
from festguard.service.errors import AppError, ErrorCode, NotFoundError
from festguard.storage.errors import RecordNotFound, StoreUnavailableError


class _Ticket(BaseModel):
    quantity: int


class TestStructuredErrors:
    def test_app_error_passes_through_unchanged(self):
        err = NotFoundError("Ticket not found")
        assert classify(err) is err

    def test_classification_is_idempotent(self):
        once = classify(RuntimeError("boom"))
        assert classify(once) is once
        assert once.code == ErrorCode.INTERNAL_ERROR

    def test_unique_violation_becomes_already_exists(self):
        err = classify(pg_errors.UniqueViolation("duplicate key value violates unique constraint"))
        assert err.code == ErrorCode.ALREADY_EXISTS
        assert err.status_code == 409
        assert "duplicate key" not in err.message

    def test_foreign_key_violation_is_conflict(self):
        err = classify(pg_errors.ForeignKeyViolation("fk"))
        assert err.code == ErrorCode.CONFLICT

    def test_not_null_violation_is_validation(self):
        assert classify(pg_errors.NotNullViolation("null")).code == ErrorCode.VALIDATION_ERROR

    def test_serialization_failure_is_retryable_conflict(self):
        err = classify(pg_errors.SerializationFailure("could not serialize access"))
        assert err.code == ErrorCode.CONFLICT
        assert err.retryable is True

    def test_query_canceled_is_timeout(self):
        assert classify(pg_errors.QueryCanceled("canceling statement")).code == ErrorCode.TIMEOUT

    def test_other_database_errors_hide_the_message(self):
        err = classify(pg_errors.OperationalError("password authentication failed for user app"))
        assert err.code == ErrorCode.DATABASE_ERROR
        assert err.status_code == 500
        assert "password" not in err.message

    def test_record_not_found(self):
        assert classify(RecordNotFound("session")).code == ErrorCode.NOT_FOUND

    @pytest.mark.parametrize(
        "exc",
        [asyncio.TimeoutError(), redis_errors.TimeoutError("slow"), httpx.ReadTimeout("slow")],
    )
    def test_timeouts(self, exc):
        err = classify(exc)
        assert err.code == ErrorCode.TIMEOUT
        assert err.retryable is True

    def test_store_unavailable(self):
        err = classify(StoreUnavailableError("down", operation="ping"))
        assert err.code == ErrorCode.SERVICE_UNAVAILABLE
        assert err.status_code == 503

    def test_redis_connection_error(self):
        assert classify(redis_errors.ConnectionError("refused")).code == ErrorCode.SERVICE_UNAVAILABLE

    def test_upstream_http_error(self):
        request = httpx.Request("GET", "https://payments.example/charge")
        exc = httpx.ConnectError("connect failed", request=request)
        assert classify(exc).code == ErrorCode.EXTERNAL_SERVICE_ERROR

    def test_pydantic_validation_error_lists_fields(self):
        with pytest.raises(PydanticValidationError) as excinfo:
            _Ticket(quantity="many")
        err = classify(excinfo.value)
        assert err.code == ErrorCode.VALIDATION_ERROR
        assert err.details["errors"][0]["field"] == "quantity"

    def test_cancellation_is_internal(self):
        err = classify(asyncio.CancelledError())
        assert err.code == ErrorCode.INTERNAL_ERROR


class TestSubstringFallback:
    @pytest.mark.parametrize(
        "message,code",
        [
            ("stage not found", ErrorCode.NOT_FOUND),
            ("Unauthorized request", ErrorCode.UNAUTHORIZED),
            ("permission denied for table", ErrorCode.FORBIDDEN),
            ("vendor already exists", ErrorCode.ALREADY_EXISTS),
            ("context deadline exceeded", ErrorCode.TIMEOUT),
            ("dial tcp: connection refused", ErrorCode.SERVICE_UNAVAILABLE),
        ],
    )
    def test_message_rules(self, message, code):
        assert classify(RuntimeError(message)).code == code

    def test_structured_rules_win_over_substrings(self):
        # message says "not found" but the type says timeout
        err = classify(asyncio.TimeoutError("lock not found in time"))
        assert err.code == ErrorCode.TIMEOUT

    def test_unknown_error_is_internal_and_keeps_cause(self):
        root = ZeroDivisionError("division by zero")
        err = classify(root)
        assert isinstance(err, AppError)
        assert err.code == ErrorCode.INTERNAL_ERROR
        assert err.cause is root

    def test_custom_rule_table(self):
        rules = ((lambda exc: isinstance(exc, KeyError), lambda exc: NotFoundError("missing key")),)
        assert classify(KeyError("x"), rules=rules).code == ErrorCode.NOT_FOUND
        assert classify(ValueError("x"), rules=rules).code == ErrorCode.INTERNAL_ERROR


def _raise_from(outer, inner):
    try:
        raise outer from inner
    except BaseException as exc:
        return exc


class TestExceptionChains:
    def test_database_error_behind_a_wrapper(self):
        root = pg_errors.UniqueViolation("duplicate key")
        err = classify(_raise_from(RuntimeError("saving festival failed"), root))
        assert err.code == ErrorCode.ALREADY_EXISTS
        assert err.status_code == 409
        assert err.cause is root

    def test_wrapped_app_error_is_returned(self):
        missing = NotFoundError("Stage not found")
        assert classify(_raise_from(RuntimeError("lookup failed"), missing)) is missing

    def test_implicit_context_is_followed(self):
        try:
            try:
                raise StoreUnavailableError("redis down")
            except StoreUnavailableError:
                raise RuntimeError("cleanup failed")
        except RuntimeError as exc:
            wrapped = exc
        assert classify(wrapped).code == ErrorCode.SERVICE_UNAVAILABLE

    def test_suppressed_context_is_ignored(self):
        try:
            try:
                raise pg_errors.UniqueViolation("duplicate key")
            except pg_errors.UniqueViolation:
                raise RuntimeError("boom") from None
        except RuntimeError as exc:
            wrapped = exc
        assert classify(wrapped).code == ErrorCode.INTERNAL_ERROR

    def test_typed_cause_wins_over_outer_message(self):
        err = classify(_raise_from(RuntimeError("stage not found"), asyncio.TimeoutError()))
        assert err.code == ErrorCode.TIMEOUT

    def test_cyclic_chain_terminates(self):
        first, second = ValueError("a"), ValueError("b")
        first.__cause__ = second
        second.__cause__ = first
        assert classify(first).code == ErrorCode.INTERNAL_ERROR
