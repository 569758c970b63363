"""Tests for the exception taxonomy and error sanitization."""

import pytest

from cellsync.core.exceptions import (
    BrokerUnavailable,
    CellSyncException,
    ConnectionInactive,
    ConnectionNotFound,
    NotFoundError,
    PersistenceError,
    ProviderMismatch,
    StateTokenError,
    SyncFetchError,
    ValidationError,
    sanitize_error,
)
from cellsync.core.resilience import CircuitBreakerOpen


@pytest.mark.parametrize(
    ("exc", "status_code", "code"),
    [
        (NotFoundError("Cell", "c1"), 404, "NOT_FOUND"),
        (ValidationError("bad", field="subdomain"), 400, "VALIDATION_ERROR"),
        (StateTokenError("invalid_state", "bad state"), 400, "invalid_state"),
        (BrokerUnavailable("initiate"), 502, "BROKER_UNAVAILABLE"),
        (ConnectionNotFound("ca_1"), 404, "CONNECTION_NOT_FOUND"),
        (ConnectionInactive("ca_1", "EXPIRED"), 409, "CONNECTION_INACTIVE"),
        (ProviderMismatch("Attio"), 404, "PROVIDER_MISMATCH"),
        (SyncFetchError("hubspot", "boom"), 502, "SYNC_FETCH_ERROR"),
        (SyncFetchError("hubspot", "expired", reconnect_required=True), 401, "RECONNECT_REQUIRED"),
        (PersistenceError(), 500, "PERSISTENCE_ERROR"),
    ],
)
def test_taxonomy(exc: CellSyncException, status_code: int, code: str) -> None:
    assert isinstance(exc, CellSyncException)
    assert exc.status_code == status_code
    assert exc.code == code


def test_messages_and_details() -> None:
    assert NotFoundError("Cell", "c1").message == "Cell with ID 'c1' not found"
    assert ValidationError("bad", field="apiKey").details == {"field": "apiKey"}
    assert BrokerUnavailable("revoke").message == "Connection broker unavailable during revoke"
    assert ConnectionInactive("ca_1", "EXPIRED").status == "EXPIRED"
    assert ProviderMismatch("Zoho CRM").message.startswith("Zoho CRM integration not connected")


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (PersistenceError("insert into phone_user_mappings failed"), "A database error occurred"),
        (CircuitBreakerOpen("composio"), "temporarily unavailable"),
        (KeyError("secret"), "An error occurred"),
    ],
)
def test_sanitize_error_hides_internals(exc: Exception, expected: str) -> None:
    message = sanitize_error(exc)
    assert expected in message
    assert "phone_user_mappings" not in message
