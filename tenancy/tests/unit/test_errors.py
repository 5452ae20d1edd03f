"""Tests for the platform error taxonomy and its FastAPI mapping."""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from tenancy.platform.errors import (
    AppError,
    ConflictError,
    ExternalProtocolError,
    FeatureDisabledError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
    PermissionDeniedError,
    ServiceUnavailableError,
    TenantCancelledError,
    TenantIsolationError,
    TenantSuspendedError,
    ValidationError,
    raise_http_for,
    register_error_handlers,
)


@pytest.mark.parametrize("error_cls, http_status", [
    (ValidationError, 400),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (TenantSuspendedError, 403),
    (TenantCancelledError, 403),
    (TenantIsolationError, 403),
    (PaymentRequiredError, 402),
    (ConflictError, 409),
    (ServiceUnavailableError, 503),
])
def test_http_status(error_cls, http_status):
    assert error_cls("boom").http_status == http_status


def test_to_dict_omits_empty_details():
    assert NotFoundError("Tenant not found").to_dict() == {
        "error": "not_found",
        "message": "Tenant not found",
    }


def test_code_override():
    error = ConflictError("duplicate", code="duplicate_tenant")
    assert error.code == "duplicate_tenant"
    assert ConflictError.code == "conflict"


def test_invalid_transition_is_conflict():
    error = InvalidTransitionError("tenant", "cancelled", "active")
    assert isinstance(error, ConflictError)
    assert error.http_status == 409
    assert error.details == {"current_status": "cancelled", "target_status": "active"}
    assert "cancelled" in error.message


def test_feature_disabled_names_module():
    error = FeatureDisabledError("recruitment", tenant_id="t-1")
    assert error.http_status == 403
    assert error.code == "module_not_enabled"
    assert error.details == {"module": "recruitment"}


def test_external_protocol_error_carries_upstream_status():
    error = ExternalProtocolError("upstream failed", status_code=503)
    assert error.http_status == 502
    assert error.details == {"upstream_status": 503}


def test_handler_renders_json():
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/suspended")
    async def suspended():
        raise TenantSuspendedError("This organization's account is suspended. Please contact support.")

    @app.get("/generic")
    async def generic():
        raise AppError("unexpected")

    client = TestClient(app)

    response = client.get("/suspended")
    assert response.status_code == 403
    assert response.json() == {
        "error": "tenant_suspended",
        "message": "This organization's account is suspended. Please contact support.",
    }

    response = client.get("/generic")
    assert response.status_code == 500
    assert response.json()["error"] == "internal_error"


def test_raise_http_for_keeps_status_and_body():
    error = PaymentRequiredError("Subscription required")

    with pytest.raises(HTTPException) as exc_info:
        raise_http_for(error)

    assert exc_info.value.status_code == 402
    assert exc_info.value.detail == {"error": "payment_required", "message": "Subscription required"}
    assert exc_info.value.__cause__ is error
