import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi import Request

from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import StorefrontException


@pytest.fixture
def mock_request():
    request = MagicMock(spec=Request)
    request.url.path = "/api/test"
    request.method = "GET"
    return request


def test_handle_storefront_exception(mock_request):
    exc = StorefrontException(message="Test Error", code="test_error", status_code=400)

    response = handle_exception(mock_request, exc, error_id="err-1")

    body = json.loads(response.body)
    assert response.status_code == 400
    assert body == {
        "error": {"message": "Test Error", "code": "test_error", "id": "err-1", "details": None}
    }


def test_domain_error_keeps_its_code_and_status(mock_request):
    exc = BillingError(BillingErrorCode.PLAN_INACTIVE, "Selected plan is not active")

    response = handle_exception(mock_request, exc)

    body = json.loads(response.body)
    assert response.status_code == 400
    assert body["error"]["code"] == "PLAN_INACTIVE"
    assert body["error"]["id"]


def test_value_error_is_a_400(mock_request):
    with patch("app.shared.core.error_governance.logger") as mock_logger:
        response = handle_exception(mock_request, ValueError("Secret error"))

    assert response.status_code == 400
    assert "value_error" in response.body.decode()
    args, kwargs = mock_logger.warning.call_args_list[0]
    assert args == ("business_validation_error",)
    assert kwargs["error"] == "Secret error"
    assert kwargs["path"] == "/api/test"


def test_unexpected_exception_is_sanitized(mock_request):
    response = handle_exception(mock_request, RuntimeError("connection string leaked"))

    body = json.loads(response.body)
    assert response.status_code == 500
    assert body["error"]["code"] == "internal_error"
    assert "leaked" not in body["error"]["message"]


def test_unsafe_details_are_hidden_in_production(mock_request):
    exc = StorefrontException(
        message="db password leaked",
        code="db_error",
        status_code=500,
        details={"secret": "redact-me"},
    )

    with patch(
        "app.shared.core.error_governance.get_settings",
        return_value=MagicMock(ENVIRONMENT="production"),
    ):
        response = handle_exception(mock_request, exc, error_id="err-prod-1")

    body = json.loads(response.body)
    assert body["error"]["message"] == "An error occurred while processing your request"
    assert body["error"]["details"] is None
    assert body["error"]["id"] == "err-prod-1"


def test_safe_codes_stay_visible_in_production(mock_request):
    exc = BillingError(
        BillingErrorCode.ACCESS_DENIED,
        "Subscription has ended",
        details={"billing_status": "CANCELED"},
    )

    with patch(
        "app.shared.core.error_governance.get_settings",
        return_value=MagicMock(ENVIRONMENT="production"),
    ):
        response = handle_exception(mock_request, exc)

    body = json.loads(response.body)
    assert response.status_code == 402
    assert body["error"]["message"] == "Subscription has ended"
    assert body["error"]["details"] == {"billing_status": "CANCELED"}
