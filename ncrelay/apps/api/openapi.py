from __future__ import annotations

from typing import Any

from ncrelay.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response(
        "Bad request",
        code="BULK_LIMIT_EXCEEDED",
        message="Maximum 100 notifications can be processed at once",
        details={"max_ids": 100},
    ),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    404: _error_response(
        "Not found",
        code="NOTIFICATION_NOT_FOUND",
        message="Notification not found or not in failed state",
        details={"notification_id": "9f1c2a"},
    ),
    422: _error_response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["body", "ids"], "msg": "Field required", "type": "missing"}]},
    ),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _error_response("Store unavailable", code="STORE_UNAVAILABLE", message="Notification store is unavailable"),
}
