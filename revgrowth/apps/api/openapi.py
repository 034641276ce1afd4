from __future__ import annotations

from typing import Any

from revgrowth.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response(
        "Conflict",
        code="ALREADY_ENROLLED",
        message="Account already has an active enrollment",
        details={"program_account_id": "3f1c..."},
    ),
    422: _response(
        "Validation error",
        code="INVALID_TOTAL",
        message="Weights must sum to 100%. Current total: 105%",
        details={"total": 105},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

CREDIT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    402: _response(
        "Credit limit exceeded",
        code="CREDIT_LIMIT_EXCEEDED",
        message="Not enough AI credits remaining this billing period",
        details={"credits_required": 15, "credits_remaining": 10, "total_allowance": 25},
    ),
}
