"""
JSON envelope shared by every payments API response.

Success: ``{"success": true, "message": ..., "data": ...}``.
Failure: ``{"success": false, "message": ..., "data": {"code": ..., "details": ...}}``.
``requestId`` is added to both when the request carried one.
"""
from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Iterable

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException
from starlette.responses import Response

from core.errors import AppException, ErrorCode

_ENVELOPE_ATTR = "__payments_envelope__"

# Status and caller-facing summary per error code, used for the OpenAPI examples.
ERROR_DOCS: dict[ErrorCode, tuple[int, str]] = {
    ErrorCode.AUTH_INVALID_TOKEN: (401, "Missing or invalid identity headers"),
    ErrorCode.AUTH_PERMISSION_DENIED: (403, "Insufficient permissions"),
    ErrorCode.RESOURCE_NOT_FOUND: (404, "Resource not found"),
    ErrorCode.VALIDATION_FAILED: (422, "Validation error"),
    ErrorCode.UNSUPPORTED_CURRENCY: (422, "Currency is not supported by the provider"),
    ErrorCode.REFUND_EXCEEDS_BALANCE: (422, "Refund amount exceeds the refundable balance"),
    ErrorCode.PAYMENT_WEBHOOK_INVALID: (400, "Invalid webhook signature"),
    ErrorCode.PAYMENT_PROVIDER_ERROR: (502, "Provider call failed"),
    ErrorCode.PAYMENT_PROVIDER_REJECTED: (502, "Provider rejected the request"),
    ErrorCode.PAYMENT_MISSING_REFERENCE: (502, "Provider response had no reference"),
    ErrorCode.PAYMENT_PROVIDER_TIMEOUT: (504, "Provider did not answer in time"),
    ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED: (503, "Payment provider is not configured"),
    ErrorCode.INTERNAL_ERROR: (500, "Internal Server Error"),
}

# Any route behind the identity headers can answer with these.
IDENTITY_ERRORS: tuple[ErrorCode, ...] = (ErrorCode.AUTH_INVALID_TOKEN, ErrorCode.VALIDATION_FAILED)
PROVIDER_ERRORS: tuple[ErrorCode, ...] = (
    ErrorCode.PAYMENT_PROVIDER_ERROR,
    ErrorCode.PAYMENT_PROVIDER_REJECTED,
    ErrorCode.PAYMENT_PROVIDER_TIMEOUT,
    ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED,
)


@dataclass(frozen=True)
class EnvelopeDoc:
    message: str
    status_code: int
    errors: tuple[ErrorCode, ...] = ()
    success_example: Any | None = None


def _envelope(success: bool, message: str, data: Any, request_id: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": success, "message": message, "data": data}
    if request_id:
        payload["requestId"] = request_id
    return payload


def success_payload(data: Any, message: str = "Success", *, request_id: str | None = None) -> dict[str, Any]:
    return _envelope(True, message, data, request_id)


def error_payload(message: str, data: Any = None, *, request_id: str | None = None) -> dict[str, Any]:
    return _envelope(False, message, data, request_id)


def error_response(
    *,
    status_code: int,
    message: str,
    code: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
    request: Request | None = None,
) -> JSONResponse:
    body = error_payload(message, {"code": code, "details": details}, request_id=request_id_of(request))
    return JSONResponse(status_code=status_code, headers=headers, content=jsonable_encoder(body))


def request_id_of(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None)


def app_exception_response(exc: AppException, request: Request | None = None) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        message=exc.message,
        code=exc.code.value,
        details=exc.details,
        headers=exc.headers,
        request=request,
    )


def http_exception_response(exc: HTTPException, request: Request | None = None) -> JSONResponse:
    """Envelope for framework-raised HTTPExceptions (unknown routes, wrong methods)."""
    detail = exc.detail
    text = isinstance(detail, str) and bool(detail.strip())
    return error_response(
        status_code=exc.status_code,
        message=detail if text else "Request failed",
        code="HTTP_EXCEPTION",
        details=None if text else detail,
        headers=exc.headers,
        request=request,
    )


def _find_request(args: Iterable[Any], kwargs: dict[str, Any]) -> Request | None:
    for value in (*kwargs.values(), *args):
        if isinstance(value, Request):
            return value
    return None


def document_response(
    *,
    message: str = "Success",
    status_code: int = status.HTTP_200_OK,
    errors: Iterable[ErrorCode] = (),
    success_example: Any | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a route's return value in the success envelope.

    ``errors`` lists the error codes the route can answer with; they become
    OpenAPI examples grouped by status once ``apply_response_documentation``
    runs over the app.
    """
    doc = EnvelopeDoc(
        message=message,
        status_code=status_code,
        errors=tuple(dict.fromkeys(errors)),
        success_example=success_example,
    )

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, Response):
                return result
            body = success_payload(result, message, request_id=request_id_of(_find_request(args, kwargs)))
            return JSONResponse(status_code=status_code, content=jsonable_encoder(body))

        setattr(wrapper, _ENVELOPE_ATTR, doc)
        return wrapper

    return decorator


def _error_examples(codes: Iterable[ErrorCode]) -> dict[int, dict[str, Any]]:
    by_status: dict[int, dict[str, Any]] = defaultdict(dict)
    for code in codes:
        status_code, summary = ERROR_DOCS[code]
        by_status[status_code][code.value] = {
            "summary": summary,
            "value": error_payload(summary, {"code": code.value, "details": None}),
        }
    return by_status


def _api_routes(routes: Iterable[Any]) -> Iterable[APIRoute]:
    for route in routes:
        if isinstance(route, APIRoute):
            yield route
        elif getattr(route, "routes", None):
            yield from _api_routes(route.routes)


def apply_response_documentation(app: FastAPI) -> None:
    changed = False
    for route in _api_routes(app.router.routes):
        doc = getattr(route.endpoint, _ENVELOPE_ATTR, None)
        if not isinstance(doc, EnvelopeDoc):
            continue

        route.status_code = doc.status_code
        responses = dict(route.responses or {})
        responses[doc.status_code] = {
            "description": doc.message,
            "content": {"application/json": {"example": success_payload(doc.success_example, doc.message)}},
        }
        for status_code, examples in _error_examples(doc.errors).items():
            responses[status_code] = {
                "description": " / ".join(example["summary"] for example in examples.values()),
                "content": {"application/json": {"examples": examples}},
            }
        route.responses = responses
        changed = True

    if changed:
        app.openapi_schema = None
