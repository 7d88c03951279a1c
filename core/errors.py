from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    REFUND_EXCEEDS_BALANCE = "REFUND_EXCEEDS_BALANCE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"
    PAYMENT_PROVIDER_TIMEOUT = "PAYMENT_PROVIDER_TIMEOUT"
    PAYMENT_PROVIDER_REJECTED = "PAYMENT_PROVIDER_REJECTED"
    PAYMENT_PROVIDER_NOT_CONFIGURED = "PAYMENT_PROVIDER_NOT_CONFIGURED"
    PAYMENT_MISSING_REFERENCE = "PAYMENT_MISSING_REFERENCE"
    PAYMENT_WEBHOOK_INVALID = "PAYMENT_WEBHOOK_INVALID"
    PAYMENT_WEBHOOK_DUPLICATE = "PAYMENT_WEBHOOK_DUPLICATE"
    PAYMENT_UNKNOWN_REFERENCE = "PAYMENT_UNKNOWN_REFERENCE"
    PAYMENT_STATE_CONFLICT = "PAYMENT_STATE_CONFLICT"


class AppException(HTTPException):
    def __init__(
        self,
        *,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        detail = {
            "message": message,
            "code": code.value,
            "details": details,
        }
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(AppException):
    """Bad caller input. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Any | None = None,
    ) -> None:
        super().__init__(
            status_code=422,
            code=code,
            message=message,
            details=details,
        )


class ProviderError(AppException):
    """Failure talking to an external processor.

    ``retryable`` is decided by the adapter that observed the failure; the
    orchestrator owns the retry policy.
    ``effect_unknown`` marks a failure after which the provider may still have
    carried out the request.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        code: ErrorCode = ErrorCode.PAYMENT_PROVIDER_ERROR,
        retryable: bool = False,
        provider_code: str | None = None,
        http_status: int | None = None,
        effect_unknown: bool = False,
    ) -> None:
        status_code = (
            status.HTTP_504_GATEWAY_TIMEOUT
            if code == ErrorCode.PAYMENT_PROVIDER_TIMEOUT
            else status.HTTP_502_BAD_GATEWAY
        )
        super().__init__(
            status_code=status_code,
            code=code,
            message=message,
            details={
                "provider": provider,
                "retryable": retryable,
                "provider_code": provider_code,
            },
        )
        self.provider = provider
        self.retryable = retryable
        self.provider_code = provider_code
        self.http_status = http_status
        self.effect_unknown = effect_unknown

    def as_final(self) -> "ProviderError":
        return ProviderError(
            self.message,
            provider=self.provider,
            code=self.code,
            retryable=False,
            provider_code=self.provider_code,
            http_status=self.http_status,
            effect_unknown=True,
        )


class ProviderNotConfiguredError(AppException):
    def __init__(self, provider: str) -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED,
            message="Payment provider is not configured",
            details={"provider": provider},
        )
        self.provider = provider


class SignatureError(AppException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCode.PAYMENT_WEBHOOK_INVALID,
            message="Invalid webhook signature",
        )


class DuplicateEventError(AppException):
    def __init__(self, provider: str, provider_event_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_200_OK,
            code=ErrorCode.PAYMENT_WEBHOOK_DUPLICATE,
            message="Webhook event already recorded",
            details={"provider": provider, "provider_event_id": provider_event_id},
        )
        self.provider = provider
        self.provider_event_id = provider_event_id


class UnknownReferenceError(AppException):
    def __init__(self, provider: str, reference: str | None) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.PAYMENT_UNKNOWN_REFERENCE,
            message="No record matches the provider reference",
            details={"provider": provider, "provider_reference_id": reference},
        )
        self.provider = provider
        self.reference = reference


class StateConflictError(AppException):
    def __init__(self, *, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=ErrorCode.PAYMENT_STATE_CONFLICT,
            message=f"{entity} is already {current}",
            details={"entity": entity, "entity_id": entity_id, "current": current, "target": target},
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


def auth_invalid_token(details: Any | None = None) -> AppException:
    return AppException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        code=ErrorCode.AUTH_INVALID_TOKEN,
        message="Missing or invalid identity headers",
        details=details,
    )


def auth_permission_denied(permission_key: str) -> AppException:
    return AppException(
        status_code=status.HTTP_403_FORBIDDEN,
        code=ErrorCode.AUTH_PERMISSION_DENIED,
        message="Insufficient permissions",
        details={"permission_key": permission_key},
    )


def resource_not_found(resource: str, resource_id: str | None = None) -> AppException:
    details = {"resource": resource}
    if resource_id:
        details["resource_id"] = resource_id
    return AppException(
        status_code=status.HTTP_404_NOT_FOUND,
        code=ErrorCode.RESOURCE_NOT_FOUND,
        message=f"{resource} not found",
        details=details,
    )
