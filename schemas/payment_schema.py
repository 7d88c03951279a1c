from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from core.payments.types import resolve_provider_name
from schemas.imports import (
    IntentStatus,
    InvoiceStatus,
    PaymentMethodType,
    PaymentProviderName,
    RefundStatus,
    SubscriptionStatus,
    WebhookOutcome,
)


def _provider_from_input(value: Any) -> Any:
    if isinstance(value, str):
        resolved = resolve_provider_name(value)
        if resolved is not None:
            return resolved
    return value


class _ProviderInput(BaseModel):
    provider: PaymentProviderName

    @field_validator("provider", mode="before")
    @classmethod
    def accept_vendor_alias(cls, value: Any) -> Any:
        return _provider_from_input(value)


class PaymentIntentIn(_ProviderInput):
    amount_minor: int = Field(gt=0, strict=True)
    currency: str = Field(min_length=3, max_length=3)
    customer_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConfirmIntentIn(BaseModel):
    payment_method_ref: str | None = None


class RefundIn(BaseModel):
    amount_minor: int | None = Field(default=None, gt=0, strict=True)
    reason: str | None = Field(default=None, max_length=500)


class CustomerIn(BaseModel):
    email: EmailStr
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CustomerUpdate(BaseModel):
    email: EmailStr | None = None
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] | None = None


class PaymentMethodIn(_ProviderInput):
    customer_id: str
    method_token: str = Field(min_length=1)
    type: PaymentMethodType = PaymentMethodType.CARD
    is_default: bool = False


class SubscriptionIn(_ProviderInput):
    customer_id: str
    plan_id: str = Field(min_length=1)
    trial_days: int | None = Field(default=None, ge=0, le=730)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CancelSubscriptionIn(BaseModel):
    at_period_end: bool = True


class InvoiceIn(_ProviderInput):
    customer_id: str
    subscription_id: str | None = None
    amount_minor: int = Field(gt=0, strict=True)
    currency: str = Field(min_length=3, max_length=3)
    due_date: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class _StoredRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    created_at: int
    updated_at: int


class PaymentIntentOut(_StoredRecord):
    amount_minor: int
    amount_refunded_minor: int = 0
    currency: str
    provider: PaymentProviderName
    provider_reference_id: str | None = None
    status: IntentStatus
    customer_id: str
    workspace_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    checkout_url: str | None = None
    client_secret: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None


class RefundOut(_StoredRecord):
    payment_intent_id: str
    workspace_id: str
    provider: PaymentProviderName
    amount_minor: int
    currency: str
    reason: str | None = None
    provider_refund_id: str | None = None
    idempotency_key: str | None = None
    status: RefundStatus
    failure_message: str | None = None


class CustomerOut(_StoredRecord):
    user_id: str
    workspace_id: str
    email: str
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_customer_ids: dict[str, str] = Field(default_factory=dict)


class PaymentMethodOut(_StoredRecord):
    customer_id: str
    provider: PaymentProviderName
    provider_method_id: str
    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    is_default: bool = False


class SubscriptionOut(_StoredRecord):
    customer_id: str
    workspace_id: str
    plan_id: str
    provider: PaymentProviderName
    provider_subscription_id: str | None = None
    status: SubscriptionStatus
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    trial_days: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    failure_code: str | None = None

    @model_validator(mode="after")
    def cancelled_has_no_pending_cancel(self) -> "SubscriptionOut":
        if self.status == SubscriptionStatus.CANCELLED and self.cancel_at_period_end:
            raise ValueError("cancel_at_period_end cannot be set on a cancelled subscription")
        return self


class InvoiceOut(_StoredRecord):
    customer_id: str
    workspace_id: str
    subscription_id: str | None = None
    provider: PaymentProviderName
    provider_invoice_id: str | None = None
    amount_minor: int
    currency: str
    status: InvoiceStatus
    due_date: int | None = None
    paid_at: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    provider: PaymentProviderName
    provider_event_id: str
    event_type: str
    provider_reference_id: str | None = None
    outcome: WebhookOutcome
    detail: str | None = None
    needs_review: bool = False
    received_at: int
    processed_at: int | None = None


class WebhookDeliveryOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    provider: PaymentProviderName
    provider_event_id: str | None = None
    event_type: str | None = None
    outcome: WebhookOutcome
    detail: str | None = None
    needs_review: bool = False
    received_at: int
    reviewed_at: int | None = None
    raw_payload: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: WebhookOutcome
    provider_event_id: str | None = None


class ProviderHealthOut(BaseModel):
    provider: PaymentProviderName
    vendor: str | None = None
    configured: bool


class AnalyticsSummaryOut(BaseModel):
    workspace_id: str
    time_range: str
    since: int
    total_intents: int
    by_status: dict[str, int]
    by_provider: dict[str, int]
    succeeded_volume_minor: dict[str, int]
    refunded_volume_minor: dict[str, int]
    success_rate: float
