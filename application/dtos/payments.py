"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.entity import PaymentMethod, TransactionStatus
from domain.payment.money import fits_minor_units

# Currencies accepted at the POS (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CAD", "AUD", "JPY",
    "MXN", "BRL", "ARS", "CLP", "COP", "PEN", "UYU",
}


def _validate_currency(v: str) -> str:
    u = (v or "").strip().upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class PaymentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str
    method: PaymentMethod
    provider: str = Field(min_length=1)
    payment_method_token: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    tip: Optional[condecimal(ge=0)] = None  # type: ignore[valid-type]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("order_id")
    @classmethod
    def _strip_order_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("order_id must not be blank")
        return v

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def _check_minor_units(self) -> "PaymentRequest":
        # Charged, stored and cached amounts must all be the same number
        for name in ("amount", "tip"):
            value = getattr(self, name)
            if value is not None and not fits_minor_units(value, self.currency):
                raise ValueError(f"{name} has more decimal places than {self.currency} allows")
        return self

    @property
    def tip_amount(self) -> Decimal:
        return self.tip or Decimal("0")

    @property
    def charge_amount(self) -> Decimal:
        """Amount sent to the provider: base plus tip."""
        return self.amount + self.tip_amount


class PaymentResponse(BaseModel):
    transaction_id: str
    status: TransactionStatus
    amount: Decimal
    provider_transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    requires_action: Optional[dict[str, Any]] = None


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    DECLINED = "declined"
    TRANSPORT_ERROR = "transport_error"


class ChargeRequest(BaseModel):
    """What an adapter needs to submit one charge."""

    transaction_id: str
    order_id: str
    amount: Decimal
    tip_amount: Decimal = Decimal("0")
    currency: str
    method: PaymentMethod
    payment_method_token: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderOutcome(BaseModel):
    """Normalized result of a single adapter invocation."""

    kind: OutcomeKind
    provider_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    requires_action: Optional[dict[str, Any]] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    raw_response: Optional[dict[str, Any]] = None

    @classmethod
    def transport(cls, message: str, *, code: str = "transport_error", raw: Optional[dict[str, Any]] = None) -> "ProviderOutcome":
        return cls(kind=OutcomeKind.TRANSPORT_ERROR, error_code=code, error_message=message, raw_response=raw)

    @classmethod
    def declined(cls, message: str, *, code: Optional[str] = None, provider_transaction_id: Optional[str] = None,
                 raw: Optional[dict[str, Any]] = None) -> "ProviderOutcome":
        return cls(
            kind=OutcomeKind.DECLINED,
            error_code=code or "declined",
            error_message=message,
            provider_transaction_id=provider_transaction_id,
            raw_response=raw,
        )

    @property
    def is_transport_error(self) -> bool:
        return self.kind is OutcomeKind.TRANSPORT_ERROR


class RefundRequest(BaseModel):
    refund_id: str
    transaction_id: str
    provider_transaction_id: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str
    reason: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency_refund(cls, v: str) -> str:
        return _validate_currency(v)


class RefundResult(BaseModel):
    # pending also covers transport errors; the webhook settles it later
    status: Literal["pending", "succeeded", "failed"]
    provider: str
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Optional[dict[str, Any]] = None


class WebhookEvent(BaseModel):
    """Provider notification normalized by the adapter after signature verification."""

    id: str
    type: str
    provider: str
    category: Literal["payment", "refund", "other"] = "other"
    # Internal status implied by the event (None when irrelevant)
    status: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    # Internal ids echoed back through provider metadata
    transaction_id: Optional[str] = None
    refund_id: Optional[str] = None
    order_id: Optional[str] = None
    # Refund amount in major units, used to match refunds created without a provider id
    amount: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    raw_headers: Optional[dict[str, Any]] = None


class ReconciliationResult(BaseModel):
    outcome: Literal["applied", "noop", "conflict", "ignored"]
    provider: str
    event_id: str
    event_type: str
    transaction_id: Optional[str] = None
    refund_id: Optional[str] = None
    status: Optional[str] = None


class TransactionView(BaseModel):
    """Read model returned by the transactions endpoint."""

    id: str
    order_id: str
    method: str
    provider: str
    amount: Decimal
    tip_amount: Decimal
    currency: str
    status: str
    provider_transaction_id: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    failure_reason: Optional[str] = None
    review_required: bool = False
    review_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[Any] = None
    updated_at: Optional[Any] = None

    @classmethod
    def from_entity(cls, tx: Any) -> "TransactionView":
        data = {name: getattr(tx, name) for name in cls.model_fields}
        data["method"] = getattr(tx.method, "value", tx.method)
        data["status"] = getattr(tx.status, "value", tx.status)
        return cls(**data)


class RefundCreate(BaseModel):
    amount: Optional[condecimal(gt=0)] = None  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=255)


class RefundView(BaseModel):
    id: str
    transaction_id: str
    provider: str
    provider_refund_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    reason: Optional[str] = None
    created_at: Optional[Any] = None
    updated_at: Optional[Any] = None

    @classmethod
    def from_entity(cls, refund: Any) -> "RefundView":
        data = {name: getattr(refund, name) for name in cls.model_fields}
        data["status"] = getattr(refund.status, "value", refund.status)
        return cls(**data)
