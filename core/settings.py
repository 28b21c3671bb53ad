"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; read once at startup and treated as
read-only afterwards (retry bounds, timeouts, TTLs, provider credentials).
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    # Upper bound for a single adapter invocation inside the retry loop
    attempt: float = 10.0
    # httpx transport timeouts used by REST adapters
    connect: float = 2.0
    read: float = 8.0
    write: float = 8.0
    total: float = 9.0


class PaymentRetry(BaseModel):
    max_attempts: int = 3
    # Linear backoff: sleep(attempt_index * base_delay) between attempts
    base_delay: float = 1.0


class IdempotencySettings(BaseModel):
    ttl_seconds: int = 3600
    in_flight_ttl_seconds: int = 120
    wait_timeout: float = 30.0
    poll_interval: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class SquareSettings(BaseModel):
    access_token: Optional[str] = None
    location_id: Optional[str] = None
    base_url: str = "https://connect.squareup.com"
    api_version: str = "2024-01-18"
    webhook_signature_key: Optional[str] = None
    # Square signs notification_url + body, so it must match the subscription URL
    notification_url: str = "https://api.example/api/v1/payments/webhooks/square"


class MercadoPagoSettings(BaseModel):
    access_token: Optional[str] = None
    base_url: str = "https://api.mercadopago.com"
    webhook_secret: Optional[str] = None
    payer_email: str = "pos@example.com"


class OrderSettings(BaseModel):
    table_name: str = "orders"


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    orders: OrderSettings = Field(default_factory=OrderSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    square: SquareSettings = Field(default_factory=SquareSettings)
    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
