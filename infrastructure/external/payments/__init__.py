"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from core.logging_config import get_logger
from application.ports.payment_gateway import PaymentGateway
from application.services.provider_registry import ProviderRegistry
from domain.payment.exceptions import UnknownProvider


logger = get_logger(__name__)


def get_payment_gateway(provider: Optional[str] = None, settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    cfg = settings or payment_settings
    name = (provider or cfg.default_provider).lower()
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient(secret_key=cfg.stripe.secret_key, webhook_secret=cfg.stripe.webhook_secret,
                            tolerance=cfg.webhook.tolerance_seconds)
    if name == "square":
        from .square_client import SquareClient
        return SquareClient(settings=cfg.square)
    if name in {"mercadopago", "mp"}:
        from .mercadopago_client import MercadoPagoClient
        return MercadoPagoClient(settings=cfg.mercadopago)
    raise UnknownProvider(name)


def build_provider_registry(settings: Optional[PaymentSettings] = None) -> ProviderRegistry:
    """Register every provider whose credentials are configured."""
    cfg = settings or payment_settings
    configured = {
        "stripe": cfg.stripe.secret_key,
        "square": cfg.square.access_token,
        "mercadopago": cfg.mercadopago.access_token,
    }
    registry = ProviderRegistry()
    for name, credential in configured.items():
        if not credential:
            logger.info("payment_provider_not_configured", provider=name)
            continue
        registry.register(get_payment_gateway(name, cfg))
    logger.info("payment_providers_registered", providers=registry.providers)
    return registry
