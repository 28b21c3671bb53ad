"""
Provider registry: provider id -> gateway adapter.
"""
from __future__ import annotations

from typing import Iterable, Optional

from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.payment.exceptions import UnknownProvider


logger = get_logger(__name__)


class ProviderRegistry:
    def __init__(self, gateways: Optional[Iterable[PaymentGateway]] = None) -> None:
        self._gateways: dict[str, PaymentGateway] = {}
        for gw in gateways or ():
            self.register(gw)

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[gateway.provider.lower()] = gateway

    def get(self, provider: Optional[str]) -> PaymentGateway:
        """Resolve an adapter; unknown or unconfigured providers fail closed."""
        name = (provider or "").strip().lower()
        gw = self._gateways.get(name)
        if gw is None:
            logger.warning("payment_provider_unknown", provider=provider)
            raise UnknownProvider(provider or "")
        return gw

    def __contains__(self, provider: str) -> bool:
        return provider.lower() in self._gateways

    @property
    def providers(self) -> list[str]:
        return sorted(self._gateways)

    async def aclose(self) -> None:
        for gw in self._gateways.values():
            await gw.aclose()
