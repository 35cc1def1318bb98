"""Immutable provider-code -> provider factory mapping, built once and injected."""

from types import MappingProxyType
from typing import Callable, Mapping

from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.ports import PaymentsRepository
from app.modules.payments.domain.payments.provider import PaymentProvider

ProviderFactory = Callable[[PaymentsRepository], PaymentProvider]

# URL slug -> provider code
PROVIDER_SLUGS = MappingProxyType({"mercadopago": "MERCADOPAGO"})


class PaymentProviderRegistry:
    def __init__(self, factories: Mapping[str, ProviderFactory]):
        self._factories = MappingProxyType(dict(factories))

    @property
    def codes(self) -> frozenset[str]:
        return frozenset(self._factories)

    def supports(self, provider_code: str) -> bool:
        return provider_code in self._factories

    def resolve(self, provider_code: str, repository: PaymentsRepository) -> PaymentProvider:
        factory = self._factories.get(provider_code)
        if factory is None:
            raise PaymentError(
                PaymentErrorCode.PROVIDER_ERROR,
                f"Unsupported payment provider: {provider_code}",
                status_code=500,
            )
        return factory(repository)


def provider_code_for_slug(slug: str) -> str | None:
    return PROVIDER_SLUGS.get((slug or "").strip().lower())


def build_provider_registry() -> PaymentProviderRegistry:
    from app.modules.payments.domain.payments.mercadopago_client import (
        MercadoPagoPaymentProvider,
    )

    return PaymentProviderRegistry({"MERCADOPAGO": MercadoPagoPaymentProvider})
