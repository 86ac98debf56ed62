import logging
from dataclasses import dataclass

from subsync.billing.constants import Provider
from subsync.billing.normalizers import PayPalNormalizer, StripeNormalizer
from subsync.billing.paypal_client import PayPalClient
from subsync.billing.verifiers import PayPalVerifier, StripeVerifier
from subsync.errors import UnknownProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderAdapter:
    """Everything that differs between providers: how to verify and how to read."""

    name: str
    verifier: object
    normalizer: object


class ProviderRegistry:
    def __init__(self, adapters=()):
        self._adapters = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter):
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise UnknownProvider(name) from None

    def names(self):
        return sorted(self._adapters)

    def __contains__(self, name):
        return name in self._adapters


def build_provider_registry(config, paypal_session=None) -> ProviderRegistry:
    """Register only the providers that have credentials configured."""
    registry = ProviderRegistry()

    if config.get("STRIPE_WEBHOOK_SECRET"):
        registry.register(
            ProviderAdapter(
                name=Provider.STRIPE.value,
                verifier=StripeVerifier(
                    config["STRIPE_WEBHOOK_SECRET"],
                    tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
                ),
                normalizer=StripeNormalizer(config.get("STRIPE_PRICE_PLANS")),
            )
        )
    else:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; Stripe webhooks disabled")

    if all(config.get(k) for k in ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_ID")):
        client = PayPalClient.from_config(config, session=paypal_session)
        registry.register(
            ProviderAdapter(
                name=Provider.PAYPAL.value,
                verifier=PayPalVerifier(client, config["PAYPAL_WEBHOOK_ID"]),
                normalizer=PayPalNormalizer(
                    config.get("PAYPAL_PLAN_IDS"),
                    cancel_at_period_end=config.get("PAYPAL_CANCEL_AT_PERIOD_END", False),
                ),
            )
        )
    else:
        logger.warning("PayPal credentials incomplete; PayPal webhooks disabled")

    return registry
