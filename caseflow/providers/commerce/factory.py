from __future__ import annotations

from caseflow.core.config import get_settings
from caseflow.core.errors import ProviderConfigError
from caseflow.providers.commerce.fake import FakeCommerce
from caseflow.providers.commerce.woocommerce import WooCommerceClient


def get_commerce_client() -> FakeCommerce | WooCommerceClient:
    # One client serves OrderLookup, RefundExecutor and SubscriptionExecutor.
    settings = get_settings()
    provider = (settings.commerce_provider or "woocommerce").lower()

    if provider == "fake":
        return FakeCommerce()
    if provider == "woocommerce":
        return WooCommerceClient()

    raise ProviderConfigError(f"Unsupported commerce provider: {provider}")
