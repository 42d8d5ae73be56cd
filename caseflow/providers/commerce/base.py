from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from caseflow.domain.types import Order


KIND_ORDER = "order"
KIND_SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class RefundReceipt:
    success: bool
    refund_id: str | None = None
    amount: Decimal | None = None
    error: str | None = None


class OrderLookup(Protocol):
    async def find_order(self, tenant_id: str, reference: str, *, kind: str = KIND_ORDER) -> Order | None:
        """Return the order (or subscription) or None when the platform has no such record.

        Raises OrderLookupUnavailableError when the platform cannot be reached.
        """
        ...

    async def find_orders_by_customer(
        self, tenant_id: str, email: str, *, kind: str = KIND_ORDER
    ) -> list[Order]:
        """Most recent first."""
        ...


class RefundExecutor(Protocol):
    async def refund(self, tenant_id: str, order_id: str, amount: Decimal | None = None) -> RefundReceipt:
        ...


class SubscriptionExecutor(Protocol):
    async def pause(self, tenant_id: str, subscription_id: str) -> bool:
        ...

    async def resume(self, tenant_id: str, subscription_id: str) -> bool:
        ...

    async def cancel(self, tenant_id: str, subscription_id: str) -> bool:
        ...
