from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal

from caseflow.core.errors import OrderLookupUnavailableError
from caseflow.domain.types import Order
from caseflow.providers.commerce.base import KIND_ORDER, KIND_SUBSCRIPTION, RefundReceipt


class FakeCommerce:
    """In-memory order platform covering lookup, refunds and subscription changes."""

    def __init__(
        self,
        orders: list[Order] | None = None,
        *,
        lookup_down: bool = False,
        refund_declined: bool = False,
        action_delay_s: float = 0.0,
    ) -> None:
        self._records: dict[tuple[str, str], Order] = {}
        for order in orders or []:
            self.add(order)
        self.lookup_down = lookup_down
        self.refund_declined = refund_declined
        self.action_delay_s = action_delay_s
        self.lookups: list[str] = []
        self.refunds: list[tuple[str, Decimal | None]] = []
        self.subscription_changes: list[tuple[str, str]] = []

    def add(self, order: Order) -> None:
        self._records[(order.kind, order.reference.upper())] = order
        self._records[(order.kind, f"id:{order.id}")] = order

    def get(self, order_id: str, *, kind: str = KIND_ORDER) -> Order | None:
        return self._records.get((kind, f"id:{order_id}"))

    async def find_order(self, tenant_id: str, reference: str, *, kind: str = KIND_ORDER) -> Order | None:
        _ = tenant_id
        self.lookups.append(reference)
        if self.lookup_down:
            raise OrderLookupUnavailableError("fake order platform is down")
        return self._records.get((kind, reference.upper()))

    async def find_orders_by_customer(self, tenant_id: str, email: str, *, kind: str = KIND_ORDER) -> list[Order]:
        _ = tenant_id
        if self.lookup_down:
            raise OrderLookupUnavailableError("fake order platform is down")
        unique = {order.id: order for (record_kind, _key), order in self._records.items() if record_kind == kind}
        matches = [order for order in unique.values() if (order.customer_email or "").lower() == email.lower()]
        return sorted(matches, key=lambda order: order.created_at, reverse=True)

    async def refund(self, tenant_id: str, order_id: str, amount: Decimal | None = None) -> RefundReceipt:
        _ = tenant_id
        if self.action_delay_s:
            await asyncio.sleep(self.action_delay_s)
        if self.refund_declined:
            return RefundReceipt(success=False, error="refund declined by platform")
        order = self.get(order_id)
        refunded = amount if amount is not None else (order.total if order else Decimal("0"))
        self.refunds.append((order_id, amount))
        if order is not None:
            self.add(replace(order, status="refunded"))
        return RefundReceipt(success=True, refund_id=f"rf-{len(self.refunds)}", amount=refunded)

    async def _set_subscription_status(self, subscription_id: str, status: str) -> bool:
        if self.action_delay_s:
            await asyncio.sleep(self.action_delay_s)
        subscription = self.get(subscription_id, kind=KIND_SUBSCRIPTION)
        if subscription is None:
            return False
        self.subscription_changes.append((subscription_id, status))
        self.add(replace(subscription, status=status))
        return True

    async def pause(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "on-hold")

    async def resume(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "active")

    async def cancel(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "cancelled")
