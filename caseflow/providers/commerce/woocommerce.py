from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from caseflow.core.config import get_settings
from caseflow.core.errors import OrderLookupUnavailableError, ProviderConfigError
from caseflow.domain.types import Order
from caseflow.providers.commerce.base import KIND_ORDER, KIND_SUBSCRIPTION, RefundReceipt
from caseflow.services.resilience import CallPolicy, CollaboratorGuard


_ORDERS_PATH = "/wp-json/wc/v3/orders"
_CUSTOMERS_PATH = "/wp-json/wc/v3/customers"
_SUBSCRIPTIONS_PATH = "/wp-json/wc/v1/subscriptions"

_SUBSCRIPTION_STATUS = {"pause": "on-hold", "resume": "active", "cancel": "cancelled"}


def _parse_datetime(payload: dict[str, Any]) -> datetime:
    raw = payload.get("date_created_gmt") or payload.get("date_created")
    if not raw:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    # WooCommerce *_gmt fields carry no offset.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value or "0"))
    except InvalidOperation:
        return Decimal("0")


def to_order(payload: dict[str, Any], *, kind: str = KIND_ORDER) -> Order:
    billing = payload.get("billing") or {}
    return Order(
        id=str(payload.get("id")),
        reference=str(payload.get("number") or payload.get("id")),
        status=str(payload.get("status") or "unknown"),
        total=_parse_amount(payload.get("total")),
        created_at=_parse_datetime(payload),
        customer_email=(billing.get("email") or None),
        kind=kind,
        currency=payload.get("currency"),
        raw=payload,
    )


class WooCommerceClient:
    """Order lookup, refunds and subscription changes against the WooCommerce REST API."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._guard = CollaboratorGuard("commerce.woocommerce")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        settings = self._settings
        if not (settings.woocommerce_url and settings.woocommerce_consumer_key and settings.woocommerce_consumer_secret):
            raise ProviderConfigError("WOOCOMMERCE_URL, WOOCOMMERCE_CONSUMER_KEY and WOOCOMMERCE_CONSUMER_SECRET are required")
        self._client = httpx.AsyncClient(
            base_url=settings.woocommerce_url.rstrip("/"),
            auth=(settings.woocommerce_consumer_key, settings.woocommerce_consumer_secret),
            timeout=settings.ext_call_timeout_ms / 1000.0,
        )
        return self._client

    async def _read(self, path: str, params: dict[str, Any] | None = None) -> Any | None:
        # Idempotent reads retry transient failures; 404 means the record does not exist.
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.get(path, params=params)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        response = await self._guard.run(
            _call,
            policy=CallPolicy.retrying(self._settings),
            unavailable=OrderLookupUnavailableError,
            message=f"WooCommerce lookup failed for {path}",
        )
        if response.status_code in {400, 404}:
            return None
        if response.status_code >= 400:
            raise OrderLookupUnavailableError(f"WooCommerce lookup rejected with {response.status_code}")
        return response.json()

    async def _write(self, method: str, path: str, payload: dict[str, Any]) -> httpx.Response:
        # Mutations get a single attempt; transport errors propagate for the executor to classify.
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.request(method, path, json=payload)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            return await self._guard.run(_call, policy=CallPolicy.single_shot(self._settings))
        except httpx.HTTPStatusError as exc:
            # A 5xx reached the platform; report it as a rejected mutation, not an outage.
            return exc.response

    async def find_order(self, tenant_id: str, reference: str, *, kind: str = KIND_ORDER) -> Order | None:
        _ = tenant_id
        reference = reference.lstrip("#").strip()
        base = _SUBSCRIPTIONS_PATH if kind == KIND_SUBSCRIPTION else _ORDERS_PATH
        if reference.isdigit():
            payload = await self._read(f"{base}/{reference}")
            if isinstance(payload, dict) and payload.get("id") is not None:
                return to_order(payload, kind=kind)
        # Store-specific order numbers (HFB-1234 style) are only reachable through search.
        results = await self._read(base, params={"search": reference, "per_page": 10})
        for candidate in results or []:
            if str(candidate.get("number") or candidate.get("id")).upper() == reference.upper():
                return to_order(candidate, kind=kind)
        return None

    async def find_orders_by_customer(self, tenant_id: str, email: str, *, kind: str = KIND_ORDER) -> list[Order]:
        _ = tenant_id
        customers = await self._read(_CUSTOMERS_PATH, params={"email": email, "per_page": 1})
        if not customers:
            return []
        customer_id = customers[0].get("id")
        base = _SUBSCRIPTIONS_PATH if kind == KIND_SUBSCRIPTION else _ORDERS_PATH
        rows = await self._read(
            base,
            params={"customer": customer_id, "per_page": 100, "orderby": "date", "order": "desc"},
        )
        orders = [to_order(row, kind=kind) for row in rows or []]
        return sorted(orders, key=lambda order: order.created_at, reverse=True)

    async def refund(self, tenant_id: str, order_id: str, amount: Decimal | None = None) -> RefundReceipt:
        _ = tenant_id
        payload: dict[str, Any] = {"api_refund": True}
        if amount is not None:
            payload["amount"] = f"{amount:.2f}"
        response = await self._write("POST", f"{_ORDERS_PATH}/{order_id}/refunds", payload)
        if response.status_code >= 400:
            return RefundReceipt(success=False, error=f"refund rejected with status {response.status_code}")
        body = response.json()
        return RefundReceipt(
            success=True,
            refund_id=str(body.get("id")),
            amount=_parse_amount(body.get("amount")) if body.get("amount") is not None else amount,
        )

    async def _set_subscription_status(self, subscription_id: str, action: str) -> bool:
        response = await self._write(
            "PUT",
            f"{_SUBSCRIPTIONS_PATH}/{subscription_id}",
            {"status": _SUBSCRIPTION_STATUS[action]},
        )
        return response.status_code < 400

    async def pause(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "pause")

    async def resume(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "resume")

    async def cancel(self, tenant_id: str, subscription_id: str) -> bool:
        return await self._set_subscription_status(subscription_id, "cancel")
