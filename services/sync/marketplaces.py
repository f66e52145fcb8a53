"""
Marketplace API clients.

Both clients share the same shape so the engine can drive either one:

    refresh_token(credential)                          -> TokenGrant
    list_orders(credential, window, field, cursor, n)  -> ListingPage
    get_order_detail(credential, order_id)             -> dict | None
    to_order_record(credential, detail)                -> OrderRecord
    get_financial_detail / get_financial_chunk         -> escrow or billing payloads
    aggregate_financial(credential, order_id, payload) -> FinancialRecord

Every HTTP call goes through the shared RetryPolicy; the request (and its
signature) is rebuilt on every attempt.

Shopee Open Platform:
    - HMAC-signed query params: partner_id, timestamp, sign (+ access_token, shop_id)
    - API errors come back as HTTP 200 with a non-empty ``error`` field
    - order list queries span at most 15 days

Mercado Livre:
    - Bearer token auth
    - offset pagination on /orders/search
    - billing details fetched for up to 50 orders per call
"""
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import requests

from core.config import config
from core.errors import AggregationError, Unauthenticated, UpstreamError
from core.logging import get_logger
from core.models import (
    FinancialRecord,
    Marketplace,
    OrderRecord,
    OrderStatus,
    StoreCredential,
    SyncWindow,
    TokenGrant,
    create_order_record,
)
from services.sync.aggregator import aggregate_billing, aggregate_escrow, billing_order_id
from services.sync.discovery import ListingPage
from services.sync.retry import RetryPolicy
from services.sync.signer import sign_request

logger = get_logger("marketplace-client")


class MarketplaceClient(ABC):
    """Common plumbing for marketplace API clients."""

    marketplace: Marketplace
    time_fields: Tuple[str, ...] = ()
    max_window_span: Optional[timedelta] = None

    page_size: int = 50
    detail_batch_size: int = 50
    financial_batch_size: int = 50
    # Set by ChunkedFinancialClient; per-order clients implement get_financial_detail
    financial_chunked: bool = False

    STATUS_MAP: Dict[str, OrderStatus] = {}
    FINANCIAL_STATUSES: FrozenSet[str] = frozenset()

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.clock = clock

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        describe: str,
        params: Callable[[], Dict[str, Any]] = dict,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        data: Any = None,
        empty_on_not_found: bool = False,
    ) -> Optional[requests.Response]:
        url = f"{self.base_url}{path}"

        def send() -> requests.Response:
            return self.session.request(
                method,
                url,
                params=params(),
                headers=headers,
                json=json,
                data=data,
                timeout=self.timeout,
            )

        return self.retry.execute(send, describe, empty_on_not_found=empty_on_not_found)

    @staticmethod
    def _json(response: requests.Response, describe: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(response.status_code, f"{describe}: response is not JSON") from e

    # ------------------------------------------------------------------
    # Status handling
    # ------------------------------------------------------------------

    def map_status(self, platform_status: Optional[str], detail: Optional[Dict[str, Any]] = None) -> OrderStatus:
        return self.STATUS_MAP.get(platform_status or "", OrderStatus.UNKNOWN)

    def is_financially_eligible(self, order: OrderRecord) -> bool:
        return order.status in self.FINANCIAL_STATUSES

    # ------------------------------------------------------------------
    # Marketplace operations
    # ------------------------------------------------------------------

    @abstractmethod
    def refresh_token(self, credential: StoreCredential) -> TokenGrant:
        ...

    @abstractmethod
    def list_orders(
        self,
        credential: StoreCredential,
        window: SyncWindow,
        time_field: str,
        cursor: Optional[str],
        page_size: int,
    ) -> ListingPage:
        ...

    @abstractmethod
    def get_order_detail(self, credential: StoreCredential, order_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def is_cancelled(self, detail: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def to_order_record(self, credential: StoreCredential, detail: Dict[str, Any]) -> OrderRecord:
        ...

    @abstractmethod
    def get_financial_detail(self, credential: StoreCredential, order_id: str) -> Optional[Any]:
        ...

    @abstractmethod
    def aggregate_financial(self, credential: StoreCredential, order_id: str, payload: Any) -> FinancialRecord:
        ...


class ChunkedFinancialClient(MarketplaceClient):
    """Client whose financial endpoint answers for many orders per call."""

    financial_chunked = True

    @abstractmethod
    def get_financial_chunk(self, credential: StoreCredential, order_ids: Sequence[str]) -> Dict[str, Any]:
        ...

    def get_financial_detail(self, credential: StoreCredential, order_id: str) -> Optional[Any]:
        return self.get_financial_chunk(credential, [order_id]).get(order_id)


# ============================================================================
# SHOPEE
# ============================================================================

SHOPEE_AUTH_ERRORS = frozenset({
    "error_auth",
    "invalid_access_token",
    "invalid_acceess_token",
    "error_invalid_token",
})

SHOPEE_DETAIL_FIELDS = ",".join([
    "buyer_user_id",
    "buyer_username",
    "total_amount",
    "pay_time",
    "item_list",
])


class ShopeeClient(MarketplaceClient):
    marketplace = Marketplace.SHOPEE
    time_fields = ("create_time", "update_time")
    max_window_span = timedelta(days=15)

    page_size = 100
    detail_batch_size = 50
    financial_batch_size = 20

    STATUS_MAP = {
        "UNPAID": OrderStatus.PENDING_PAYMENT,
        "READY_TO_SHIP": OrderStatus.TO_SHIP,
        "PROCESSED": OrderStatus.TO_SHIP,
        "RETRY_SHIP": OrderStatus.TO_SHIP,
        "INVOICE_PENDING": OrderStatus.TO_SHIP,
        "SHIPPED": OrderStatus.SHIPPED,
        "TO_CONFIRM_RECEIVE": OrderStatus.SHIPPED,
        "COMPLETED": OrderStatus.COMPLETED,
        "IN_CANCEL": OrderStatus.REFUND_PENDING,
        "TO_RETURN": OrderStatus.REFUND_PENDING,
        "CANCELLED": OrderStatus.CANCELLED,
    }
    # Escrow is settled once the parcel has left the seller
    FINANCIAL_STATUSES = frozenset({
        OrderStatus.SHIPPED.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.REFUND_PENDING.value,
    })

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or config.SHOPEE_BASE_URL, **kwargs)

    def _signed_params(
        self,
        credential: StoreCredential,
        path: str,
        extra: Optional[Dict[str, Any]] = None,
        shop_scoped: bool = True,
    ) -> Callable[[], Dict[str, Any]]:
        """Params factory: a fresh timestamp and signature per attempt."""
        def build() -> Dict[str, Any]:
            timestamp = int(self.clock())
            params = {"partner_id": int(credential.partner_id), "timestamp": timestamp}
            if shop_scoped:
                params["access_token"] = credential.access_token
                params["shop_id"] = int(credential.store_id)
                params["sign"] = sign_request(
                    credential.partner_key,
                    credential.partner_id,
                    path,
                    timestamp,
                    credential.access_token,
                    credential.store_id,
                )
            else:
                params["sign"] = sign_request(credential.partner_key, credential.partner_id, path, timestamp)
            params.update(extra or {})
            return params
        return build

    def _call(
        self,
        method: str,
        path: str,
        credential: StoreCredential,
        describe: str,
        extra_params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        shop_scoped: bool = True,
    ) -> Dict[str, Any]:
        response = self._request(
            method,
            path,
            describe,
            params=self._signed_params(credential, path, extra_params, shop_scoped),
            json=body,
        )
        data = self._json(response, describe)
        if not isinstance(data, dict):
            raise UpstreamError(response.status_code, f"{describe}: unexpected response shape")

        error = data.get("error")
        if error:
            message = f"{describe}: {error} - {data.get('message') or 'no message'}"
            if error in SHOPEE_AUTH_ERRORS:
                raise Unauthenticated(message, details=data)
            raise UpstreamError(response.status_code, message, details=data)
        return data

    def refresh_token(self, credential: StoreCredential) -> TokenGrant:
        path = "/api/v2/auth/access_token/get"
        data = self._call(
            "POST",
            path,
            credential,
            "shopee token renewal",
            body={
                "partner_id": int(credential.partner_id),
                "refresh_token": credential.refresh_token,
                "shop_id": int(credential.store_id),
            },
            shop_scoped=False,
        )
        try:
            return TokenGrant(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=data["expire_in"],
            )
        except (KeyError, ValueError) as e:
            raise UpstreamError(200, "shopee token renewal: incomplete grant", details=data) from e

    def list_orders(self, credential, window, time_field, cursor, page_size):
        path = "/api/v2/order/get_order_list"
        data = self._call(
            "GET",
            path,
            credential,
            "shopee order list",
            extra_params={
                "time_range_field": time_field,
                "time_from": window.start_epoch,
                "time_to": window.end_epoch,
                "page_size": page_size,
                "cursor": cursor or "",
                "response_optional_fields": "order_status",
            },
        )
        body = data.get("response") or {}
        orders = body.get("order_list") or []
        return ListingPage(
            ids=[str(order["order_sn"]) for order in orders if order.get("order_sn")],
            next_cursor=body.get("next_cursor") or None,
            more=bool(body.get("more")),
        )

    def get_order_detail(self, credential, order_id):
        path = "/api/v2/order/get_order_detail"
        data = self._call(
            "GET",
            path,
            credential,
            f"shopee order detail {order_id}",
            extra_params={
                "order_sn_list": order_id,
                "response_optional_fields": SHOPEE_DETAIL_FIELDS,
            },
        )
        orders = (data.get("response") or {}).get("order_list") or []
        return orders[0] if orders else None

    def is_cancelled(self, detail):
        return detail.get("order_status") == "CANCELLED"

    def to_order_record(self, credential, detail):
        order_sn = detail.get("order_sn")
        if not order_sn:
            raise AggregationError("shopee order detail without order_sn", details=detail)

        def epoch(value):
            return datetime.fromtimestamp(int(value), tz=timezone.utc) if value else None

        try:
            created_at, updated_at = epoch(detail.get("create_time")), epoch(detail.get("update_time"))
        except (TypeError, ValueError) as e:
            raise AggregationError(f"shopee order {order_sn} has invalid timestamps") from e

        buyer = detail.get("buyer_username") or detail.get("buyer_user_id")
        try:
            return create_order_record(
                marketplace=self.marketplace.value,
                store_id=credential.store_id,
                order_id=order_sn,
                status=self.map_status(detail.get("order_status"), detail),
                platform_status=detail.get("order_status"),
                created_at=created_at,
                updated_at=updated_at,
                total_amount=detail.get("total_amount"),
                currency=detail.get("currency"),
                buyer_ref=str(buyer) if buyer is not None else None,
                raw=detail,
            )
        except ValueError as e:
            raise AggregationError(f"shopee order {order_sn} is malformed", details=str(e)) from e

    def get_financial_detail(self, credential, order_id):
        path = "/api/v2/payment/get_escrow_detail"
        data = self._call(
            "GET",
            path,
            credential,
            f"shopee escrow detail {order_id}",
            extra_params={"order_sn": order_id},
        )
        return data.get("response") or None

    def aggregate_financial(self, credential, order_id, payload):
        return aggregate_escrow(payload, order_id=order_id, store_id=credential.store_id)


# ============================================================================
# MERCADO LIVRE
# ============================================================================

def _ml_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000-00:00")


class MercadoLivreClient(ChunkedFinancialClient):
    marketplace = Marketplace.MERCADO_LIVRE
    time_fields = ("order.date_created", "order.date_last_updated")

    page_size = 50
    detail_batch_size = 50
    financial_batch_size = 50

    STATUS_MAP = {
        "confirmed": OrderStatus.PENDING_PAYMENT,
        "payment_required": OrderStatus.PENDING_PAYMENT,
        "payment_in_process": OrderStatus.PENDING_PAYMENT,
        "partially_paid": OrderStatus.PENDING_PAYMENT,
        "paid": OrderStatus.TO_SHIP,
        "partially_refunded": OrderStatus.REFUND_PENDING,
        "pending_cancel": OrderStatus.REFUND_PENDING,
        "cancelled": OrderStatus.CANCELLED,
        "invalid": OrderStatus.CANCELLED,
    }
    # Billing is available as soon as the order is paid
    FINANCIAL_STATUSES = frozenset({
        OrderStatus.TO_SHIP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.REFUND_PENDING.value,
    })

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or config.MERCADO_LIVRE_BASE_URL, **kwargs)

    @staticmethod
    def _auth(credential: StoreCredential) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential.access_token}"}

    def _object(self, response: requests.Response, describe: str) -> Dict[str, Any]:
        data = self._json(response, describe)
        if not isinstance(data, dict):
            raise UpstreamError(
                response.status_code,
                f"{describe}: expected a JSON object, got {type(data).__name__}",
                details=str(data)[:200],
            )
        return data

    def map_status(self, platform_status, detail=None):
        status = super().map_status(platform_status, detail)
        if status == OrderStatus.TO_SHIP and detail and "delivered" in (detail.get("tags") or []):
            return OrderStatus.COMPLETED
        return status

    def refresh_token(self, credential):
        response = self._request(
            "POST",
            "/oauth/token",
            "mercado livre token renewal",
            headers={"Accept": "application/json"},
            data={
                "grant_type": "refresh_token",
                "client_id": credential.partner_id,
                "client_secret": credential.partner_key,
                "refresh_token": credential.refresh_token,
            },
        )
        data = self._object(response, "mercado livre token renewal")
        try:
            return TokenGrant(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=data["expires_in"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(response.status_code, "mercado livre token renewal: incomplete grant",
                                details=data) from e

    def list_orders(self, credential, window, time_field, cursor, page_size):
        offset = int(cursor or 0)
        params = {
            "seller": credential.store_id,
            "sort": "date_desc",
            "offset": offset,
            "limit": page_size,
            f"{time_field}.from": _ml_timestamp(window.start),
            f"{time_field}.to": _ml_timestamp(window.end),
        }
        response = self._request(
            "GET",
            "/orders/search",
            "mercado livre order search",
            params=lambda: params,
            headers=self._auth(credential),
        )
        data = self._object(response, "mercado livre order search")
        results = data.get("results") or []
        total = (data.get("paging") or {}).get("total") or 0
        next_offset = offset + len(results)
        return ListingPage(
            ids=[
                str(order["id"])
                for order in results
                if isinstance(order, dict) and order.get("id") is not None
            ],
            next_cursor=str(next_offset),
            more=bool(results) and next_offset < total,
        )

    def get_order_detail(self, credential, order_id):
        describe = f"mercado livre order {order_id}"
        response = self._request(
            "GET",
            f"/orders/{order_id}",
            describe,
            headers=self._auth(credential),
            empty_on_not_found=True,
        )
        if response is None:
            return None
        return self._object(response, describe)

    def is_cancelled(self, detail):
        return detail.get("status") == "cancelled"

    def to_order_record(self, credential, detail):
        order_id = detail.get("id")
        if order_id is None:
            raise AggregationError("mercado livre order without id", details=detail)
        buyer_id = (detail.get("buyer") or {}).get("id")
        try:
            return create_order_record(
                marketplace=self.marketplace.value,
                store_id=credential.store_id,
                order_id=order_id,
                status=self.map_status(detail.get("status"), detail),
                platform_status=detail.get("status"),
                created_at=detail.get("date_created"),
                updated_at=detail.get("last_updated") or detail.get("date_last_updated"),
                total_amount=detail.get("total_amount"),
                currency=detail.get("currency_id"),
                buyer_ref=str(buyer_id) if buyer_id is not None else None,
                raw=detail,
            )
        except ValueError as e:
            raise AggregationError(f"mercado livre order {order_id} is malformed", details=str(e)) from e

    def get_financial_chunk(self, credential, order_ids):
        wanted = [str(order_id) for order_id in order_ids]
        describe = f"mercado livre billing for {len(wanted)} orders"
        response = self._request(
            "GET",
            "/billing/integration/group/ML/order/details",
            describe,
            params=lambda: {"order_ids": ",".join(wanted)},
            headers=self._auth(credential),
            empty_on_not_found=True,
        )
        if response is None:
            return {}

        data = self._json(response, describe)
        if isinstance(data, list):
            records = data
        elif isinstance(data, dict) and "results" in data:
            records = data.get("results") or []
        else:
            records = [data]

        found: Dict[str, Any] = {}
        for record in records:
            if not isinstance(record, dict):
                continue
            record_id = billing_order_id(record)
            if record_id in wanted and record_id not in found:
                found[record_id] = record
        return found

    def aggregate_financial(self, credential, order_id, payload):
        return aggregate_billing(payload, order_id=order_id, store_id=credential.store_id)


def build_clients(
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, MarketplaceClient]:
    """One client per marketplace, keyed by marketplace value."""
    timeout = config.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
    session = session or requests.Session()
    clients: List[MarketplaceClient] = [
        ShopeeClient(session=session, retry=retry, timeout=timeout),
        MercadoLivreClient(session=session, retry=retry, timeout=timeout),
    ]
    return {client.marketplace.value: client for client in clients}
