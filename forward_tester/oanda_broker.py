"""OANDA v20 REST adapter."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from forward_tester.broker import BaseBroker
from forward_tester.config import HTTP_TIMEOUT_SECONDS, OANDA_LIVE_URL, OANDA_PRACTICE_URL
from forward_tester.errors import AuthError, BrokerError, NetworkError, OrderRejected, RateLimited
from forward_tester.models import BrokerCredentials, Environment, Order, OrderAck

logger = logging.getLogger(__name__)

DUPLICATE_CLIENT_ID = "CLIENT_ORDER_ID_ALREADY_EXISTS"


def base_url_for(environment: Environment) -> str:
    return OANDA_PRACTICE_URL if environment == Environment.PRACTICE else OANDA_LIVE_URL


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def _error_message(payload: Dict[str, Any]) -> str:
    return str(payload.get("errorMessage") or payload.get("message") or payload.get("raw") or "")


def raise_for_status(
    status: int,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    order_request: bool = False,
) -> None:
    """Translate an HTTP status into the engine's broker error taxonomy."""
    if 200 <= status < 300:
        return
    message = _error_message(payload) or f"HTTP {status}"
    if status in (401, 403):
        raise AuthError(f"OANDA rejected credentials: {message}", status=status)
    if status == 429:
        retry_after = _parse_retry_after((headers or {}).get("Retry-After"))
        raise RateLimited(f"OANDA rate limit: {message}", status=status, retry_after=retry_after)
    if status >= 500:
        raise NetworkError(f"OANDA unavailable: {message}", status=status)
    if order_request:
        reason = payload.get("errorCode") or (payload.get("orderRejectTransaction") or {}).get("rejectReason")
        raise OrderRejected(f"Order rejected: {message}", status=status, reason=reason)
    raise BrokerError(f"OANDA request failed: {message}", status=status)


class OandaBroker(BaseBroker):
    """
    Thin async client bound to one set of credentials.

    A ClientSession is created lazily so the instance can be built outside a
    running loop; tests may inject any object exposing `request()` as an
    async context manager.
    """

    def __init__(
        self,
        credentials: BrokerCredentials,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        http_session: Any = None,
        base_url: Optional[str] = None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.base_url = (base_url or base_url_for(credentials.environment)).rstrip("/")
        self._session = http_session
        self._owns_session = http_session is None

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Content-Type": "application/json",
            "Accept-Datetime-Format": "RFC3339",
        }

    def _get_session(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Dict[str, Any], Dict[str, str]]:
        url = f"{self.base_url}{path}"
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=self.headers,
                params=params,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                status = response.status
                text = await response.text()
                headers = dict(response.headers or {})
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"Timeout after {self.timeout}s calling {path}") from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"Transport error calling {path}: {exc}") from exc

        try:
            payload = json.loads(text) if text else {}
        except ValueError:
            payload = {"raw": text[:500]}
        if not isinstance(payload, dict):
            payload = {"raw": payload}
        return status, payload, headers

    async def connect_async(self) -> Dict[str, Any]:
        return await self.get_account_summary_async()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            try:
                await self._session.close()
            finally:
                self._session = None

    async def get_account_summary_async(self) -> Dict[str, Any]:
        status, payload, headers = await self._request(
            "GET", f"/v3/accounts/{self.credentials.account_id}/summary"
        )
        raise_for_status(status, payload, headers)
        account = payload.get("account") or {}
        summary = {
            "account_id": account.get("id", self.credentials.account_id),
            "currency": account.get("currency"),
            "open_trade_count": account.get("openTradeCount"),
        }
        for src, dest in (("balance", "balance"), ("NAV", "nav"), ("marginAvailable", "margin_available")):
            try:
                summary[dest] = float(account[src]) if account.get(src) is not None else None
            except (TypeError, ValueError):
                summary[dest] = None
        return summary

    async def get_positions_async(self) -> list:
        status, payload, headers = await self._request(
            "GET", f"/v3/accounts/{self.credentials.account_id}/openPositions"
        )
        raise_for_status(status, payload, headers)
        positions = []
        for entry in payload.get("positions") or []:
            long_units = float((entry.get("long") or {}).get("units") or 0)
            short_units = float((entry.get("short") or {}).get("units") or 0)
            positions.append(
                {
                    "symbol": entry.get("instrument"),
                    "quantity": long_units + short_units,
                    "unrealized_pl": float(entry.get("unrealizedPL") or 0),
                }
            )
        return positions

    async def fetch_candles(self, symbol: str, granularity: str, count: int) -> Dict[str, Any]:
        status, payload, headers = await self._request(
            "GET",
            f"/v3/instruments/{symbol}/candles",
            params={"count": str(count), "granularity": granularity, "price": "M"},
        )
        raise_for_status(status, payload, headers)
        return payload

    async def place_order_async(self, order: Order) -> OrderAck:
        status, payload, headers = await self._request(
            "POST",
            f"/v3/accounts/{self.credentials.account_id}/orders",
            body=order.to_payload(),
        )
        try:
            raise_for_status(status, payload, headers, order_request=True)
        except OrderRejected as exc:
            if order.client_id and exc.reason == DUPLICATE_CLIENT_ID:
                return await self.find_order_by_client_id(order.client_id)
            raise

        # A 201 can still carry a cancel (e.g. FOK not filled, insufficient margin)
        cancel = payload.get("orderCancelTransaction") or payload.get("orderRejectTransaction")
        if cancel:
            reason = cancel.get("reason") or cancel.get("rejectReason")
            raise OrderRejected(f"Order cancelled by venue: {reason}", status=status, reason=reason)

        create = payload.get("orderCreateTransaction") or {}
        fill = payload.get("orderFillTransaction") or {}
        fill_price = None
        if fill.get("price") is not None:
            try:
                fill_price = float(fill["price"])
            except (TypeError, ValueError):
                fill_price = None
        return OrderAck(
            order_id=create.get("id") or fill.get("orderID"),
            transaction_id=fill.get("id") or payload.get("lastTransactionID"),
            fill_price=fill_price,
            raw=payload,
        )

    async def find_order_by_client_id(self, client_id: str) -> OrderAck:
        """Ack for an order an earlier attempt already placed under `client_id`."""
        status, payload, headers = await self._request(
            "GET", f"/v3/accounts/{self.credentials.account_id}/orders/@{client_id}"
        )
        raise_for_status(status, payload, headers)
        existing = payload.get("order") or {}
        logger.warning(f"Order {client_id} was already placed as {existing.get('id')}; not resubmitting")
        return OrderAck(
            order_id=existing.get("id"),
            transaction_id=existing.get("fillingTransactionID") or payload.get("lastTransactionID"),
            fill_price=None,
            raw=payload,
            already_placed=True,
        )
