"""
GatewayConnector — Async client for the rPoly trading gateway.

The gateway fronts the exchange: it serves one dashboard document (markets,
balances, authoritative positions) and accepts order requests. This client
implements the trading core's MarketFeed, PositionSource and OrderGateway
protocols on top of it.

    GET  /api/dashboard     → markets[], balances, positions[]
    POST /api/trade         → buy  {side: UP|DOWN, size, asset, conditionId}
    POST /api/sell          → sell {side: UP|DOWN, size, asset, conditionId}
    POST /api/sell-orphan   → sell {tokenId, size}

Reads are retried (3 attempts, 1 s fixed wait) on transient failures. Order
submissions are never retried here: a timed-out order may still have been
matched, so retry decisions belong to the ExitManager, which re-queries the
authoritative position first.

Usage:
    client = AsyncGatewayClient("http://localhost:3001", auth_token="...")
    snapshots = await client.get_snapshots()
"""

import time
from collections import deque
from collections.abc import Callable
from datetime import datetime

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from rpoly.errors import GatewayAuthError, GatewayError, TransientNetworkError
from workflows.updown.models import (
    AuthoritativePosition,
    HistoricalFeeds,
    HolderPosition,
    MarketSnapshot,
    OddsPoint,
    OrderBookTop,
    OrderResult,
    PricePoint,
    Side,
    TradeFlowEntry,
    normalize_side,
)

logger = structlog.get_logger(__name__)

RETRY_ATTEMPTS = 3
RETRY_DELAY_SEC = 1.0
_HISTORY_POINTS = 120
_API_SIDE = {"YES": "UP", "NO": "DOWN"}
_WINDOW_SEC = {"5m": 300, "15m": 900}


def _float(value, default: float | None = None) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_time(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _parse_book(raw: dict | None) -> OrderBookTop | None:
    if not raw:
        return None
    bid = raw.get("bestBid") or {}
    ask = raw.get("bestAsk") or {}
    bid_price, ask_price = _float(bid.get("price")), _float(ask.get("price"))
    bid_depth = raw.get("bidDepth", (bid_price or 0.0) * (_float(bid.get("size"), 0.0)))
    ask_depth = raw.get("askDepth", (ask_price or 0.0) * (_float(ask.get("size"), 0.0)))
    return OrderBookTop(
        best_bid=bid_price,
        best_ask=ask_price,
        bid_depth=_float(bid_depth, 0.0),
        ask_depth=_float(ask_depth, 0.0),
    )


# ── Async Gateway Client ─────────────────────────────────────────────


class AsyncGatewayClient:
    """
    Async client for the trading gateway.

    Features:
    - httpx.AsyncClient with HTTP/2 and connection pooling
    - Fixed-delay retry of reads on timeouts, connection errors and 5xx
    - Rolling odds / live-price history per market for the signal feeds
    - Structured logging for every API call
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str = "",
        timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            http2=True,
            headers=headers,
            timeout=httpx.Timeout(timeout_sec, connect=5.0),
            limits=httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            ),
            transport=transport,
        )
        self._clock = clock
        self._dashboard: dict = {}
        self._assets: dict[str, str] = {}
        self._odds: dict[str, deque[OddsPoint]] = {}
        self._prices: dict[str, deque[PricePoint]] = {}
        self._extras: dict[str, dict] = {}

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Execute a gateway request, mapping failures onto the error taxonomy."""
        start = time.monotonic()
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}", endpoint=path) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection failed: {e}", endpoint=path) from e

        latency_ms = (time.monotonic() - start) * 1000

        if resp.status_code in (401, 403):
            raise GatewayAuthError(
                "Authentication failed — check RPOLY_AUTH_TOKEN",
                endpoint=path,
                detail=str(resp.status_code),
            )
        if resp.status_code >= 500:
            logger.warning("gateway_server_error", path=path, status=resp.status_code)
            raise TransientNetworkError(
                f"Gateway error {resp.status_code}", endpoint=path, detail=resp.text[:200]
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"Invalid JSON from {path}", endpoint=path) from e

        if resp.status_code >= 400 and not isinstance(data, dict):
            raise GatewayError(
                f"Gateway error {resp.status_code}", endpoint=path, detail=resp.text[:200]
            )

        logger.debug(
            "gateway_request",
            method=method,
            path=path,
            status=resp.status_code,
            latency_ms=round(latency_ms),
        )
        return data

    # ── Reads ─────────────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(RETRY_ATTEMPTS),
        wait=wait_fixed(RETRY_DELAY_SEC),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True,
    )
    async def get_dashboard(self) -> dict:
        """Fetch and cache the dashboard document."""
        self._dashboard = await self._request("GET", "/api/dashboard")
        return self._dashboard

    async def get_snapshots(self) -> list[MarketSnapshot]:
        data = await self.get_dashboard()
        now = self._clock()
        markets = data.get("markets") or []
        snapshots = []
        for raw in markets:
            try:
                snapshot = self._parse_market(raw, now)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("gateway_market_unparseable", error=str(e), market=raw.get("conditionId"))
                continue
            self._remember(snapshot, raw)
            snapshots.append(snapshot)
        if markets:
            self._forget({raw.get("conditionId") for raw in markets})
        return snapshots

    def _parse_market(self, raw: dict, now: float) -> MarketSnapshot:
        end = _parse_time(raw.get("endDate"))
        time_left = max(0.0, end - now) if end is not None else _float(raw.get("timeLeftSec"), 0.0)
        window_sec = int(raw.get("windowSec") or _WINDOW_SEC.get(raw.get("duration", ""), 300))
        settled = raw.get("winner") or raw.get("settledOutcome")
        return MarketSnapshot(
            market_id=raw["conditionId"],
            asset=raw.get("asset") or "BTC",
            up_price=float(raw["upPrice"]),
            down_price=float(raw["downPrice"]),
            reference_price=_float(raw.get("priceToBeat")),
            live_price=_float(raw.get("cryptoPrice")),
            volume=_float(raw.get("volume"), 0.0),
            liquidity=_float(raw.get("liquidity"), 0.0),
            up_book=_parse_book(raw.get("orderbook")),
            down_book=_parse_book(raw.get("downOrderbook")),
            time_left_sec=time_left,
            window_sec=window_sec,
            timestamp=now,
            settled_outcome=normalize_side(settled) if settled else None,
        )

    def _remember(self, snapshot: MarketSnapshot, raw: dict) -> None:
        mid = snapshot.market_id
        self._assets[mid] = snapshot.asset
        odds = self._odds.setdefault(mid, deque(maxlen=_HISTORY_POINTS))
        odds.append(OddsPoint(timestamp=snapshot.timestamp, up_price=snapshot.up_price))
        if snapshot.live_price:
            prices = self._prices.setdefault(mid, deque(maxlen=_HISTORY_POINTS))
            prices.append(PricePoint(timestamp=snapshot.timestamp, price=snapshot.live_price))
        self._extras[mid] = {"holders": raw.get("holders") or [], "trades": raw.get("trades") or []}

    def _forget(self, listed: set[str]) -> None:
        """Drop rolling history of markets the dashboard no longer lists."""
        stale = (self._assets.keys() | self._odds.keys() | self._prices.keys() | self._extras.keys()) - listed
        for mid in stale:
            self._assets.pop(mid, None)
            self._odds.pop(mid, None)
            self._prices.pop(mid, None)
            self._extras.pop(mid, None)
        if stale:
            logger.debug("gateway_history_pruned", markets=len(stale))

    async def get_feeds(self, market_id: str) -> HistoricalFeeds:
        """Auxiliary feeds accumulated from successive dashboard polls."""
        extras = self._extras.get(market_id, {})
        holders = [
            HolderPosition(side=normalize_side(h["side"]), notional=float(h["notional"]), address=h.get("address", ""))
            for h in extras.get("holders", [])
            if h.get("side") and h.get("notional") is not None
        ]
        flow = [
            TradeFlowEntry(
                side=normalize_side(t["side"]),
                action=str(t.get("action", "BUY")).upper(),
                notional=float(t["notional"]),
                timestamp=_float(t.get("timestamp"), 0.0),
            )
            for t in extras.get("trades", [])
            if t.get("side")
            and t.get("notional") is not None
            and str(t.get("action", "BUY")).upper() in ("BUY", "SELL")
        ]
        return HistoricalFeeds(
            odds_history=list(self._odds.get(market_id, ())),
            price_history=list(self._prices.get(market_id, ())),
            holders=holders,
            trade_flow=flow,
        )

    async def get_bankroll(self) -> float:
        data = self._dashboard or await self.get_dashboard()
        return _float(((data.get("balances") or {}).get("proxy") or {}).get("usdc"), 0.0)

    async def get_positions(self) -> list[AuthoritativePosition]:
        """Authoritative positions — always a fresh dashboard read."""
        data = await self.get_dashboard()
        positions = []
        for raw in data.get("positions") or []:
            size = _float(raw.get("size"), 0.0)
            if size <= 0 or not raw.get("conditionId"):
                continue
            try:
                side = normalize_side(raw.get("side", ""))
            except ValueError:
                logger.warning("gateway_position_side_unknown", side=raw.get("side"))
                continue
            positions.append(
                AuthoritativePosition(
                    market_id=raw["conditionId"],
                    side=side,
                    size=size,
                    avg_price=_float(raw.get("avgPrice"), 0.0),
                    cur_price=_float(raw.get("curPrice")),
                    token_id=str(raw.get("asset") or ""),
                    title=raw.get("title") or "",
                )
            )
        return positions

    # ── Orders ────────────────────────────────────────────────────────

    @staticmethod
    def _order_result(data: dict) -> OrderResult:
        raw_status = str(data.get("status") or "").lower()
        success = bool(data.get("success"))
        if raw_status == "matched" or (success and raw_status in ("", "filled")):
            status = "matched"
        elif raw_status in ("live", "resting", "delayed"):
            status = "resting"
        else:
            status = "failed"
        return OrderResult(
            success=success,
            status=status if success else "failed",
            fill_price=_float(data.get("price")),
            size=_float(data.get("size")),
            order_id=str(data.get("orderID") or ""),
            error=str(data.get("error") or ""),
        )

    async def buy(self, market_id: str, side: Side, amount_usd: float) -> OrderResult:
        payload = {
            "side": _API_SIDE[side],
            "size": f"{amount_usd:.2f}",
            "asset": self._assets.get(market_id, "BTC"),
            "conditionId": market_id,
        }
        logger.info("gateway_buy", market_id=market_id, side=side, amount_usd=amount_usd)
        result = self._order_result(await self._request("POST", "/api/trade", json=payload))
        logger.info("gateway_buy_result", market_id=market_id, status=result.status, price=result.fill_price)
        return result

    async def sell(self, market_id: str, side: Side, size: float) -> OrderResult:
        payload = {
            "side": _API_SIDE[side],
            "size": f"{size:.4f}",
            "asset": self._assets.get(market_id, "BTC"),
            "conditionId": market_id,
        }
        logger.info("gateway_sell", market_id=market_id, side=side, size=size)
        result = self._order_result(await self._request("POST", "/api/sell", json=payload))
        logger.info("gateway_sell_result", market_id=market_id, status=result.status, error=result.error)
        return result

    async def sell_token(self, token_id: str, size: float) -> OrderResult:
        payload = {"tokenId": token_id, "size": f"{size:.4f}"}
        logger.info("gateway_sell_orphan", token_id=token_id[:12], size=size)
        return self._order_result(await self._request("POST", "/api/sell-orphan", json=payload))

    async def close(self):
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
