import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import config
from risk.position_sizer import truncate_stop_price
from strategy.models import Candle, Side
from .binance_rest import BinanceAPIError, BinanceRESTClient
from .broker import Broker, CloseResult, OpenResult, StopFill, StopResult, VerifyResult


logger = logging.getLogger(__name__)

STOP_ORDER_TYPES = ("STOP_MARKET", "TAKE_PROFIT_MARKET")
UNKNOWN_ORDER = -2011


def _fmt(value: float) -> str:
    return format(Decimal(str(value)).normalize(), "f")


class BinanceBroker(Broker):
    """Binance USDⓈ-M futures implementation of the broker capability for one account."""

    def __init__(
        self,
        user_id: int,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        rest: Optional[BinanceRESTClient] = None,
    ):
        exchange_cfg = config.exchange
        self.user_id = user_id
        self.rest = rest or BinanceRESTClient(api_key=api_key, api_secret=api_secret)
        self.confirm_attempts = int(exchange_cfg.get("fill_confirm_attempts", 5))
        self.confirm_delay = float(exchange_cfg.get("fill_confirm_delay_s", 0.5))
        self.history_limit = int(exchange_cfg.get("poll_history_limit", 50))
        self._taker_fee = float(exchange_cfg.get("taker_fee", 0.0005))
        self._maker_fee = float(exchange_cfg.get("maker_fee", 0.0002))

    async def open_market_order(self, symbol: str, side: Side, qty: float) -> OpenResult:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": _fmt(qty),
            "newOrderRespType": "RESULT",
        }
        try:
            ack = await self.rest.post("/fapi/v1/order", params=params, signed=True)
        except Exception as exc:
            self._log_transport_error(f"open {side.value} {symbol}", exc)
            return OpenResult(success=False, error=str(exc))

        detail = await self._confirm_fill(symbol, ack)
        if detail is None:
            logger.error(
                "Open %s %s qty=%s not confirmed filled; sending reduce-only close",
                side.value,
                symbol,
                qty,
            )
            await self.close_position(symbol, side.opposite, qty)
            return OpenResult(success=False, error="fill not confirmed")

        return OpenResult(
            success=True,
            order_id=detail.order_id,
            entry_price=detail.avg_price,
            qty=detail.executed_qty,
            side=detail.side or side,
            timestamp=detail.update_time,
        )

    async def close_position(self, symbol: str, side: Side, qty: float) -> CloseResult:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": _fmt(qty),
            "reduceOnly": "true",
            "newOrderRespType": "RESULT",
        }
        try:
            ack = await self.rest.post("/fapi/v1/order", params=params, signed=True)
        except Exception as exc:
            self._log_transport_error(f"close {symbol}", exc)
            return CloseResult(success=False, error=str(exc))

        detail = await self._confirm_fill(symbol, ack)
        if detail is None:
            return CloseResult(success=False, error="fill not confirmed")
        return CloseResult(success=True, mark_price=detail.avg_price)

    async def place_stop(self, symbol: str, side: Side, stop_price: float, qty: float) -> StopResult:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "STOP_MARKET",
            "stopPrice": _fmt(truncate_stop_price(stop_price)),
            "quantity": _fmt(qty),
            "reduceOnly": "true",
            "newOrderRespType": "RESULT",
        }
        try:
            ack = await self.rest.post("/fapi/v1/order", params=params, signed=True)
        except Exception as exc:
            self._log_transport_error(f"stop {symbol} @ {stop_price}", exc)
            return StopResult(success=False, error=str(exc))
        if not isinstance(ack, dict) or ack.get("orderId") is None:
            return StopResult(success=False, error="missing orderId in stop ack")
        return StopResult(success=True, stop_order_id=str(ack["orderId"]))

    async def cancel_stops(self, symbol: str, stop_order_ids: List[str]) -> bool:
        ids = [int(i) for i in stop_order_ids if i]
        if not ids:
            return True
        params = {"symbol": symbol, "orderIdList": json.dumps(ids, separators=(",", ":"))}
        try:
            payload = await self.rest.delete("/fapi/v1/batchOrders", params=params, signed=True)
        except Exception as exc:
            self._log_transport_error(f"cancel stops {ids} on {symbol}", exc)
            return False

        ok = True
        for item in payload if isinstance(payload, list) else []:
            code = item.get("code") if isinstance(item, dict) else None
            if code == UNKNOWN_ORDER:
                # gone already: cancelled elsewhere or triggered, callers verify which
                logger.info("Stop on %s already gone: %s", symbol, item.get("msg"))
                continue
            if code is not None and code != 200:
                logger.error("Cancel stop on %s rejected: %s", symbol, item)
                ok = False
        return ok

    async def verify_order(self, symbol: str, order_id: str) -> VerifyResult:
        try:
            data = await self.rest.get(
                "/fapi/v1/order",
                params={"symbol": symbol, "orderId": order_id},
                signed=True,
            )
        except Exception as exc:
            self._log_transport_error(f"verify order {order_id}", exc)
            return VerifyResult(success=False, order_id=str(order_id))
        return self._parse_order(data)

    async def recent_filled_order(self, symbol: str, side: Side) -> Optional[str]:
        try:
            trades = await self.rest.get(
                "/fapi/v1/userTrades",
                params={"symbol": symbol, "limit": self.history_limit},
                signed=True,
            )
        except Exception as exc:
            self._log_transport_error(f"recent trades {symbol}", exc)
            return None
        matching = [t for t in trades or [] if t.get("side") == side.value]
        if not matching:
            return None
        latest = max(matching, key=lambda t: self._as_int(t.get("time")) or 0)
        return str(latest.get("orderId"))

    async def has_open_position(self, symbol: str) -> bool:
        try:
            data = await self.rest.get(
                "/fapi/v2/positionRisk",
                params={"symbol": symbol},
                signed=True,
            )
        except Exception as exc:
            self._log_transport_error(f"position {symbol}", exc)
            return False
        for pos in data if isinstance(data, list) else []:
            if pos.get("symbol") != symbol:
                continue
            if (self._as_float(pos.get("positionAmt")) or 0.0) != 0.0:
                return True
        return False

    async def wallet_balance(self) -> Optional[float]:
        try:
            data = await self.rest.get("/fapi/v2/account", signed=True)
        except Exception as exc:
            self._log_transport_error("fetch wallet balance", exc)
            return None
        if not isinstance(data, dict):
            return None
        return self._as_float(data.get("totalWalletBalance"))

    async def price(self, symbol: str) -> Optional[float]:
        try:
            data = await self.rest.get("/fapi/v1/premiumIndex", params={"symbol": symbol})
        except Exception as exc:
            self._log_transport_error(f"mark price {symbol}", exc)
            return None
        if not isinstance(data, dict):
            return None
        return self._as_float(data.get("markPrice"))

    async def daily_candles(self, symbol: str, days: int) -> Optional[List[Candle]]:
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        start = today - timedelta(days=days)
        params = {
            "symbol": symbol,
            "interval": "1d",
            "startTime": int(start.timestamp() * 1000),
            "endTime": int(today.timestamp() * 1000) - 1,
        }
        try:
            rows = await self.rest.get("/fapi/v1/klines", params=params)
        except Exception as exc:
            self._log_transport_error(f"daily candles {symbol}", exc)
            return None
        return [self._parse_kline(row) for row in rows or []]

    async def adjust_leverage(self, symbol: str, leverage: int) -> bool:
        try:
            await self.rest.post(
                "/fapi/v1/leverage",
                params={"symbol": symbol, "leverage": int(leverage)},
                signed=True,
            )
            return True
        except Exception as exc:
            self._log_transport_error(f"set leverage {leverage} on {symbol}", exc)
            return False

    async def recent_stop_fills(self, symbol: str) -> List[StopFill]:
        try:
            orders = await self.rest.get(
                "/fapi/v1/allOrders",
                params={"symbol": symbol, "limit": self.history_limit},
                signed=True,
            )
        except Exception as exc:
            self._log_transport_error(f"order history {symbol}", exc)
            return []
        fills: List[StopFill] = []
        for item in orders or []:
            order_type = item.get("origType") or item.get("type")
            if item.get("status") != "FILLED" or order_type not in STOP_ORDER_TYPES:
                continue
            avg_price = self._as_float(item.get("avgPrice"))
            if not avg_price:
                continue
            fills.append(
                StopFill(
                    stop_order_id=str(item.get("orderId")),
                    symbol=symbol,
                    avg_price=avg_price,
                    order_type=order_type,
                    update_time=self._as_int(item.get("updateTime")) or 0,
                )
            )
        return fills

    async def create_listen_key(self) -> Optional[str]:
        try:
            data = await self.rest.post("/fapi/v1/listenKey", api_key_only=True)
        except Exception as exc:
            self._log_transport_error("create listenKey", exc)
            return None
        if isinstance(data, dict):
            return data.get("listenKey")
        return None

    async def keepalive_listen_key(self, listen_key: str) -> bool:
        try:
            await self.rest.put(
                "/fapi/v1/listenKey",
                params={"listenKey": listen_key},
                api_key_only=True,
            )
            return True
        except Exception as exc:
            self._log_transport_error("keepalive listenKey", exc)
            return False

    def taker_fee(self) -> float:
        return self._taker_fee

    def maker_fee(self) -> float:
        return self._maker_fee

    async def close(self) -> None:
        await self.rest.close()

    async def _confirm_fill(self, symbol: str, ack: Any) -> Optional[VerifyResult]:
        """Poll the order until the exchange reports fill data, bounded by the configured attempts."""
        detail = self._parse_order(ack)
        if detail.filled:
            return detail
        if not detail.order_id:
            return None
        for attempt in range(self.confirm_attempts):
            await asyncio.sleep(self.confirm_delay)
            detail = await self.verify_order(symbol, detail.order_id)
            if detail.filled:
                return detail
            logger.debug(
                "Order %s on %s not filled yet (attempt %s/%s, status=%s)",
                detail.order_id,
                symbol,
                attempt + 1,
                self.confirm_attempts,
                detail.status,
            )
        return None

    def _parse_order(self, payload: Any) -> VerifyResult:
        if not isinstance(payload, dict) or payload.get("orderId") is None:
            return VerifyResult(success=False)
        side = payload.get("side")
        return VerifyResult(
            success=True,
            order_id=str(payload.get("orderId")),
            status=payload.get("status"),
            side=Side(side) if side in ("BUY", "SELL") else None,
            avg_price=self._as_float(payload.get("avgPrice")),
            executed_qty=self._as_float(payload.get("executedQty")),
            update_time=self._as_int(payload.get("updateTime")),
            raw=payload,
        )

    def _parse_kline(self, row: List[Any]) -> Candle:
        opened = datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc)
        return Candle(
            date=opened.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BinanceAPIError):
            logger.error(
                "Binance %s failed for user %s (code=%s, msg=%s)",
                action,
                self.user_id,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed for user %s: %s", action, self.user_id, error)

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
