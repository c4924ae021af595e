import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import websockets

from api.metrics import metrics
from config import config
from monitoring.async_utils import cancel_tasks, run_tasks_with_cleanup
from .broker_pool import BrokerPool


logger = logging.getLogger(__name__)

STOP_ORDER_TYPES = ("STOP_MARKET", "TAKE_PROFIT_MARKET")

StopHandler = Callable[[str, float, str], Awaitable[None]]
ManualCloseHandler = Callable[[str, float, Optional[int]], Awaitable[None]]


@dataclass(frozen=True)
class StopExecuted:
    stop_order_id: str
    avg_price: float


@dataclass(frozen=True)
class ManualClose:
    symbol: str
    avg_price: float


def parse_order_update(event: Dict[str, Any], manual_prefix: str = "web"):
    """
    Classify an ``ORDER_TRADE_UPDATE`` payload.

    Returns ``StopExecuted`` for reduce-only stop/take-profit orders that are
    fully filled, ``ManualClose`` for reduce-only market fills whose client id
    was issued outside the engine, and ``None`` for everything else.
    """
    if not isinstance(event, dict) or event.get("e") != "ORDER_TRADE_UPDATE":
        return None
    o = event.get("o") or {}
    if o.get("X") != "FILLED" or not o.get("R"):
        return None
    try:
        avg_price = float(o.get("ap") or 0.0)
    except (TypeError, ValueError):
        return None
    if avg_price <= 0:
        return None

    original_type = o.get("ot") or o.get("o")
    if original_type in STOP_ORDER_TYPES or o.get("o") in STOP_ORDER_TYPES:
        return StopExecuted(stop_order_id=str(o.get("i")), avg_price=avg_price)

    client_id = str(o.get("c") or "")
    if o.get("o") == "MARKET" and original_type == "MARKET" and manual_prefix in client_id:
        return ManualClose(symbol=o.get("s"), avg_price=avg_price)
    return None


class UserDataStream:
    """
    Single push connection carrying the user data streams of every pooled account.

    Each account gets its own listen key; all keys are combined into one
    websocket. On any error or close the keys are dropped and, after a fixed
    delay, new keys are created and the connection is reopened.
    """

    def __init__(
        self,
        pool: BrokerPool,
        on_stop_executed: StopHandler,
        on_manual_close: ManualCloseHandler,
        connect: Callable = websockets.connect,
    ):
        exchange_cfg = config.exchange
        self.pool = pool
        self.on_stop_executed = on_stop_executed
        self.on_manual_close = on_manual_close
        self._connect = connect
        self.stream_url = exchange_cfg.get("stream_url", "wss://fstream.binance.com/stream")
        self.refresh_interval = float(exchange_cfg.get("listen_key_refresh_s", 1800))
        self.reconnect_delay = float(exchange_cfg.get("reconnect_delay_s", 3))
        self.manual_prefix = exchange_cfg.get("manual_close_client_prefix", "web")
        self.running = False
        self._keys: Dict[str, int] = {}
        self._ws = None
        self._dispatched: Set[asyncio.Task] = set()

    async def _open_keys(self) -> None:
        self._keys = {}
        for user_id in self.pool.user_ids():
            broker = self.pool.get(user_id)
            if broker is None:
                continue
            key = await broker.create_listen_key()
            if key:
                self._keys[key] = user_id
            else:
                logger.warning("No listenKey for user %s; stream events will rely on polling", user_id)

    def _url(self) -> str:
        return f"{self.stream_url}?streams={'/'.join(self._keys)}"

    async def run(self) -> None:
        while self.running:
            try:
                await self._open_keys()
                if not self._keys:
                    await asyncio.sleep(self.reconnect_delay)
                    continue
                async with self._connect(self._url()) as ws:
                    self._ws = ws
                    logger.info("User data stream connected for %s accounts", len(self._keys))
                    async for raw in ws:
                        await self.handle_message(raw)
                logger.warning("User data stream closed")
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("User data stream error: %s", exc)
            finally:
                self._ws = None
                self._keys = {}

            if not self.running:
                break
            metrics.record_stream_reconnect()
            try:
                await asyncio.sleep(self.reconnect_delay)
            except asyncio.CancelledError:
                break

    async def keepalive_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.refresh_interval)
                for key, user_id in list(self._keys.items()):
                    broker = self.pool.get(user_id)
                    if broker is None or not await broker.keepalive_listen_key(key):
                        logger.warning("listenKey keepalive failed for user %s; reconnecting", user_id)
                        await self._force_reconnect()
                        break
            except asyncio.CancelledError:
                break

    async def _force_reconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()

    async def handle_message(self, raw: Any) -> Optional[asyncio.Task]:
        """Route one stream message; the handler runs as its own task so the read loop never waits on it."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable stream message")
            return None
        event = message.get("data") if isinstance(message, dict) and "data" in message else message
        user_id = self._keys.get(message.get("stream")) if isinstance(message, dict) else None

        parsed = parse_order_update(event, self.manual_prefix)
        if isinstance(parsed, StopExecuted):
            handler = self.on_stop_executed(parsed.stop_order_id, parsed.avg_price, "stream")
        elif isinstance(parsed, ManualClose):
            handler = self.on_manual_close(parsed.symbol, parsed.avg_price, user_id)
        else:
            return None
        task = asyncio.create_task(self._run_handler(handler, parsed))
        self._dispatched.add(task)
        task.add_done_callback(self._dispatched.discard)
        return task

    async def _run_handler(self, handler: Awaitable, event: Any) -> None:
        try:
            await handler
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stream handler failed for %s", event)

    async def start(self) -> None:
        self.running = True
        tasks = [
            asyncio.create_task(self.run()),
            asyncio.create_task(self.keepalive_loop()),
        ]
        await run_tasks_with_cleanup(tasks)

    async def stop(self) -> None:
        self.running = False
        await self._force_reconnect()
        await cancel_tasks(list(self._dispatched))
