import asyncio
import logging
import aiohttp
from typing import Optional, Set
from config import config


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    """
    Fire-and-forget Telegram messages about order events.

    Delivery runs in background tasks; a failed send is logged and never
    reaches the caller. Without a bot token messages only go to the log.
    """

    def __init__(self):
        cfg = config.get('notifications') or {}
        self.token: Optional[str] = cfg.get('telegram_token')
        self.admin_chat_id: Optional[str] = cfg.get('admin_chat_id')
        self.timeout = float(cfg.get('timeout_s', 5))
        self.enabled = bool(cfg.get('enabled', True)) and bool(self.token)
        self._pending: Set[asyncio.Task] = set()

    def send(self, chat_id: Optional[str], text: str) -> None:
        if not self.enabled or not chat_id:
            logger.info("[Notify] %s", text)
            return
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(chat_id, text))
        except RuntimeError:
            logger.info("[Notify] %s", text)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, chat_id: str, text: str) -> None:
        url = f"{TELEGRAM_API}/bot{self.token}/sendMessage"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json={'chat_id': chat_id, 'text': text, 'parse_mode': 'HTML'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        logger.error("[Notify] Telegram send failed with status %s", response.status)
        except Exception as e:
            logger.error("[Notify] Telegram error: %s", e)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def order_opened(self, chat_id, order_id: str, side: str, entry_price: float,
                     target_price: float, stop_price: float):
        self.send(
            chat_id,
            f"<b>Opened</b> {side} order {order_id}\n"
            f"Entry: {entry_price:.4f}\nTarget: {target_price:.4f}\nStoploss: {stop_price:.4f}",
        )

    def target_moved(self, chat_id, order_id: str, side: str, target_price: float, stop_price: float):
        self.send(
            chat_id,
            f"<b>Target moved</b> {side} order {order_id}\n"
            f"Next target: {target_price:.4f}\nStoploss: {stop_price:.4f}",
        )

    def stop_hit(self, chat_id, order_id: str, side: str, entry_price: float, mark_price: float,
                 net_profit: float):
        title = "Take profit" if net_profit >= 0 else "Stoploss hit"
        self.send(
            chat_id,
            f"<b>{title}</b> {side} order {order_id}\n"
            f"Entry: {entry_price:.4f}\nExit: {mark_price:.4f}\nNet profit: {net_profit:.4f}",
        )

    def order_closed(self, chat_id, order_id: str, side: str, reason: str, mark_price: float,
                     net_profit: float):
        self.send(
            chat_id,
            f"<b>Closed</b> {side} order {order_id} ({reason})\n"
            f"Exit: {mark_price:.4f}\nNet profit: {net_profit:.4f}",
        )

    def not_enough_balance(self, chat_id, symbol: str, reason: str):
        self.send(chat_id, f"<b>Not enough balance</b> to open {symbol}: {reason}")

    def anomaly(self, message: str):
        logger.error("[Anomaly] %s", message)
        self.send(self.admin_chat_id, f"<b>Anomaly</b>\n{message}")


notifier = Notifier()
