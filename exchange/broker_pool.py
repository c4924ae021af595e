import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from config import config
from .binance_broker import BinanceBroker
from .broker import Broker

if TYPE_CHECKING:
    from orchestration.persistence import OrderStore


logger = logging.getLogger(__name__)

DUMMY_USER_ID = 0

BrokerFactory = Callable[[int, Optional[str], Optional[str]], Broker]


class BrokerPool:
    """
    Registry of broker instances keyed by user id.

    User ``0`` is the unauthenticated instance used for public reads such as
    mark price and candles. The registry is rebuilt from the store on a fixed
    cadence so credential and activation changes are picked up without a
    restart; the swap replaces the whole mapping at once.
    """

    def __init__(self, store: "OrderStore", factory: Optional[BrokerFactory] = None):
        self.store = store
        self._factory: BrokerFactory = factory or (lambda uid, key, secret: BinanceBroker(uid, key, secret))
        self._brokers: Dict[int, Broker] = {}
        self._credentials: Dict[int, Tuple[Optional[str], Optional[str]]] = {}
        self.refresh_interval = float(config.exchange.get("broker_pool_refresh_s", 3600))
        self.running = False

    async def load(self) -> None:
        users = await self.store.active_users()
        brokers: Dict[int, Broker] = {}
        credentials: Dict[int, Tuple[Optional[str], Optional[str]]] = {}

        brokers[DUMMY_USER_ID] = self._brokers.get(DUMMY_USER_ID) or self._factory(DUMMY_USER_ID, None, None)
        credentials[DUMMY_USER_ID] = (None, None)

        for user in users:
            if not user.api_key or not user.api_secret:
                logger.warning("User %s has no exchange credentials; skipping", user.id)
                continue
            creds = (user.api_key, user.api_secret)
            existing = self._brokers.get(user.id)
            if existing is not None and self._credentials.get(user.id) == creds:
                brokers[user.id] = existing
            else:
                brokers[user.id] = self._factory(user.id, user.api_key, user.api_secret)
            credentials[user.id] = creds

        stale = [b for uid, b in self._brokers.items() if brokers.get(uid) is not b]
        self._brokers = brokers
        self._credentials = credentials
        for broker in stale:
            await broker.close()
        logger.info("Broker pool loaded: %s user brokers", len(brokers) - 1)

    def get(self, user_id: int = DUMMY_USER_ID) -> Optional[Broker]:
        return self._brokers.get(user_id)

    @property
    def dummy(self) -> Broker:
        broker = self._brokers.get(DUMMY_USER_ID)
        if broker is None:
            broker = self._factory(DUMMY_USER_ID, None, None)
            self._brokers[DUMMY_USER_ID] = broker
        return broker

    def user_ids(self) -> List[int]:
        return [uid for uid in self._brokers if uid != DUMMY_USER_ID]

    async def run_refresh_loop(self) -> None:
        self.running = True
        while self.running:
            try:
                await asyncio.sleep(self.refresh_interval)
                await self.load()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Broker pool refresh failed: %s", exc)

    async def close(self) -> None:
        self.running = False
        brokers = list(self._brokers.values())
        self._brokers = {}
        self._credentials = {}
        for broker in brokers:
            await broker.close()
