import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional

import asyncpg

from config import config
from strategy.models import (
    Direction,
    Order,
    OrderStatus,
    Side,
    Strategy,
    Target,
    Token,
    TriggerRule,
    User,
)


logger = logging.getLogger(__name__)


class OrderStore(ABC):
    """Durable store the engine reads strategies from and writes order state to."""

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def find_order_by_stop_id(self, stop_order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def update_current_target(self, order_id: str, target_id: int) -> None:
        ...

    @abstractmethod
    async def update_stop_order_id(self, order_id: str, stop_order_id: Optional[str]) -> None:
        ...

    @abstractmethod
    async def finish_order(
        self,
        order_id: str,
        status: OrderStatus,
        mark_price: float,
        net_profit: float,
        fee: float,
    ) -> None:
        ...

    @abstractmethod
    async def find_active_orders(
        self,
        token_id: Optional[int] = None,
        user_id: Optional[int] = None,
        strategy_ids: Optional[Iterable[int]] = None,
    ) -> List[Order]:
        ...

    @abstractmethod
    async def get_ladder(self, token_id: int, strategy_id: int) -> List[Target]:
        """Rungs for the pair, ascending by target percent."""

    @abstractmethod
    async def get_target(self, target_id: int) -> Optional[Target]:
        ...

    @abstractmethod
    async def next_target_above(self, token_id: int, strategy_id: int, target_percent: float) -> Optional[Target]:
        ...

    @abstractmethod
    async def get_strategy(self, strategy_id: int) -> Optional[Strategy]:
        ...

    @abstractmethod
    async def child_strategies(self, parent_id: int) -> List[Strategy]:
        ...

    @abstractmethod
    async def root_strategies_for_token(self, token_id: int) -> List[Strategy]:
        ...

    @abstractmethod
    async def eligible_users(self, token_id: int, user_id: Optional[int] = None) -> List[User]:
        """Active users opted into the token, optionally narrowed to one user."""

    @abstractmethod
    async def count_user_token_strategies(self, user_id: int, token_id: int) -> int:
        ...

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]:
        ...

    @abstractmethod
    async def active_users(self) -> List[User]:
        ...

    @abstractmethod
    async def get_token(self, token_id: int) -> Optional[Token]:
        ...

    @abstractmethod
    async def list_tokens(self) -> List[Token]:
        ...

    async def find_token_by_name(self, name: str) -> Optional[Token]:
        for token in await self.list_tokens():
            if token.name == name or token.symbol == name:
                return token
        return None

    @abstractmethod
    async def adjust_trade_balance(self, user_id: int, delta: float) -> None:
        ...

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None


def _order_from_row(row: Any) -> Order:
    return Order(
        order_id=row['order_id'],
        user_id=row['user_id'],
        token_id=row['token_id'],
        strategy_id=row['strategy_id'],
        side=Side(row['side']),
        entry_price=float(row['entry_price']),
        qty=float(row['qty']),
        budget=float(row['budget']),
        fee=float(row['fee']),
        leverage=int(row['leverage']),
        status=OrderStatus(row['status']),
        current_target_id=row['current_target_id'],
        stop_order_id=row['stop_order_id'],
        mark_price=float(row['mark_price']) if row['mark_price'] is not None else None,
        net_profit=float(row['net_profit']) if row['net_profit'] is not None else None,
        timestamp=int(row['timestamp'] or 0),
    )


def _target_from_row(row: Any) -> Target:
    return Target(
        id=row['id'],
        token_id=row['token_id'],
        strategy_id=row['strategy_id'],
        target_percent=float(row['target_percent']),
        stoploss_percent=float(row['stoploss_percent']),
    )


def _strategy_from_row(row: Any) -> Strategy:
    return Strategy(
        id=row['id'],
        description=row['description'] or '',
        contribution=float(row['contribution']),
        direction=Direction(row['direction']),
        is_active=row['is_active'],
        close_before_new_candle=row['close_before_new_candle'],
        parent_id=row['parent_id'],
        trigger_rule=TriggerRule(row['trigger_rule'] or TriggerRule.DEFAULT.value),
    )


def _token_from_row(row: Any) -> Token:
    return Token(
        id=row['id'],
        name=row['name'],
        stable=row['stable'],
        min_qty=float(row['min_qty']),
        leverage=int(row['leverage']),
        is_active=row['is_active'],
    )


def _user_from_row(row: Any) -> User:
    return User(
        id=row['id'],
        trade_balance=float(row['trade_balance']),
        is_active=row['is_active'],
        api_key=row['api_key'],
        api_secret=row['api_secret'],
        telegram_chat_id=row['telegram_chat_id'],
        token_ids=list(row['token_ids'] or []),
    )


_ORDER_COLUMNS = '''order_id, user_id, token_id, strategy_id, side, entry_price, qty, budget,
    fee, leverage, status, current_target_id, stop_order_id, mark_price, net_profit, timestamp'''

_USER_SELECT = '''
    SELECT u.id, u.trade_balance, u.is_active, u.api_key, u.api_secret, u.telegram_chat_id,
           COALESCE(array_agg(ut.token_id) FILTER (WHERE ut.token_id IS NOT NULL), '{}') AS token_ids
    FROM users u
    LEFT JOIN user_tokens ut ON ut.user_id = u.id
'''


class PostgresOrderStore(OrderStore):
    """asyncpg-backed store; the schema itself is owned by the web application."""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        db_config = config.database
        self.pool = await asyncpg.create_pool(
            host=db_config['host'],
            port=db_config['port'],
            database=db_config['database'],
            user=db_config['user'],
            password=db_config['password'],
            min_size=db_config.get('min_pool_size', 2),
            max_size=db_config.get('max_pool_size', 10),
        )
        logger.info("Connected to order store at %s/%s", db_config['host'], db_config['database'])

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def create_order(self, order: Order) -> Order:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f'''INSERT INTO orders ({_ORDER_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)''',
                order.order_id,
                order.user_id,
                order.token_id,
                order.strategy_id,
                order.side.value,
                order.entry_price,
                order.qty,
                order.budget,
                order.fee,
                order.leverage,
                order.status.value,
                order.current_target_id,
                order.stop_order_id,
                order.mark_price,
                order.net_profit,
                order.timestamp,
            )
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT {_ORDER_COLUMNS} FROM orders WHERE order_id = $1', order_id)
        return _order_from_row(row) if row else None

    async def find_order_by_stop_id(self, stop_order_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT {_ORDER_COLUMNS} FROM orders WHERE stop_order_id = $1',
                stop_order_id,
            )
        return _order_from_row(row) if row else None

    async def update_current_target(self, order_id: str, target_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                'UPDATE orders SET current_target_id = $2, updated_at = now() WHERE order_id = $1',
                order_id,
                target_id,
            )

    async def update_stop_order_id(self, order_id: str, stop_order_id: Optional[str]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                'UPDATE orders SET stop_order_id = $2, updated_at = now() WHERE order_id = $1',
                order_id,
                stop_order_id,
            )

    async def finish_order(
        self,
        order_id: str,
        status: OrderStatus,
        mark_price: float,
        net_profit: float,
        fee: float,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''UPDATE orders
                   SET status = $2, mark_price = $3, net_profit = $4, fee = $5,
                       stop_order_id = NULL, updated_at = now()
                   WHERE order_id = $1''',
                order_id,
                status.value,
                mark_price,
                net_profit,
                fee,
            )

    async def find_active_orders(
        self,
        token_id: Optional[int] = None,
        user_id: Optional[int] = None,
        strategy_ids: Optional[Iterable[int]] = None,
    ) -> List[Order]:
        clauses = ["status = 'ACTIVE'"]
        args: List[Any] = []
        if token_id is not None:
            args.append(token_id)
            clauses.append(f'token_id = ${len(args)}')
        if user_id is not None:
            args.append(user_id)
            clauses.append(f'user_id = ${len(args)}')
        if strategy_ids is not None:
            args.append(list(strategy_ids))
            clauses.append(f'strategy_id = ANY(${len(args)}::int[])')
        query = f'SELECT {_ORDER_COLUMNS} FROM orders WHERE {" AND ".join(clauses)} ORDER BY timestamp'
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [_order_from_row(r) for r in rows]

    async def get_ladder(self, token_id: int, strategy_id: int) -> List[Target]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, token_id, strategy_id, target_percent, stoploss_percent
                   FROM targets WHERE token_id = $1 AND strategy_id = $2
                   ORDER BY target_percent ASC''',
                token_id,
                strategy_id,
            )
        return [_target_from_row(r) for r in rows]

    async def get_target(self, target_id: int) -> Optional[Target]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT id, token_id, strategy_id, target_percent, stoploss_percent FROM targets WHERE id = $1',
                target_id,
            )
        return _target_from_row(row) if row else None

    async def next_target_above(self, token_id: int, strategy_id: int, target_percent: float) -> Optional[Target]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''SELECT id, token_id, strategy_id, target_percent, stoploss_percent
                   FROM targets
                   WHERE token_id = $1 AND strategy_id = $2 AND target_percent > $3
                   ORDER BY target_percent ASC
                   LIMIT 1''',
                token_id,
                strategy_id,
                target_percent,
            )
        return _target_from_row(row) if row else None

    async def get_strategy(self, strategy_id: int) -> Optional[Strategy]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM strategies WHERE id = $1', strategy_id)
        return _strategy_from_row(row) if row else None

    async def child_strategies(self, parent_id: int) -> List[Strategy]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM strategies WHERE parent_id = $1 ORDER BY id', parent_id)
        return [_strategy_from_row(r) for r in rows]

    async def root_strategies_for_token(self, token_id: int) -> List[Strategy]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT DISTINCT s.* FROM strategies s
                   JOIN targets t ON t.strategy_id = s.id
                   WHERE t.token_id = $1 AND s.parent_id IS NULL AND s.is_active
                   ORDER BY s.id''',
                token_id,
            )
        return [_strategy_from_row(r) for r in rows]

    async def eligible_users(self, token_id: int, user_id: Optional[int] = None) -> List[User]:
        query = _USER_SELECT + '''
            WHERE u.is_active
              AND EXISTS (SELECT 1 FROM user_tokens x WHERE x.user_id = u.id AND x.token_id = $1)
              AND ($2::int IS NULL OR u.id = $2)
            GROUP BY u.id
            ORDER BY u.id'''
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, token_id, user_id)
        return [_user_from_row(r) for r in rows]

    async def count_user_token_strategies(self, user_id: int, token_id: int) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                '''SELECT COUNT(DISTINCT s.id) FROM strategies s
                   JOIN targets t ON t.strategy_id = s.id
                   JOIN user_tokens ut ON ut.token_id = t.token_id
                   WHERE ut.user_id = $1 AND t.token_id = $2 AND s.parent_id IS NULL AND s.is_active''',
                user_id,
                token_id,
            )
        return int(count or 0)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(_USER_SELECT + ' WHERE u.id = $1 GROUP BY u.id', user_id)
        return _user_from_row(row) if row else None

    async def active_users(self) -> List[User]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(_USER_SELECT + ' WHERE u.is_active GROUP BY u.id ORDER BY u.id')
        return [_user_from_row(r) for r in rows]

    async def get_token(self, token_id: int) -> Optional[Token]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM tokens WHERE id = $1', token_id)
        return _token_from_row(row) if row else None

    async def list_tokens(self) -> List[Token]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM tokens ORDER BY id')
        return [_token_from_row(r) for r in rows]

    async def adjust_trade_balance(self, user_id: int, delta: float) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                'UPDATE users SET trade_balance = trade_balance + $2 WHERE id = $1',
                user_id,
                delta,
            )
