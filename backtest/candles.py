import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import aiohttp

from config import config
from strategy.models import Candle


logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"
TIMEFRAMES = ("1h", "4h", "1d")


def parse_date(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(DATE_FORMAT)


def bucket_start(value: datetime, timeframe: str) -> datetime:
    if timeframe == "1d":
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == "4h":
        return value.replace(hour=value.hour - value.hour % 4, minute=0, second=0, microsecond=0)
    if timeframe == "1h":
        return value.replace(minute=0, second=0, microsecond=0)
    raise ValueError(f"unsupported timeframe {timeframe!r}, expected one of {TIMEFRAMES}")


def bucket_key(date: str, timeframe: str) -> str:
    """ISO key of the ``timeframe`` bucket containing ``date``."""
    return format_date(bucket_start(parse_date(date), timeframe))


def is_bucket_open(date: str, timeframe: str) -> bool:
    """True when ``date`` is the first instant of a ``timeframe`` bucket."""
    parsed = parse_date(date)
    return bucket_start(parsed, timeframe) == parsed.replace(microsecond=0)


def sort_candles(candles: Iterable[Candle]) -> List[Candle]:
    return sorted(candles, key=lambda c: parse_date(c.date))


def source_interval_minutes(candles: Iterable[Candle]) -> Optional[int]:
    """Smallest spacing between consecutive candles, in minutes."""
    dates = [parse_date(c.date) for c in sort_candles(candles)]
    gaps = [int((b - a).total_seconds() // 60) for a, b in zip(dates, dates[1:]) if b > a]
    return min(gaps) if gaps else None


def aggregate_candles(candles: Iterable[Candle], timeframe: str) -> List[Candle]:
    """Roll candles up into ``timeframe`` buckets, chronologically ordered."""
    buckets: Dict[str, Candle] = {}
    for candle in sort_candles(candles):
        key = bucket_key(candle.date, timeframe)
        agg = buckets.get(key)
        if agg is None:
            buckets[key] = Candle(key, candle.open, candle.high, candle.low, candle.close, candle.volume)
        else:
            buckets[key] = Candle(
                key,
                agg.open,
                max(agg.high, candle.high),
                min(agg.low, candle.low),
                candle.close,
                agg.volume + candle.volume,
            )
    return [buckets[key] for key in sorted(buckets, key=parse_date)]


def candles_from_payload(payload: Dict[str, dict]) -> List[Candle]:
    """Candles from the source's ``{date: {Date, Open, High, Low, Close, Volume}}`` map."""
    candles = []
    for key, raw in payload.items():
        candles.append(
            Candle(
                date=raw.get("Date", key),
                open=float(raw["Open"]),
                high=float(raw["High"]),
                low=float(raw["Low"]),
                close=float(raw["Close"]),
                volume=float(raw.get("Volume") or 0.0),
            )
        )
    return sort_candles(candles)


class CandleSource:
    """Year of source-resolution candles per token, cached in memory for ``cache_ttl_s``."""

    def __init__(self, url: Optional[str] = None, cache_ttl_s: Optional[float] = None):
        cfg = config.backtest
        self.url = url or cfg.get("candle_source_url")
        self.cache_ttl_s = float(cache_ttl_s if cache_ttl_s is not None else cfg.get("cache_ttl_s", 21600))
        self.timeout = aiohttp.ClientTimeout(total=float(config.exchange.get("request_timeout_s", 15)) * 4)
        self._cache: Dict[Tuple[str, int], List[Candle]] = {}
        self._cached_at = time.monotonic()

    def _expire(self) -> None:
        if time.monotonic() - self._cached_at >= self.cache_ttl_s:
            self._cache.clear()
            self._cached_at = time.monotonic()

    def put(self, token: str, year: int, candles: List[Candle]) -> None:
        self._expire()
        self._cache[(token, int(year))] = candles

    async def get(self, token: str, year: int) -> Optional[List[Candle]]:
        self._expire()
        key = (token, int(year))
        if key in self._cache:
            return self._cache[key]
        candles = await self._fetch(token, int(year))
        if candles:
            self._cache[key] = candles
        return candles

    async def _fetch(self, token: str, year: int) -> Optional[List[Candle]]:
        if not self.url:
            logger.error("backtest.candle_source_url is not configured")
            return None
        params = {"action": "readYear", "token": token, "year": str(year)}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.url, params=params) as resp:
                    if resp.status != 200:
                        logger.warning("Candle source returned %s for %s %s", resp.status, token, year)
                        return None
                    payload = await resp.json(content_type=None)
        except Exception as exc:
            logger.warning("Candle source request failed for %s %s: %s", token, year, exc)
            return None
        if not isinstance(payload, dict) or not payload:
            return None
        return candles_from_payload(payload)
