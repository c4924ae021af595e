import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)

TIMESTAMP_OUTSIDE_RECV_WINDOW = -1021


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


def sign_params(secret: str, params: Dict[str, Any]) -> Tuple[str, str]:
    """Return the canonical query string for ``params`` and its HMAC-SHA256 signature."""
    query = urlencode(params, doseq=True)
    signature = hmac.new(
        secret.encode("utf-8"),
        query.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return query, signature


class BinanceRESTClient:
    """Async USDⓈ-M futures REST client with request signing and server clock sync."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        exchange_cfg = config.exchange
        self.base_url = (base_url or exchange_cfg.get("base_url", "https://fapi.binance.com")).rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window = int(exchange_cfg.get("recv_window_ms", 60000))
        self.time_sync_interval = float(exchange_cfg.get("time_sync_interval_s", 1800))
        self.request_timeout = float(exchange_cfg.get("request_timeout_s", 15))
        self._time_offset_ms = 0
        self._last_time_sync = 0.0
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()

    @property
    def time_offset_ms(self) -> int:
        return self._time_offset_ms

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout)
                )
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def sync_time(self) -> int:
        """
        Measure the offset between the exchange clock and the local clock.

        A positive offset means the local clock is behind the server.
        """
        async with self._sync_lock:
            local_ms = int(time.time() * 1000)
            data = await self._request("GET", "/fapi/v1/time")
            server_ms = int(data["serverTime"])
            self._time_offset_ms = server_ms - local_ms
            self._last_time_sync = time.monotonic()
            logger.debug("Exchange clock offset %sms", self._time_offset_ms)
            return self._time_offset_ms

    async def _timestamp(self) -> int:
        if time.monotonic() - self._last_time_sync >= self.time_sync_interval:
            try:
                await self.sync_time()
            except (aiohttp.ClientError, asyncio.TimeoutError, BinanceAPIError) as exc:
                logger.warning("Exchange clock sync failed, using last offset: %s", exc)
        return int(time.time() * 1000) + self._time_offset_ms

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        api_key_only: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}

        if signed:
            if not self.api_key or not self.api_secret:
                raise RuntimeError("Binance API key/secret required for signed request")
            params["timestamp"] = await self._timestamp()
            params["recvWindow"] = self.recv_window
            query, signature = sign_params(self.api_secret, params)
            query = f"{query}&signature={signature}"
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = urlencode(params, doseq=True)
            if api_key_only:
                # listenKey endpoints take the API key header without a signature
                if not self.api_key:
                    raise RuntimeError("Binance API key required for user data stream")
                headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        started = time.monotonic()
        async with session.request(method.upper(), url, headers=headers) as resp:
            text = await resp.text()
            metrics.record_exchange_latency(f"{method.upper()} {path}", time.monotonic() - started)
            try:
                payload: Any = json.loads(text) if text else None
            except ValueError:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def signed(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Issue a signed call; a timestamp rejection triggers one resync and re-signed retry."""
        try:
            return await self._request(method, path, params=params, signed=True)
        except BinanceAPIError as exc:
            if exc.code != TIMESTAMP_OUTSIDE_RECV_WINDOW:
                raise
            logger.warning("Timestamp outside recvWindow on %s %s; resyncing clock", method, path)
            await self.sync_time()
            return await self._request(method, path, params=params, signed=True)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        if signed:
            return await self.signed("GET", path, params)
        return await self._request("GET", path, params=params)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        api_key_only: bool = False,
    ) -> Any:
        if signed:
            return await self.signed("POST", path, params)
        return await self._request("POST", path, params=params, api_key_only=api_key_only)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        if signed:
            return await self.signed("DELETE", path, params)
        return await self._request("DELETE", path, params=params)

    async def put(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        api_key_only: bool = False,
    ) -> Any:
        return await self._request("PUT", path, params=params, api_key_only=api_key_only)
