import asyncio
import json
import sys

sys.path.insert(0, '.')

from prometheus_client import REGISTRY

from exchange.binance_broker import BinanceBroker
from exchange.binance_rest import BinanceAPIError, BinanceRESTClient, sign_params
from exchange.user_stream import ManualClose, StopExecuted, UserDataStream, parse_order_update
from strategy.models import Side
from tests.fakes import FakeBroker, FakePool


def test_sign_params_matches_exchange_reference():
    secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
    params = {
        "symbol": "LTCBTC",
        "side": "BUY",
        "type": "LIMIT",
        "timeInForce": "GTC",
        "quantity": 1,
        "price": 0.1,
        "recvWindow": 5000,
        "timestamp": 1499827319559,
    }
    query, signature = sign_params(secret, params)
    assert query == (
        "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
        "&recvWindow=5000&timestamp=1499827319559"
    )
    assert signature == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


class ScriptedRESTClient(BinanceRESTClient):
    """Client whose transport replays canned responses keyed by path."""

    def __init__(self, responses):
        super().__init__(api_key="key", api_secret="secret", base_url="https://example.invalid")
        self.responses = responses
        self.calls = []

    async def _request(self, method, path, params=None, signed=False, api_key_only=False):
        self.calls.append((method, path, dict(params or {}), signed))
        queue = self.responses[path]
        result = queue.pop(0) if isinstance(queue, list) else queue
        if isinstance(result, Exception):
            raise result
        return result


def test_timestamp_rejection_resyncs_and_retries_once():
    rest = ScriptedRESTClient({
        "/fapi/v1/order": [BinanceAPIError(400, -1021, "Timestamp outside recvWindow", ""), {"orderId": 1}],
        "/fapi/v1/time": {"serverTime": 4102444800000},
    })

    result = asyncio.run(rest.signed("GET", "/fapi/v1/order", {"symbol": "BTCUSDT"}))

    assert result == {"orderId": 1}
    assert [path for _, path, _, _ in rest.calls] == ["/fapi/v1/order", "/fapi/v1/time", "/fapi/v1/order"]
    assert rest.time_offset_ms > 0


def test_other_api_errors_are_not_retried():
    rest = ScriptedRESTClient({"/fapi/v1/order": [BinanceAPIError(400, -2019, "Margin is insufficient", "")]})

    async def _run():
        try:
            await rest.signed("POST", "/fapi/v1/order", {})
        except BinanceAPIError as exc:
            return exc.code
        return None

    assert asyncio.run(_run()) == -2019
    assert len(rest.calls) == 1


class CannedResponse:
    status = 200

    async def text(self):
        return '{"serverTime": 4102444800000}'

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class CannedSession:
    closed = False

    def __init__(self):
        self.requests = []

    def request(self, method, url, headers=None):
        self.requests.append((method, url))
        return CannedResponse()


def test_request_records_exchange_latency():
    rest = BinanceRESTClient(api_key="key", api_secret="secret", base_url="https://example.invalid")
    rest._session = CannedSession()
    labels = {"action": "GET /fapi/v1/time"}
    before = REGISTRY.get_sample_value("exchange_call_seconds_count", labels) or 0

    payload = asyncio.run(rest._request("GET", "/fapi/v1/time"))

    assert payload == {"serverTime": 4102444800000}
    assert rest._session.requests == [("GET", "https://example.invalid/fapi/v1/time")]
    assert REGISTRY.get_sample_value("exchange_call_seconds_count", labels) == before + 1


def _order_update(**fields):
    order = {"s": "BTCUSDT", "X": "FILLED", "R": True, "ap": "98.5", "i": 123, "c": "x-engine"}
    order.update(fields)
    return {"e": "ORDER_TRADE_UPDATE", "o": order}


def test_parse_order_update_classifies_events():
    assert parse_order_update(_order_update(o="MARKET", ot="STOP_MARKET")) == StopExecuted("123", 98.5)
    assert parse_order_update(_order_update(o="MARKET", ot="TAKE_PROFIT_MARKET")) == StopExecuted("123", 98.5)
    assert parse_order_update(_order_update(o="MARKET", ot="MARKET", c="web_abc")) == ManualClose("BTCUSDT", 98.5)
    # engine-issued market close and partial fills are ignored
    assert parse_order_update(_order_update(o="MARKET", ot="MARKET")) is None
    assert parse_order_update(_order_update(o="MARKET", ot="STOP_MARKET", X="PARTIALLY_FILLED")) is None
    assert parse_order_update(_order_update(o="MARKET", ot="STOP_MARKET", R=False)) is None
    assert parse_order_update({"e": "ACCOUNT_UPDATE"}) is None


def test_stream_routes_events_to_handlers_with_user():
    stops, manual = [], []

    async def on_stop(stop_id, price, source):
        stops.append((stop_id, price, source))

    async def on_manual(symbol, price, user_id):
        manual.append((symbol, price, user_id))

    stream = UserDataStream(FakePool(FakeBroker(), user_ids=[7]), on_stop, on_manual)

    async def _run():
        await stream._open_keys()
        key = next(iter(stream._keys))
        first = await stream.handle_message(
            json.dumps({"stream": key, "data": _order_update(o="MARKET", ot="STOP_MARKET")})
        )
        second = await stream.handle_message(
            json.dumps({"stream": key, "data": _order_update(o="MARKET", ot="MARKET", c="web1")})
        )
        assert await stream.handle_message("not json") is None
        assert await stream.handle_message(json.dumps({"e": "ACCOUNT_UPDATE"})) is None
        await asyncio.gather(first, second)

    asyncio.run(_run())
    assert stops == [("123", 98.5, "stream")]
    assert manual == [("BTCUSDT", 98.5, 7)]
    assert "streams=listen-key" in stream._url()


def test_slow_handler_does_not_block_later_events():
    release = None
    handled = []

    async def on_stop(stop_id, price, source):
        if stop_id == "1":
            await release.wait()
        handled.append(stop_id)

    async def on_manual(symbol, price, user_id):
        return None

    stream = UserDataStream(FakePool(FakeBroker(), user_ids=[7]), on_stop, on_manual)

    async def _run():
        nonlocal release
        release = asyncio.Event()
        slow = await stream.handle_message(json.dumps({"data": _order_update(o="MARKET", ot="STOP_MARKET", i=1)}))
        fast = await stream.handle_message(json.dumps({"data": _order_update(o="MARKET", ot="STOP_MARKET", i=2)}))
        await asyncio.wait_for(fast, timeout=1)
        assert handled == ["2"]
        assert not slow.done()
        await stream.stop()
        return slow

    slow = asyncio.run(_run())
    assert slow.cancelled()
    assert handled == ["2"]


class RecordingRest:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def _call(self, method, path, params, signed):
        self.calls.append((method, path, dict(params or {}), signed))
        queue = self.responses.get((method, path))
        result = queue.pop(0) if isinstance(queue, list) else queue
        if isinstance(result, Exception):
            raise result
        return result

    async def get(self, path, params=None, signed=False):
        return await self._call("GET", path, params, signed)

    async def post(self, path, params=None, signed=False, api_key_only=False):
        return await self._call("POST", path, params, signed)

    async def delete(self, path, params=None, signed=False):
        return await self._call("DELETE", path, params, signed)

    async def put(self, path, params=None, api_key_only=False):
        return await self._call("PUT", path, params, False)

    async def close(self):
        return None


def _broker(responses):
    rest = RecordingRest(responses)
    broker = BinanceBroker(1, rest=rest)
    broker.confirm_delay = 0
    return broker, rest


def test_stop_is_reduce_only_with_truncated_price():
    broker, rest = _broker({("POST", "/fapi/v1/order"): {"orderId": 555}})

    result = asyncio.run(broker.place_stop("BTCUSDT", Side.SELL, 103.4567, 0.099))

    assert result.success and result.stop_order_id == "555"
    _, _, params, signed = rest.calls[0]
    assert signed
    assert params["type"] == "STOP_MARKET"
    assert params["reduceOnly"] == "true"
    assert params["stopPrice"] == "103.45"
    assert params["quantity"] == "0.099"


def test_cancel_treats_unknown_order_as_done():
    broker, rest = _broker({("DELETE", "/fapi/v1/batchOrders"): [[{"code": -2011, "msg": "Unknown order sent."}]]})

    assert asyncio.run(broker.cancel_stops("BTCUSDT", ["11"])) is True
    assert rest.calls[0][2]["orderIdList"] == "[11]"


def test_cancel_reports_other_rejections():
    broker, _ = _broker({("DELETE", "/fapi/v1/batchOrders"): [[{"code": -1100, "msg": "bad"}]]})
    assert asyncio.run(broker.cancel_stops("BTCUSDT", ["11"])) is False


def test_open_confirms_fill_by_polling():
    broker, rest = _broker({
        ("POST", "/fapi/v1/order"): [{"orderId": 9, "status": "NEW", "avgPrice": "0", "executedQty": "0"}],
        ("GET", "/fapi/v1/order"): [
            {"orderId": 9, "status": "NEW", "avgPrice": "0", "executedQty": "0"},
            {"orderId": 9, "status": "FILLED", "side": "BUY", "avgPrice": "45000.5",
             "executedQty": "0.099", "updateTime": 1700000000000},
        ],
    })

    result = asyncio.run(broker.open_market_order("BTCUSDT", Side.BUY, 0.099))

    assert result.success
    assert result.order_id == "9"
    assert result.entry_price == 45000.5
    assert result.qty == 0.099


def test_unconfirmed_open_sends_safety_close():
    pending = {"orderId": 9, "status": "NEW", "avgPrice": "0", "executedQty": "0"}
    broker, rest = _broker({
        ("POST", "/fapi/v1/order"): [pending, {"orderId": 10, "status": "NEW"}],
        ("GET", "/fapi/v1/order"): pending,
    })
    broker.confirm_attempts = 2

    result = asyncio.run(broker.open_market_order("BTCUSDT", Side.BUY, 0.099))

    assert not result.success
    posts = [params for method, path, params, _ in rest.calls if method == "POST"]
    assert posts[1]["side"] == "SELL"
    assert posts[1]["reduceOnly"] == "true"


def test_transport_errors_become_failed_results():
    broker, _ = _broker({("POST", "/fapi/v1/order"): [BinanceAPIError(400, -2019, "Margin is insufficient", "")]})
    result = asyncio.run(broker.open_market_order("BTCUSDT", Side.BUY, 0.099))
    assert not result.success
    assert "Margin" in result.error
