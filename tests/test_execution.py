from __future__ import annotations

from decimal import Decimal

import pytest
import requests

from futuresbot.errors import ErrorKind, ExchangeError
from futuresbot.exchange_filters import SymbolFilters
from futuresbot.execution import OrderGateway
from futuresbot.models import OrderRequest, OrderType, PositionSide, Side

ORDER = "/fapi/v1/order"
POSITION_RISK = "/fapi/v2/positionRisk"
NOT_FOUND = {"code": -2013, "msg": "Order does not exist."}


def _accepted(call, order_id: int = 1001, status: str = "NEW"):
    params = call["params"]
    return {
        "orderId": order_id,
        "symbol": params["symbol"],
        "status": status,
        "clientOrderId": params.get("newClientOrderId") or params.get("origClientOrderId"),
        "side": params.get("side"),
        "positionSide": params.get("positionSide"),
        "type": params.get("type"),
        "origQty": params.get("quantity", "0"),
        "price": params.get("price", "0"),
        "stopPrice": params.get("stopPrice", "0"),
        "executedQty": "0",
        "updateTime": 1700000000000,
    }


def _router(response, routes):
    def handler(call):
        key = (call["method"], call["path"])
        route = routes[key]
        return route(call) if callable(route) else route

    return handler


def test_place_market_order(make_client, response) -> None:
    client, session = make_client(
        _router(response, {("POST", ORDER): lambda call: response(200, _accepted(call))})
    )
    gateway = OrderGateway(client)

    ack = gateway.place_order(
        OrderRequest(symbol="BTCUSDT", side=Side.BUY, quantity=Decimal("0.010"), client_order_id="fb-test-1")
    )

    assert ack.order_id == 1001
    assert ack.client_order_id == "fb-test-1"
    assert ack.status == "NEW"
    assert ack.orig_qty == Decimal("0.010")
    keys = [key for key, _ in session.calls[0]["pairs"]]
    assert keys == [
        "symbol",
        "side",
        "positionSide",
        "type",
        "quantity",
        "newClientOrderId",
        "recvWindow",
        "timestamp",
        "signature",
    ]


def test_limit_order_params(make_client, response) -> None:
    client, session = make_client(
        _router(response, {("POST", ORDER): lambda call: response(200, _accepted(call))})
    )

    OrderGateway(client).place_order(
        OrderRequest(
            symbol="BTCUSDT",
            side="SELL",
            position_side="SHORT",
            order_type="LIMIT",
            quantity="0.5",
            price="30000.10",
        )
    )

    params = session.calls[0]["params"]
    assert params["type"] == "LIMIT"
    assert params["timeInForce"] == "GTC"
    assert params["price"] == "30000.10"
    assert params["positionSide"] == "SHORT"
    assert params["newClientOrderId"].startswith("fb-")


def test_filters_round_quantity_and_price(make_client, response) -> None:
    client, session = make_client(
        _router(response, {("POST", ORDER): lambda call: response(200, _accepted(call))})
    )
    filters = SymbolFilters(
        {
            "BTCUSDT": {
                "LOT_SIZE": {"minQty": "0.001", "maxQty": "1000", "stepSize": "0.001"},
                "PRICE_FILTER": {"minPrice": "0.10", "maxPrice": "0", "tickSize": "0.10"},
            }
        }
    )

    OrderGateway(client, filters=filters).place_order(
        OrderRequest(symbol="BTCUSDT", side="BUY", order_type="LIMIT", quantity="0.0157", price="30000.17")
    )

    params = session.calls[0]["params"]
    assert params["quantity"] == "0.015"
    assert params["price"] == "30000.10"


def test_place_order_gives_up_after_max_attempts(make_client, response, sleeps) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("POST", ORDER): response(502, text="<html>502 Bad Gateway</html>"),
                ("GET", ORDER): response(400, NOT_FOUND),
            },
        )
    )

    with pytest.raises(ExchangeError) as excinfo:
        OrderGateway(client).place_order(OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01"))

    posts = session.calls_to("POST", ORDER)
    assert len(posts) == 3
    assert excinfo.value.kind is ErrorKind.BAD_GATEWAY
    assert excinfo.value.attempts == 3
    assert len({call["params"]["newClientOrderId"] for call in posts}) == 1
    assert len(session.calls_to("GET", ORDER)) == 2
    assert sleeps == [0.5, 1.0]


def test_place_order_does_not_resend_an_accepted_order(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("POST", ORDER): response(502, text="502 Bad Gateway"),
                ("GET", ORDER): lambda call: response(200, _accepted(call, order_id=42)),
            },
        )
    )

    ack = OrderGateway(client).place_order(
        OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01", client_order_id="fb-dup")
    )

    assert ack.order_id == 42
    assert ack.client_order_id == "fb-dup"
    assert len(session.calls_to("POST", ORDER)) == 1
    lookup = session.calls_to("GET", ORDER)[0]
    assert lookup["params"]["origClientOrderId"] == "fb-dup"


def test_failed_lookup_stops_instead_of_resending(make_client, response, sleeps) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("POST", ORDER): lambda call: response(502, text="502 Bad Gateway"),
                ("GET", ORDER): response(504, text="504 Gateway Time-out"),
            },
        )
    )

    with pytest.raises(ExchangeError) as excinfo:
        OrderGateway(client).place_order(
            OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01", client_order_id="fb-unknown")
        )

    assert excinfo.value.kind is ErrorKind.BAD_GATEWAY
    assert excinfo.value.status_code == 502
    assert excinfo.value.attempts == 1
    assert isinstance(excinfo.value.__cause__, ExchangeError)
    assert excinfo.value.__cause__.status_code == 504
    assert len(session.calls_to("POST", ORDER)) == 1
    assert len(session.calls_to("GET", ORDER)) == 1
    assert sleeps == [0.5]


def test_failed_lookup_after_transport_error_stops(make_client, response) -> None:
    def post(call):
        return requests.ConnectionError("connection reset")

    client, session = make_client(
        _router(
            response,
            {
                ("POST", ORDER): post,
                ("GET", ORDER): response(401, {"code": -2015, "msg": "Invalid API-key, IP, or permissions for action."}),
            },
        )
    )

    with pytest.raises(ExchangeError) as excinfo:
        OrderGateway(client).place_order(OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01"))

    assert excinfo.value.kind is ErrorKind.TRANSPORT_ERROR
    assert len(session.calls_to("POST", ORDER)) == 1


def test_lookup_keeps_running_after_an_ambiguous_failure(make_client, response, sleeps) -> None:
    outcomes = [
        response(502, text="502 Bad Gateway"),
        response(429, {"code": -1003, "msg": "Too many requests."}),
    ]
    client, session = make_client(
        _router(
            response,
            {
                ("POST", ORDER): lambda call: outcomes.pop(0) if outcomes else response(200, _accepted(call)),
                ("GET", ORDER): response(400, NOT_FOUND),
            },
        )
    )

    ack = OrderGateway(client).place_order(
        OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01", client_order_id="fb-sticky")
    )

    assert ack.client_order_id == "fb-sticky"
    assert len(session.calls_to("POST", ORDER)) == 3
    assert len(session.calls_to("GET", ORDER)) == 2
    assert sleeps == [0.5, 1.0]


def test_reduce_only_rejection_is_not_retried(make_client, response, sleeps) -> None:
    client, session = make_client(
        _router(
            response,
            {("POST", ORDER): response(400, {"code": -2022, "msg": "ReduceOnly Order is rejected."})},
        )
    )

    with pytest.raises(ExchangeError) as excinfo:
        OrderGateway(client).place_order(
            OrderRequest(symbol="BTCUSDT", side="SELL", quantity="0.01", reduce_only=True)
        )

    assert excinfo.value.kind is ErrorKind.REDUCE_ONLY_REJECTED
    assert len(session.calls) == 1
    assert sleeps == []


def test_rate_limited_order_is_retried_without_lookup(make_client, response, sleeps) -> None:
    outcomes = [response(429, {"code": -1003, "msg": "Too many requests."})]
    client, session = make_client(
        _router(
            response,
            {("POST", ORDER): lambda call: outcomes.pop(0) if outcomes else response(200, _accepted(call))},
        )
    )

    ack = OrderGateway(client).place_order(OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01"))

    assert ack.status == "NEW"
    assert len(session.calls_to("POST", ORDER)) == 2
    assert session.calls_to("GET", ORDER) == []
    assert sleeps == [0.5]


def test_close_position_without_position_is_a_noop(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("GET", POSITION_RISK): response(
                    200, [{"symbol": "BTCUSDT", "positionSide": "BOTH", "positionAmt": "0.000"}]
                )
            },
        )
    )
    gateway = OrderGateway(client)

    first = gateway.close_position("BTCUSDT")
    second = gateway.close_position("BTCUSDT")

    assert first.is_noop and second.is_noop
    assert first.status == "NO_POSITION"
    assert first == second
    assert session.calls_to("POST", ORDER) == []


def test_close_short_in_hedge_mode(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("GET", POSITION_RISK): response(
                    200,
                    [
                        {"symbol": "BTCUSDT", "positionSide": "LONG", "positionAmt": "0.010"},
                        {"symbol": "BTCUSDT", "positionSide": "SHORT", "positionAmt": "-0.020"},
                    ],
                ),
                ("POST", ORDER): lambda call: response(200, _accepted(call, status="FILLED")),
            },
        )
    )

    ack = OrderGateway(client).close_position("BTCUSDT", PositionSide.SHORT)

    params = session.calls_to("POST", ORDER)[0]["params"]
    assert params["side"] == "BUY"
    assert params["positionSide"] == "SHORT"
    assert params["quantity"] == "0.020"
    assert "reduceOnly" not in params
    assert ack.status == "FILLED"


def test_close_one_way_position_is_reduce_only(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("GET", POSITION_RISK): response(
                    200, [{"symbol": "BTCUSDT", "positionSide": "BOTH", "positionAmt": "-0.005"}]
                ),
                ("POST", ORDER): lambda call: response(200, _accepted(call)),
            },
        )
    )

    OrderGateway(client).close_position("BTCUSDT")

    params = session.calls_to("POST", ORDER)[0]["params"]
    assert params["side"] == "BUY"
    assert params["quantity"] == "0.005"
    assert params["reduceOnly"] == "true"


def test_close_position_closed_meanwhile_is_a_noop(make_client, response) -> None:
    client, _ = make_client(
        _router(
            response,
            {
                ("GET", POSITION_RISK): response(
                    200, [{"symbol": "BTCUSDT", "positionSide": "BOTH", "positionAmt": "0.005"}]
                ),
                ("POST", ORDER): response(400, {"code": -2022, "msg": "ReduceOnly Order is rejected."}),
            },
        )
    )

    ack = OrderGateway(client).close_position("BTCUSDT")

    assert ack.is_noop
    assert ack.position_side == "BOTH"


def test_stop_order_falls_back_to_market(make_client, response) -> None:
    def post(call):
        if call["params"]["type"] == "STOP_MARKET":
            return response(400, {"code": -2021, "msg": "Order would immediately trigger."})
        return response(200, _accepted(call, status="FILLED"))

    client, session = make_client(_router(response, {("POST", ORDER): post}))

    ack = OrderGateway(client).place_stop_order(
        "BTCUSDT", Side.SELL, PositionSide.LONG, Decimal("31000"), Decimal("0.01")
    )

    types = [call["params"]["type"] for call in session.calls_to("POST", ORDER)]
    assert types == ["STOP_MARKET", "MARKET"]
    assert ack.order_type == "MARKET"


def test_stop_order_without_fallback_raises(make_client, response) -> None:
    client, _ = make_client(
        _router(
            response,
            {("POST", ORDER): response(400, {"code": -2021, "msg": "Order would immediately trigger."})},
        )
    )

    with pytest.raises(ExchangeError) as excinfo:
        OrderGateway(client).place_stop_order(
            "BTCUSDT", "SELL", "LONG", Decimal("31000"), Decimal("0.01"), market_fallback=False
        )
    assert excinfo.value.kind is ErrorKind.ORDER_WOULD_TRIGGER_IMMEDIATELY


def test_set_hedge_mode(make_client, response) -> None:
    outcomes = [
        response(200, {"code": 200, "msg": "success"}),
        response(400, {"code": -4059, "msg": "No need to change position side."}),
    ]
    client, session = make_client(lambda call: outcomes.pop(0))
    gateway = OrderGateway(client)

    assert gateway.set_hedge_mode(True) is True
    assert gateway.set_hedge_mode(True) is False
    assert session.calls[0]["params"]["dualSidePosition"] == "true"


def test_get_order_requires_an_id(make_client, response) -> None:
    client, session = make_client(lambda call: response(200, {}))
    gateway = OrderGateway(client)

    with pytest.raises(ValueError, match="Invalid Order ID."):
        gateway.get_order("BTCUSDT", 0)
    with pytest.raises(ValueError):
        gateway.cancel_order("BTCUSDT", None)
    assert session.calls == []


def test_order_status_and_stop_price(make_client, response) -> None:
    client, _ = make_client(
        lambda call: response(
            200,
            {"orderId": 5, "symbol": "BTCUSDT", "status": "PARTIALLY_FILLED", "stopPrice": "29500.5"},
        )
    )
    gateway = OrderGateway(client)

    assert gateway.order_status("BTCUSDT", 5) == "PARTIALLY_FILLED"
    assert gateway.get_stop_price("BTCUSDT", 5) == Decimal("29500.5")


def test_can_place_stop_order(make_client, response) -> None:
    client, _ = make_client(lambda call: response(200, {"symbol": "BTCUSDT", "price": "30000.00"}))
    gateway = OrderGateway(client)

    assert gateway.can_place_stop_order("BTCUSDT", PositionSide.LONG, Decimal("29000")) is True
    assert gateway.can_place_stop_order("BTCUSDT", PositionSide.SHORT, Decimal("29000")) is False
    assert gateway.can_place_stop_order("BTCUSDT", "SHORT", Decimal("31000")) is True
    with pytest.raises(ValueError):
        gateway.can_place_stop_order("BTCUSDT", PositionSide.BOTH, Decimal("31000"))


def test_exchange_info_for_one_symbol(make_client, response) -> None:
    info = {"timezone": "UTC", "symbols": [{"symbol": "BTCUSDT"}, {"symbol": "ETHUSDT"}]}
    client, _ = make_client(lambda call: response(200, info))
    gateway = OrderGateway(client)

    assert gateway.exchange_info("ETHUSDT")["symbols"] == [{"symbol": "ETHUSDT"}]
    assert len(gateway.exchange_info()["symbols"]) == 2
    with pytest.raises(ValueError):
        gateway.exchange_info("XRPUSDT")


def test_calculate_quantity(make_client, response) -> None:
    client, _ = make_client(lambda call: response(200, {"symbol": "BTCUSDT", "price": "50000"}))
    gateway = OrderGateway(client)

    assert gateway.calculate_quantity("BTCUSDT", 50) == Decimal("0.001")
    assert gateway.calculate_quantity("BTCUSDT", 100, price=Decimal("30000")) == Decimal("0.003")
    with pytest.raises(ValueError):
        gateway.calculate_quantity("BTCUSDT", 10)


def test_order_request_validation() -> None:
    with pytest.raises(ValueError):
        OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0")
    with pytest.raises(ValueError):
        OrderRequest(symbol="BTCUSDT", side="BUY", order_type=OrderType.LIMIT, quantity="1")
    with pytest.raises(ValueError):
        OrderRequest(symbol="BTCUSDT", side="BUY", order_type=OrderType.STOP_MARKET, quantity="1")
    with pytest.raises(ValueError):
        OrderRequest(symbol="BTCUSDT", side="BUY", close_all=True, quantity="1", stop_price="1")

    order = OrderRequest(
        symbol="BTCUSDT",
        side="SELL",
        position_side="LONG",
        order_type="STOP_MARKET",
        stop_price="29000",
        close_all=True,
        reduce_only=True,
    )
    assert order.to_params() == [
        ("symbol", "BTCUSDT"),
        ("side", "SELL"),
        ("positionSide", "LONG"),
        ("type", "STOP_MARKET"),
        ("stopPrice", Decimal("29000")),
        ("closePosition", True),
    ]


def test_replace_order_cancels_then_places(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("DELETE", ORDER): response(200, {"orderId": 7, "symbol": "BTCUSDT", "status": "CANCELED"}),
                ("POST", ORDER): lambda call: response(200, _accepted(call, order_id=8)),
            },
        )
    )

    ack = OrderGateway(client).replace_order(
        "BTCUSDT", 7, OrderRequest(symbol="BTCUSDT", side="BUY", quantity="0.01")
    )

    assert [call["method"] for call in session.calls] == ["DELETE", "POST"]
    assert session.calls[0]["params"]["orderId"] == "7"
    assert ack.order_id == 8


def test_open_orders_and_cancel_all(make_client, response) -> None:
    client, session = make_client(
        _router(
            response,
            {
                ("GET", "/fapi/v1/openOrders"): response(
                    200,
                    [
                        {"orderId": 1, "symbol": "BTCUSDT", "status": "NEW"},
                        {"orderId": 2, "symbol": "BTCUSDT", "status": "PARTIALLY_FILLED"},
                    ],
                ),
                ("DELETE", "/fapi/v1/allOpenOrders"): response(
                    200, {"code": 200, "msg": "The operation of cancel all open order is done."}
                ),
            },
        )
    )
    gateway = OrderGateway(client)

    assert [ack.order_id for ack in gateway.open_orders("BTCUSDT")] == [1, 2]
    assert gateway.cancel_all_open_orders("BTCUSDT")["code"] == 200
    assert all("signature" in call["params"] for call in session.calls)


def test_ping_and_load_filters(make_client, response) -> None:
    info = {
        "symbols": [
            {
                "symbol": "BTCUSDT",
                "filters": [{"filterType": "LOT_SIZE", "minQty": "0.001", "maxQty": "1000", "stepSize": "0.001"}],
            }
        ]
    }
    client, _ = make_client(
        _router(
            response,
            {
                ("GET", "/fapi/v1/ping"): response(200, {}),
                ("GET", "/fapi/v1/exchangeInfo"): response(200, info),
            },
        )
    )
    gateway = OrderGateway(client)

    assert gateway.ping() is True
    filters = gateway.load_filters()
    assert "BTCUSDT" in filters
    assert gateway.calculate_quantity("BTCUSDT", 100, price=Decimal("30000")) == Decimal("0.003")
