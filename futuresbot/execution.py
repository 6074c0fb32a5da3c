from __future__ import annotations

import dataclasses
import logging
import uuid
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, Union

from .errors import CODE_ORDER_DOES_NOT_EXIST, ErrorKind, ExchangeError
from .exchange_filters import SymbolFilters
from .models import OrderAck, OrderRequest, OrderType, PositionSide, Side
from .rate_limiter import BinanceFuturesClient

LOGGER = logging.getLogger(__name__)

ORDER_ENDPOINT = "/fapi/v1/order"
OPEN_ORDERS_ENDPOINT = "/fapi/v1/openOrders"
ALL_OPEN_ORDERS_ENDPOINT = "/fapi/v1/allOpenOrders"
POSITION_RISK_ENDPOINT = "/fapi/v2/positionRisk"
POSITION_SIDE_ENDPOINT = "/fapi/v1/positionSide/dual"
TICKER_PRICE_ENDPOINT = "/fapi/v1/ticker/price"
EXCHANGE_INFO_ENDPOINT = "/fapi/v1/exchangeInfo"
PING_ENDPOINT = "/fapi/v1/ping"

DEFAULT_QUANTITY_STEP = Decimal("0.001")

# Failures where the order may have reached the matching engine anyway.
AMBIGUOUS_KINDS = {ErrorKind.BAD_GATEWAY, ErrorKind.TRANSPORT_ERROR}


class OrderGateway:
    """Signed order placement and account queries on Binance USD-M Futures.

    Every call raises ``ExchangeError`` on failure. Transient kinds are retried
    by the client's ``RetryPolicy``; the rest surface on the first attempt.

    Placement is made idempotent with ``newClientOrderId``: the id is fixed
    once per logical order, and before any resend after an ambiguous failure
    (502/504, transport error) the order is looked up by that id. If the
    exchange already accepted it, the existing order is acknowledged instead
    of being sent twice.
    """

    def __init__(
        self,
        client: BinanceFuturesClient,
        filters: Optional[SymbolFilters] = None,
        client_order_prefix: str = "fb-",
    ) -> None:
        self.client = client
        self.filters = filters
        self.client_order_prefix = client_order_prefix

    def _new_client_order_id(self) -> str:
        return f"{self.client_order_prefix}{uuid.uuid4().hex[:24]}"

    def _apply_filters(self, order: OrderRequest) -> OrderRequest:
        if self.filters is None or order.symbol not in self.filters:
            return order
        changes: Dict[str, Any] = {}
        if order.quantity is not None:
            quantity = self.filters.adjust_qty(order.symbol, order.quantity)
            if quantity is None:
                raise ValueError(f"Cantidad {order.quantity} inválida para {order.symbol}.")
            changes["quantity"] = quantity
        for field_name in ("price", "stop_price"):
            value = getattr(order, field_name)
            if value is None:
                continue
            adjusted = self.filters.adjust_price(order.symbol, value)
            if adjusted is None:
                raise ValueError(f"{field_name} {value} inválido para {order.symbol}.")
            changes[field_name] = adjusted
        return dataclasses.replace(order, **changes) if changes else order

    def _find_by_client_id(
        self, symbol: str, client_order_id: str, cause: ExchangeError
    ) -> Optional[OrderAck]:
        """Look up an order whose submission outcome is unknown.

        Returns ``None`` only when the exchange answers that the order does
        not exist. Any other failure leaves the outcome unknown, so ``cause``
        is raised and the order is not resent.
        """
        try:
            payload = self.client.send(
                "GET",
                ORDER_ENDPOINT,
                [("symbol", symbol), ("origClientOrderId", client_order_id)],
                signed=True,
            )
        except ExchangeError as exc:
            if exc.code == CODE_ORDER_DOES_NOT_EXIST:
                LOGGER.info("Orden %s no existe en el exchange; se reenvía.", client_order_id)
                return None
            LOGGER.error(
                "No se pudo verificar la orden %s (%s); no se reenvía.",
                client_order_id,
                exc.kind.name,
            )
            raise cause from exc
        return OrderAck.from_response(payload)

    def place_order(self, order: OrderRequest) -> OrderAck:
        if not order.client_order_id:
            order = dataclasses.replace(order, client_order_id=self._new_client_order_id())
        order = self._apply_filters(order)
        params = order.to_params()
        client_order_id = order.client_order_id
        # First failure after which the order may exist on the exchange.
        unknown_outcome: Optional[ExchangeError] = None

        def submit() -> OrderAck:
            payload = self.client.send("POST", ORDER_ENDPOINT, params, signed=True)
            return OrderAck.from_response(payload)

        def reconcile(attempt: int, error: ExchangeError) -> Optional[OrderAck]:
            nonlocal unknown_outcome
            if unknown_outcome is None and error.kind in AMBIGUOUS_KINDS:
                unknown_outcome = error
            if unknown_outcome is None:
                return None
            existing = self._find_by_client_id(
                order.symbol,
                client_order_id,
                unknown_outcome.with_attempts(attempt - 1),
            )
            if existing is not None:
                LOGGER.warning(
                    "Orden %s ya aceptada por el exchange (orderId=%s); no se reenvía.",
                    client_order_id,
                    existing.order_id,
                )
            return existing

        LOGGER.info(
            "Enviando orden %s %s %s %s qty=%s price=%s stop=%s",
            order.symbol,
            order.side.value,
            order.position_side.value,
            order.order_type.value,
            order.quantity,
            order.price,
            order.stop_price,
        )
        ack = self.client.retry_policy.run(
            submit,
            sleep=self.client.sleep,
            description=f"place_order {order.symbol} {client_order_id}",
            before_retry=reconcile,
        )
        LOGGER.info(
            "Orden aceptada: orderId=%s clientOrderId=%s status=%s",
            ack.order_id,
            ack.client_order_id,
            ack.status,
        )
        return ack

    def close_position(
        self,
        symbol: str,
        position_side: Union[PositionSide, str] = PositionSide.BOTH,
        market: bool = True,
        price: Optional[Decimal] = None,
    ) -> OrderAck:
        """Close the whole open position on ``position_side``.

        Nothing open is not an error: the no-op ``OrderAck.no_position`` is
        returned without sending an order, and the same ack is returned when
        the exchange rejects the reduce-only order because the position was
        closed in the meantime.
        """
        position_side = PositionSide(position_side)
        amount = self.position_amount(symbol, position_side)
        if amount == 0:
            LOGGER.info("Sin posición %s abierta en %s; nada que cerrar.", position_side.value, symbol)
            return OrderAck.no_position(symbol, position_side)

        if position_side is PositionSide.LONG:
            side = Side.SELL
        elif position_side is PositionSide.SHORT:
            side = Side.BUY
        else:
            side = Side.SELL if amount > 0 else Side.BUY

        order = OrderRequest(
            symbol=symbol,
            side=side,
            position_side=position_side,
            order_type=OrderType.MARKET if market else OrderType.LIMIT,
            quantity=abs(amount),
            price=None if market else price,
            reduce_only=True,
        )
        try:
            return self.place_order(order)
        except ExchangeError as exc:
            if exc.kind is ErrorKind.REDUCE_ONLY_REJECTED:
                LOGGER.info("ReduceOnly rechazada en %s: la posición ya estaba cerrada.", symbol)
                return OrderAck.no_position(symbol, position_side)
            raise

    def place_stop_order(
        self,
        symbol: str,
        side: Union[Side, str],
        position_side: Union[PositionSide, str],
        stop_price: Decimal,
        quantity: Decimal,
        market_fallback: bool = True,
    ) -> OrderAck:
        order = OrderRequest(
            symbol=symbol,
            side=side,
            position_side=position_side,
            order_type=OrderType.STOP_MARKET,
            quantity=quantity,
            stop_price=stop_price,
        )
        try:
            return self.place_order(order)
        except ExchangeError as exc:
            if exc.kind is not ErrorKind.ORDER_WOULD_TRIGGER_IMMEDIATELY or not market_fallback:
                raise
            LOGGER.warning(
                "Stop %s en %s dispararía inmediatamente; enviando orden a mercado.",
                stop_price,
                symbol,
            )
            return self.place_order(
                OrderRequest(
                    symbol=symbol,
                    side=side,
                    position_side=position_side,
                    order_type=OrderType.MARKET,
                    quantity=quantity,
                )
            )

    def replace_order(self, symbol: str, order_id: int, new_order: OrderRequest) -> OrderAck:
        self.cancel_order(symbol, order_id)
        return self.place_order(new_order)

    def cancel_order(self, symbol: str, order_id: int) -> OrderAck:
        _require_order_id(order_id)
        payload = self.client.request(
            "DELETE",
            ORDER_ENDPOINT,
            [("symbol", symbol), ("orderId", order_id)],
            signed=True,
        )
        return OrderAck.from_response(payload)

    def cancel_all_open_orders(self, symbol: str) -> Dict[str, Any]:
        payload = self.client.request(
            "DELETE", ALL_OPEN_ORDERS_ENDPOINT, [("symbol", symbol)], signed=True
        )
        LOGGER.info("Órdenes abiertas canceladas en %s.", symbol)
        return payload

    def open_orders(self, symbol: str) -> List[OrderAck]:
        payload = self.client.request("GET", OPEN_ORDERS_ENDPOINT, [("symbol", symbol)], signed=True)
        return [OrderAck.from_response(item) for item in payload or []]

    def get_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderAck:
        if client_order_id:
            params = [("symbol", symbol), ("origClientOrderId", client_order_id)]
        else:
            _require_order_id(order_id)
            params = [("symbol", symbol), ("orderId", order_id)]
        payload = self.client.request("GET", ORDER_ENDPOINT, params, signed=True)
        return OrderAck.from_response(payload)

    def order_status(self, symbol: str, order_id: int) -> str:
        return self.get_order(symbol, order_id).status

    def get_stop_price(self, symbol: str, order_id: int) -> Optional[Decimal]:
        return self.get_order(symbol, order_id).stop_price

    def position_info(self, symbol: str) -> List[Dict[str, Any]]:
        payload = self.client.request(
            "GET", POSITION_RISK_ENDPOINT, [("symbol", symbol)], signed=True
        )
        return list(payload or [])

    def position_amount(self, symbol: str, position_side: Union[PositionSide, str]) -> Decimal:
        position_side = PositionSide(position_side)
        for entry in self.position_info(symbol):
            if entry.get("symbol", symbol) != symbol:
                continue
            if entry.get("positionSide", PositionSide.BOTH.value) == position_side.value:
                return Decimal(str(entry.get("positionAmt", "0")))
        return Decimal("0")

    def set_hedge_mode(self, enabled: bool) -> bool:
        """Switch hedge (dual side) mode; ``False`` when it was already set."""
        try:
            self.client.request(
                "POST",
                POSITION_SIDE_ENDPOINT,
                [("dualSidePosition", enabled)],
                signed=True,
            )
        except ExchangeError as exc:
            if exc.kind is ErrorKind.POSITION_SIDE_UNCHANGED:
                return False
            raise
        LOGGER.info("Modo hedge %s.", "activado" if enabled else "desactivado")
        return True

    def price_ticker(self, symbol: str) -> Decimal:
        payload = self.client.request("GET", TICKER_PRICE_ENDPOINT, [("symbol", symbol)])
        return Decimal(str(payload["price"]))

    def ping(self) -> bool:
        self.client.request("GET", PING_ENDPOINT)
        return True

    def exchange_info(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        info = self.client.request("GET", EXCHANGE_INFO_ENDPOINT)
        if symbol is None:
            return info
        symbols = [item for item in info.get("symbols", []) if item.get("symbol") == symbol]
        if not symbols:
            raise ValueError(f"Símbolo {symbol} no encontrado en exchangeInfo.")
        return {**info, "symbols": symbols}

    def load_filters(self) -> SymbolFilters:
        self.filters = SymbolFilters.from_exchange_info(self.exchange_info())
        return self.filters

    def can_place_stop_order(
        self,
        symbol: str,
        position_side: Union[PositionSide, str],
        stop_price: Decimal,
    ) -> bool:
        # A long's stop must sit below the market, a short's above it.
        position_side = PositionSide(position_side)
        if position_side is PositionSide.BOTH:
            raise ValueError("can_place_stop_order necesita LONG o SHORT.")
        market_price = self.price_ticker(symbol)
        stop_price = Decimal(str(stop_price))
        if position_side is PositionSide.LONG:
            return stop_price < market_price
        return stop_price > market_price

    def calculate_quantity(
        self,
        symbol: str,
        notional: Union[Decimal, float, str],
        price: Optional[Decimal] = None,
    ) -> Decimal:
        price = Decimal(str(price)) if price is not None else self.price_ticker(symbol)
        if price <= 0:
            raise ValueError(f"Precio inválido para {symbol}: {price}")
        raw_qty = Decimal(str(notional)) / price
        if self.filters is not None and symbol in self.filters:
            qty = self.filters.adjust_qty(symbol, raw_qty)
        else:
            qty = raw_qty.quantize(DEFAULT_QUANTITY_STEP, rounding=ROUND_DOWN)
        if qty is None or qty <= 0:
            raise ValueError(
                f"La cantidad calculada es 0 para {symbol} (notional={notional}, price={price})."
            )
        return qty


def _require_order_id(order_id: Optional[int]) -> None:
    if not order_id:
        raise ValueError("Invalid Order ID.")
