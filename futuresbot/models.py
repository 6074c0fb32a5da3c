from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import pandas as pd

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class Credentials:
    api_key: str
    secret_key: str = field(repr=False)


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"


PRICED_TYPES = {OrderType.LIMIT, OrderType.STOP}
STOP_TYPES = {OrderType.STOP, OrderType.STOP_MARKET, OrderType.TAKE_PROFIT_MARKET}
CLOSE_ALL_TYPES = {OrderType.STOP_MARKET, OrderType.TAKE_PROFIT_MARKET}


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class OrderRequest:
    symbol: str
    side: Side
    position_side: PositionSide = PositionSide.BOTH
    order_type: OrderType = OrderType.MARKET
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    close_all: bool = False
    reduce_only: bool = False
    time_in_force: str = "GTC"
    client_order_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.side = Side(self.side)
        self.position_side = PositionSide(self.position_side)
        self.order_type = OrderType(self.order_type)
        self.quantity = to_decimal(self.quantity)
        self.price = to_decimal(self.price)
        self.stop_price = to_decimal(self.stop_price)

        if not self.symbol:
            raise ValueError("symbol es obligatorio.")
        if self.close_all:
            if self.order_type not in CLOSE_ALL_TYPES:
                raise ValueError(
                    f"closePosition solo es válido con STOP_MARKET/TAKE_PROFIT_MARKET, no {self.order_type.value}."
                )
            if self.quantity is not None:
                raise ValueError("close_all y quantity son excluyentes.")
        elif self.quantity is None or self.quantity <= 0:
            raise ValueError(f"Cantidad inválida: {self.quantity}.")
        if self.order_type in PRICED_TYPES and (self.price is None or self.price <= 0):
            raise ValueError(f"{self.order_type.value} requiere un precio positivo.")
        if self.order_type in STOP_TYPES and (self.stop_price is None or self.stop_price <= 0):
            raise ValueError(f"{self.order_type.value} requiere stop_price positivo.")

    @property
    def is_hedge_mode(self) -> bool:
        return self.position_side is not PositionSide.BOTH

    def to_params(self) -> List[Tuple[str, Any]]:
        """Ordered parameters for ``POST /fapi/v1/order`` (signature covers this order)."""
        params: List[Tuple[str, Any]] = [
            ("symbol", self.symbol),
            ("side", self.side.value),
            ("positionSide", self.position_side.value),
            ("type", self.order_type.value),
        ]
        if self.order_type in PRICED_TYPES:
            params.append(("timeInForce", self.time_in_force))
            params.append(("price", self.price))
        if self.order_type in STOP_TYPES:
            params.append(("stopPrice", self.stop_price))
        if self.close_all:
            params.append(("closePosition", True))
        else:
            params.append(("quantity", self.quantity))
        # Hedge mode rejects reduceOnly; the position side already makes it reducing.
        if self.reduce_only and not self.is_hedge_mode and not self.close_all:
            params.append(("reduceOnly", True))
        if self.client_order_id:
            params.append(("newClientOrderId", self.client_order_id))
        return params


@dataclass(frozen=True)
class OrderAck:
    symbol: str
    order_id: Optional[int]
    client_order_id: Optional[str]
    status: str
    side: Optional[str] = None
    position_side: Optional[str] = None
    order_type: Optional[str] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    orig_qty: Optional[Decimal] = None
    executed_qty: Optional[Decimal] = None
    update_time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    NO_POSITION = "NO_POSITION"

    @property
    def is_noop(self) -> bool:
        return self.status == self.NO_POSITION

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "OrderAck":
        order_id = payload.get("orderId")
        update_time = payload.get("updateTime")
        return cls(
            symbol=payload.get("symbol", ""),
            order_id=int(order_id) if order_id is not None else None,
            client_order_id=payload.get("clientOrderId"),
            status=payload.get("status", "UNKNOWN"),
            side=payload.get("side"),
            position_side=payload.get("positionSide"),
            order_type=payload.get("type"),
            price=to_decimal(payload.get("price")),
            stop_price=to_decimal(payload.get("stopPrice")),
            orig_qty=to_decimal(payload.get("origQty")),
            executed_qty=to_decimal(payload.get("executedQty")),
            update_time=int(update_time) if update_time is not None else None,
            raw=dict(payload),
        )

    @classmethod
    def no_position(cls, symbol: str, position_side: PositionSide) -> "OrderAck":
        return cls(
            symbol=symbol,
            order_id=None,
            client_order_id=None,
            status=cls.NO_POSITION,
            position_side=PositionSide(position_side).value,
        )


@dataclass(frozen=True)
class Candle:
    """One kline with prices as floats.

    Candles feed analysis (pandas frames, window highs and lows) and are never
    sent back to the exchange; order prices stay ``Decimal`` in ``OrderRequest``.
    """

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    close_time: Optional[int] = None

    @classmethod
    def from_kline(cls, row: Iterable[Any]) -> "Candle":
        values = list(row)
        return cls(
            open_time=int(values[0]),
            open=float(values[1]),
            high=float(values[2]),
            low=float(values[3]),
            close=float(values[4]),
            volume=float(values[5]),
            close_time=int(values[6]) if len(values) > 6 else None,
        )


class CandleSeries:
    """Candles keyed by open time, always iterated oldest first.

    Prices are floats like in ``Candle``; exact prices for orders go through
    ``SymbolFilters`` as ``Decimal``.
    """

    def __init__(self, candles: Optional[Iterable[Candle]] = None) -> None:
        self._by_time: Dict[int, Candle] = {}
        self._times: List[int] = []
        if candles is not None:
            self.extend(candles)

    def add(self, candle: Candle) -> bool:
        if candle.open_time in self._by_time:
            return False
        self._by_time[candle.open_time] = candle
        bisect.insort(self._times, candle.open_time)
        return True

    def extend(self, candles: Iterable[Candle]) -> int:
        return sum(1 for candle in candles if self.add(candle))

    def __len__(self) -> int:
        return len(self._times)

    def __iter__(self) -> Iterator[Candle]:
        for open_time in self._times:
            yield self._by_time[open_time]

    def __contains__(self, open_time: object) -> bool:
        return open_time in self._by_time

    def __getitem__(self, open_time: int) -> Candle:
        return self._by_time[open_time]

    def __repr__(self) -> str:
        if not self._times:
            return "CandleSeries([])"
        return f"CandleSeries(len={len(self)}, first={self._times[0]}, last={self._times[-1]})"

    @property
    def first(self) -> Optional[Candle]:
        return self._by_time[self._times[0]] if self._times else None

    @property
    def last(self) -> Optional[Candle]:
        return self._by_time[self._times[-1]] if self._times else None

    def open_times(self) -> List[int]:
        return list(self._times)

    def items(self) -> List[Tuple[int, Candle]]:
        return [(open_time, self._by_time[open_time]) for open_time in self._times]

    def closes(self) -> List[float]:
        return [candle.close for candle in self]

    def highs(self) -> List[float]:
        return [candle.high for candle in self]

    def lows(self) -> List[float]:
        return [candle.low for candle in self]

    def latest(self, quantity: int) -> "CandleSeries":
        if quantity <= 0:
            return CandleSeries()
        return CandleSeries(self._by_time[t] for t in self._times[-quantity:])

    def to_frame(self) -> pd.DataFrame:
        if not self._times:
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        df = pd.DataFrame(
            [
                {
                    "timestamp": candle.open_time,
                    "open": candle.open,
                    "high": candle.high,
                    "low": candle.low,
                    "close": candle.close,
                    "volume": candle.volume,
                }
                for candle in self
            ]
        )
        df["timestamp"] = pd.to_numeric(df["timestamp"]).astype("int64")
        return df[OHLCV_COLUMNS]
