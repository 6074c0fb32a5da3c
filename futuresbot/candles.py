from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Tuple

from .models import Candle, CandleSeries
from .rate_limiter import BinanceFuturesClient
from .signer import timestamp_ms

LOGGER = logging.getLogger(__name__)

KLINES_ENDPOINT = "/fapi/v1/klines"
BASE_INTERVAL = "1m"
HOUR_INTERVAL = "1h"
DEFAULT_PAGE_LIMIT = 1000
MAX_PAGE_LIMIT = 1500

PRICE_FIELDS = ("close", "high", "low")


def interval_to_ms(interval: str) -> int:
    match = re.fullmatch(r"(\d+)([smhdwM])", interval)
    if not match:
        raise ValueError(f"Interval no soportado: {interval}")
    amount = int(match.group(1))
    unit = match.group(2)
    multipliers = {
        "s": 1000,
        "m": 60 * 1000,
        "h": 60 * 60 * 1000,
        "d": 24 * 60 * 60 * 1000,
        "w": 7 * 24 * 60 * 60 * 1000,
        "M": 30 * 24 * 60 * 60 * 1000,
    }
    if amount <= 0:
        raise ValueError(f"Interval no soportado: {interval}")
    return amount * multipliers[unit]


def interval_factor(interval: str, base_interval: str = BASE_INTERVAL) -> int:
    """How many ``base_interval`` candles make one ``interval`` candle."""
    if interval[-1:] in ("w", "M"):
        # Weeks and months are not epoch aligned on the exchange.
        raise ValueError(f"No se puede agregar a {interval} alineado a epoch.")
    width = interval_to_ms(interval)
    base = interval_to_ms(base_interval)
    if width < base or width % base:
        raise ValueError(f"{interval} no es múltiplo de {base_interval}.")
    return width // base


def bucket_by_interval(
    series: CandleSeries,
    interval: str,
    base_interval: str = BASE_INTERVAL,
    price: str = "close",
) -> List[Tuple[int, float]]:
    """Group base candles into epoch-aligned windows of ``interval``.

    Returns ``(window_open_time, value)`` oldest first, where value is the
    last close, the highest high or the lowest low of the window. Windows
    without candles produce nothing; boundaries always come from the absolute
    open time, so a gap never shifts the windows after it.
    """
    if price not in PRICE_FIELDS:
        raise ValueError(f"price debe ser uno de {PRICE_FIELDS}, no {price!r}")
    interval_factor(interval, base_interval)
    width = interval_to_ms(interval)

    windows: List[Tuple[int, float]] = []
    for candle in series:
        window_start = candle.open_time - candle.open_time % width
        if not windows or windows[-1][0] != window_start:
            windows.append((window_start, getattr(candle, price)))
            continue
        current = windows[-1][1]
        if price == "close":
            value = candle.close
        elif price == "high":
            value = max(current, candle.high)
        else:
            value = min(current, candle.low)
        windows[-1] = (window_start, value)
    return windows


def aggregate_to_interval(
    series: CandleSeries,
    interval: str,
    base_interval: str = BASE_INTERVAL,
    price: str = "close",
) -> List[float]:
    return [value for _, value in bucket_by_interval(series, interval, base_interval, price)]


class CandleAggregator:
    """Builds candle series larger than one klines page and re-buckets them.

    All list outputs are ordered oldest first.
    """

    def __init__(
        self,
        client: BinanceFuturesClient,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        signed: bool = False,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not 1 <= page_limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"page_limit debe estar entre 1 y {MAX_PAGE_LIMIT}.")
        self.client = client
        self.page_limit = page_limit
        self.signed = signed
        self._clock = clock or timestamp_ms

    def _fetch_page(self, symbol: str, interval: str, end_time: int, limit: int) -> List[Candle]:
        rows = self.client.request(
            "GET",
            KLINES_ENDPOINT,
            [
                ("symbol", symbol),
                ("interval", interval),
                ("endTime", end_time),
                ("limit", limit),
            ],
            signed=self.signed,
        )
        return [Candle.from_kline(row) for row in rows or []]

    def fetch_base_candles(
        self,
        symbol: str,
        quantity: int,
        interval: str = BASE_INTERVAL,
        end_time: Optional[int] = None,
    ) -> CandleSeries:
        """Fetch the ``quantity`` most recent candles ending at ``end_time``.

        Pages walk backward from ``end_time`` (now by default), each cursor
        being one millisecond before the earliest candle already received. An
        empty page means the exchange has no older history and the partial
        series is returned. Exchange errors abort the whole fetch.
        """
        interval_to_ms(interval)
        series = CandleSeries()
        if quantity <= 0:
            return series

        cursor = int(end_time) if end_time is not None else int(self._clock())
        pages = 0
        while len(series) < quantity:
            limit = min(self.page_limit, quantity - len(series))
            page = self._fetch_page(symbol, interval, cursor, limit)
            pages += 1
            if not page:
                LOGGER.info(
                    "Historial de %s %s agotado: %s de %s velas.",
                    symbol,
                    interval,
                    len(series),
                    quantity,
                )
                break
            added = series.extend(page)
            earliest = min(candle.open_time for candle in page)
            if added == 0 or earliest > cursor:
                break
            cursor = earliest - 1

        LOGGER.debug(
            "fetch_base_candles %s %s: %s velas en %s páginas.",
            symbol,
            interval,
            len(series),
            pages,
        )
        return series.latest(quantity)

    def get_some_1m_candle(self, symbol: str, quantity: int) -> CandleSeries:
        return self.fetch_base_candles(symbol, quantity, BASE_INTERVAL)

    def get_some_candles(self, symbol: str, quantity: int, interval: str) -> CandleSeries:
        return self.fetch_base_candles(symbol, quantity, interval)

    def _aggregated(
        self,
        quantity: int,
        symbol: str,
        interval: str,
        base_interval: str,
        price: str,
    ) -> List[float]:
        if quantity <= 0:
            return []
        factor = interval_factor(interval, base_interval)
        if price == "close":
            series = self.fetch_base_candles(symbol, quantity * factor, base_interval)
            values = aggregate_to_interval(series, interval, base_interval, price)
        else:
            # Highs and lows are only right for whole windows: fetch two
            # extra windows and drop the partial first and the open last one.
            series = self.fetch_base_candles(symbol, (quantity + 2) * factor, base_interval)
            values = aggregate_to_interval(series, interval, base_interval, price)[1:-1]
        return values[-quantity:]

    def get_candle_info(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, BASE_INTERVAL, "close")

    def get_candle_info_max_value(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, BASE_INTERVAL, "high")

    def get_candle_info_min_value(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, BASE_INTERVAL, "low")

    def build_candle_w_1hr_close_price(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, HOUR_INTERVAL, "close")

    def build_candle_w_1hr_max_price(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, HOUR_INTERVAL, "high")

    def build_candle_w_1hr_min_price(self, quantity: int, symbol: str, interval: str) -> List[float]:
        return self._aggregated(quantity, symbol, interval, HOUR_INTERVAL, "low")

    def get_last_closed_price(self, symbol: str) -> float:
        now = int(self._clock())
        series = self.fetch_base_candles(symbol, 2, BASE_INTERVAL, end_time=now)
        closed = [c for c in series if c.close_time is not None and c.close_time < now]
        if not closed:
            raise ValueError(f"No hay velas cerradas de {symbol}.")
        return closed[-1].close

    def get_highest_price(self, symbol: str, quantity: int, interval: str) -> float:
        highs = self.fetch_base_candles(symbol, quantity, interval).highs()
        if not highs:
            raise ValueError(f"No hay velas de {symbol} {interval}.")
        return max(highs)

    def get_lowest_price(self, symbol: str, quantity: int, interval: str) -> float:
        lows = self.fetch_base_candles(symbol, quantity, interval).lows()
        if not lows:
            raise ValueError(f"No hay velas de {symbol} {interval}.")
        return min(lows)
