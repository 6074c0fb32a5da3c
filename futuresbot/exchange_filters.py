from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Mapping, Optional

LOGGER = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


class SymbolFilters:
    """LOT_SIZE / PRICE_FILTER / MIN_NOTIONAL rules taken from ``exchangeInfo``."""

    def __init__(self, filters_by_symbol: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None) -> None:
        self._symbol_filters: Dict[str, Dict[str, Dict[str, Any]]] = filters_by_symbol or {}

    @classmethod
    def from_exchange_info(cls, exchange_info: Mapping[str, Any]) -> "SymbolFilters":
        filters_by_symbol = {}
        for symbol_info in exchange_info.get("symbols", []):
            filters = {f["filterType"]: f for f in symbol_info.get("filters", [])}
            filters_by_symbol[symbol_info.get("symbol")] = filters
        return cls(filters_by_symbol)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._symbol_filters

    def _get_filter(self, symbol: str, filter_type: str) -> Optional[Dict[str, Any]]:
        symbol_filters = self._symbol_filters.get(symbol)
        if not symbol_filters:
            LOGGER.warning("Filtros no encontrados para el símbolo %s.", symbol)
            return None
        return symbol_filters.get(filter_type)

    def adjust_qty(self, symbol: str, qty: Any) -> Optional[Decimal]:
        qty_dec = _to_decimal(qty)
        lot_size = self._get_filter(symbol, "LOT_SIZE")
        if not lot_size:
            return qty_dec

        min_qty = _to_decimal(lot_size["minQty"])
        max_qty = _to_decimal(lot_size["maxQty"])
        step_size = _to_decimal(lot_size["stepSize"])

        if qty_dec < min_qty or qty_dec > max_qty:
            LOGGER.warning(
                "Cantidad %s fuera de rango [%s, %s] para %s.",
                qty_dec,
                min_qty,
                max_qty,
                symbol,
            )

        bounded = min(qty_dec, max_qty)
        steps = (bounded / step_size).to_integral_value(rounding=ROUND_DOWN)
        adjusted = (steps * step_size).quantize(step_size)

        if adjusted < min_qty or adjusted > max_qty or adjusted == 0:
            LOGGER.warning(
                "Cantidad ajustada %s inválida para %s (min %s, max %s, step %s).",
                adjusted,
                symbol,
                min_qty,
                max_qty,
                step_size,
            )
            return None

        return adjusted

    def adjust_price(self, symbol: str, price: Any) -> Optional[Decimal]:
        price_dec = _to_decimal(price)
        price_filter = self._get_filter(symbol, "PRICE_FILTER")
        if not price_filter:
            return price_dec

        min_price = _to_decimal(price_filter["minPrice"])
        max_price = _to_decimal(price_filter["maxPrice"])
        tick_size = _to_decimal(price_filter["tickSize"])

        # maxPrice 0 means the filter has no upper bound.
        if price_dec < min_price or (max_price > 0 and price_dec > max_price):
            LOGGER.warning(
                "Precio %s fuera de rango [%s, %s] para %s.",
                price_dec,
                min_price,
                max_price,
                symbol,
            )

        steps = (price_dec / tick_size).to_integral_value(rounding=ROUND_DOWN)
        adjusted = (steps * tick_size).quantize(tick_size)

        if adjusted <= 0:
            LOGGER.warning("Precio ajustado %s inválido para %s.", adjusted, symbol)
            return None

        return adjusted

    def validate_min_notional(self, symbol: str, price: Any, qty: Any) -> bool:
        min_notional_filter = self._get_filter(symbol, "MIN_NOTIONAL")
        if not min_notional_filter:
            return True

        # Futures exchangeInfo uses "notional", spot uses "minNotional".
        raw_min = min_notional_filter.get("notional", min_notional_filter.get("minNotional", 0))
        min_notional = _to_decimal(raw_min)
        notional = _to_decimal(price) * _to_decimal(qty)

        if notional < min_notional:
            LOGGER.warning(
                "Valor nominal %s inferior al mínimo %s para %s.",
                notional,
                min_notional,
                symbol,
            )
            return False

        return True
