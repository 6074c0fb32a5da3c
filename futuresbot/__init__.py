from .candles import CandleAggregator, aggregate_to_interval, interval_to_ms
from .config import build_client, get_config, get_credentials, load_env
from .errors import ErrorKind, ExchangeError, classify
from .execution import OrderGateway
from .models import (
    Candle,
    CandleSeries,
    Credentials,
    OrderAck,
    OrderRequest,
    OrderType,
    PositionSide,
    Side,
)
from .rate_limiter import BinanceFuturesClient, BinanceRateLimiter
from .retry import RetryPolicy
from .signer import SignedRequest, Signer, sign

__all__ = [
    "BinanceFuturesClient",
    "BinanceRateLimiter",
    "Candle",
    "CandleAggregator",
    "CandleSeries",
    "Credentials",
    "ErrorKind",
    "ExchangeError",
    "OrderAck",
    "OrderGateway",
    "OrderRequest",
    "OrderType",
    "PositionSide",
    "RetryPolicy",
    "Side",
    "SignedRequest",
    "Signer",
    "aggregate_to_interval",
    "build_client",
    "classify",
    "get_config",
    "get_credentials",
    "interval_to_ms",
    "load_env",
    "sign",
]
