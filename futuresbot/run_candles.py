from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from .candles import CandleAggregator
from .config import KLINES_PAGE_LIMIT, build_client, load_env
from .errors import ExchangeError
from .execution import OrderGateway
from .observability import configure_logging


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cierres de velas de Binance Futures.")
    parser.add_argument("--symbol", default="BTCUSDT")
    parser.add_argument("--interval", default="1h")
    parser.add_argument("--quantity", type=int, default=24)
    parser.add_argument("--hourly-base", action="store_true", help="Agrega desde velas de 1h.")
    parser.add_argument("--ping", action="store_true", help="Solo comprueba la conexión.")
    parser.add_argument("--log-path", default="logs/futuresbot.log")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    load_env()
    configure_logging(args.log_path, level=logging.INFO)

    client = build_client(require_credentials=False)
    try:
        if args.ping:
            OrderGateway(client).ping()
            print("Conexión OK")
            return 0

        aggregator = CandleAggregator(client, page_limit=KLINES_PAGE_LIMIT)
        if args.hourly_base:
            closes = aggregator.build_candle_w_1hr_close_price(args.quantity, args.symbol, args.interval)
        else:
            closes = aggregator.get_candle_info(args.quantity, args.symbol, args.interval)
    except ExchangeError as exc:
        print(f"Error del exchange: {exc}")
        return 1

    print(f"{args.symbol} {args.interval}: {len(closes)} cierres (más antiguo primero)")
    for close in closes:
        print(f"{close:.2f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
