from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv, set_key

from .models import Credentials
from .rate_limiter import (
    FUTURES_LIVE_REST_URL,
    FUTURES_TESTNET_REST_URL,
    BinanceFuturesClient,
)
from .retry import RetryPolicy

ENV_PATH = Path(".env")
VALID_ENVIRONMENTS = {"LIVE", "TESTNET"}
RECV_WINDOW_MS = int(os.getenv("RECV_WINDOW_MS", "5000"))
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
KLINES_PAGE_LIMIT = int(os.getenv("KLINES_PAGE_LIMIT", "1000"))
REQUEST_TIMEOUT_S = float(os.getenv("REQUEST_TIMEOUT_S", "10"))


def load_env(env_path: Path | str = ENV_PATH) -> None:
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(dotenv_path=env_file)


def get_config() -> Dict[str, Optional[str]]:
    return {
        "BINANCE_API_KEY": os.environ.get("BINANCE_API_KEY"),
        "BINANCE_API_SECRET": os.environ.get("BINANCE_API_SECRET"),
        "ENV": os.environ.get("ENV", "LIVE").upper(),
        "BINANCE_BASE_URL": os.environ.get("BINANCE_BASE_URL"),
    }


def _validate_env(env: str) -> str:
    normalized_env = env.upper()
    if normalized_env not in VALID_ENVIRONMENTS:
        raise ValueError(f"ENV inválido: {normalized_env}. Usa LIVE o TESTNET.")
    return normalized_env


def get_base_url(config: Optional[Dict[str, Optional[str]]] = None) -> str:
    config = config or get_config()
    if config.get("BINANCE_BASE_URL"):
        return str(config["BINANCE_BASE_URL"]).rstrip("/")
    env = _validate_env(config.get("ENV") or "LIVE")
    if env == "TESTNET":
        return FUTURES_TESTNET_REST_URL
    return FUTURES_LIVE_REST_URL


def get_credentials(config: Optional[Dict[str, Optional[str]]] = None) -> Credentials:
    config = config or get_config()
    api_key = config.get("BINANCE_API_KEY")
    api_secret = config.get("BINANCE_API_SECRET")
    if not api_key or not api_secret:
        raise ValueError("Faltan BINANCE_API_KEY / BINANCE_API_SECRET en la configuración.")
    return Credentials(api_key=api_key, secret_key=api_secret)


def build_client(
    config: Optional[Dict[str, Optional[str]]] = None,
    require_credentials: bool = True,
) -> BinanceFuturesClient:
    config = config or get_config()
    credentials = None
    if require_credentials or (config.get("BINANCE_API_KEY") and config.get("BINANCE_API_SECRET")):
        credentials = get_credentials(config)
    return BinanceFuturesClient(
        credentials=credentials,
        base_url=get_base_url(config),
        retry_policy=RetryPolicy(max_attempts=MAX_ATTEMPTS),
        recv_window=RECV_WINDOW_MS,
        request_timeout=REQUEST_TIMEOUT_S,
    )


def save_config(
    api_key: Optional[str],
    api_secret: Optional[str],
    env: Optional[str],
    base_url: Optional[str] = None,
    env_path: Path | str = ENV_PATH,
    persist: bool = True,
) -> None:
    if env is not None:
        env = _validate_env(env)

    if persist:
        env_file = Path(env_path)
        env_file.touch(exist_ok=True)
        if api_key is not None:
            set_key(str(env_file), "BINANCE_API_KEY", api_key)
        if api_secret is not None:
            set_key(str(env_file), "BINANCE_API_SECRET", api_secret)
        if env is not None:
            set_key(str(env_file), "ENV", env)
        if base_url is not None:
            set_key(str(env_file), "BINANCE_BASE_URL", base_url)

    if api_key is not None:
        os.environ["BINANCE_API_KEY"] = api_key
    if api_secret is not None:
        os.environ["BINANCE_API_SECRET"] = api_secret
    if env is not None:
        os.environ["ENV"] = env
    if base_url is not None:
        os.environ["BINANCE_BASE_URL"] = base_url


__all__ = [
    "ENV_PATH",
    "KLINES_PAGE_LIMIT",
    "MAX_ATTEMPTS",
    "RECV_WINDOW_MS",
    "REQUEST_TIMEOUT_S",
    "VALID_ENVIRONMENTS",
    "build_client",
    "get_base_url",
    "get_config",
    "get_credentials",
    "load_env",
    "save_config",
]
