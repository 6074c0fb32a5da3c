from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Tuple

import requests

from .errors import classify, transport_error
from .models import Credentials
from .retry import RetryPolicy
from .signer import (
    DEFAULT_RECV_WINDOW_MS,
    Params,
    SignedRequest,
    Signer,
    canonical_query,
    normalize_params,
)

LOGGER = logging.getLogger(__name__)

FUTURES_LIVE_REST_URL = "https://fapi.binance.com"
FUTURES_TESTNET_REST_URL = "https://testnet.binancefuture.com"

DEFAULT_ENDPOINT_WEIGHTS: Dict[str, int] = {
    "/fapi/v1/ping": 1,
    "/fapi/v1/order": 1,
    "/fapi/v1/allOpenOrders": 1,
    "/fapi/v1/positionSide/dual": 1,
    "/fapi/v1/exchangeInfo": 1,
    "/fapi/v1/klines": 5,
    "/fapi/v1/ticker/price": 1,
    "/fapi/v1/openOrders": 1,
    "/fapi/v2/positionRisk": 5,
}


def resolve_weight(endpoint: str, params: Optional[Dict[str, Any]] = None) -> int:
    params = params or {}
    if endpoint == "/fapi/v1/klines":
        limit = int(params.get("limit", 500))
        if limit < 100:
            return 1
        if limit < 500:
            return 2
        if limit <= 1000:
            return 5
        return 10
    if endpoint == "/fapi/v1/ticker/price":
        return 1 if params.get("symbol") else 2
    if endpoint == "/fapi/v1/openOrders":
        return 1 if params.get("symbol") else 40
    return DEFAULT_ENDPOINT_WEIGHTS.get(endpoint, 1)


@dataclass
class RateLimitMetrics:
    calls_per_minute: int
    weight_per_minute: float
    server_weight: Optional[int] = None


USED_WEIGHT_HEADER = "x-mbx-used-weight-1m"
WINDOW_S = 60.0


class BinanceRateLimiter:
    """Keeps requests under Binance's per-minute call and weight limits.

    Local accounting is a sliding minute over this process's own requests.
    The exchange counts weight per IP, so the last ``X-MBX-USED-WEIGHT-1M``
    it reported is also honoured until it is a minute old. ``acquire``
    blocks while either figure would go over the limit.
    """

    def __init__(
        self,
        max_calls_per_minute: int = 2400,
        max_weight_per_minute: int = 2400,
        metrics_log_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls_per_minute < 1 or max_weight_per_minute < 1:
            raise ValueError("Los límites por minuto deben ser >= 1.")
        self.max_calls_per_minute = max_calls_per_minute
        self.max_weight_per_minute = max_weight_per_minute
        self.metrics_log_interval_s = metrics_log_interval_s
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        # (sent_at, weight) of every request in the last minute.
        self._sent: Deque[Tuple[float, float]] = deque()
        self._local_weight = 0.0
        self._server_weight: Optional[int] = None
        self._server_seen_at = 0.0
        self._last_log: Optional[float] = None

    def acquire(self, weight: float, endpoint: Optional[str] = None) -> RateLimitMetrics:
        if weight > self.max_weight_per_minute:
            raise ValueError(
                f"Peso {weight} supera el máximo por minuto ({self.max_weight_per_minute})."
            )
        while True:
            with self._lock:
                now = self._clock()
                self._expire(now)
                wait = self._wait_time(now, weight)
                if wait == 0:
                    self._sent.append((now, weight))
                    self._local_weight += weight
                    if self._server_weight is not None:
                        self._server_weight += int(weight)
                    metrics = self._metrics()
                    self._log_metrics(now, metrics, endpoint)
                    return metrics
            LOGGER.debug("RateLimiter: esperando %.2fs antes de %s.", wait, endpoint or "request")
            self._sleep(wait)

    def sync_used_weight(self, used_weight: int) -> None:
        """Adopt the weight the exchange reports as used in the current minute."""
        with self._lock:
            self._server_weight = used_weight
            self._server_seen_at = self._clock()
        if used_weight >= self.max_weight_per_minute * 0.9:
            LOGGER.warning(
                "Peso usado según el exchange %s de %s por minuto.",
                used_weight,
                self.max_weight_per_minute,
            )

    def observe_headers(self, headers: Optional[Mapping[str, Any]]) -> None:
        for key, value in (headers or {}).items():
            if str(key).lower() != USED_WEIGHT_HEADER:
                continue
            try:
                used_weight = int(value)
            except (TypeError, ValueError):
                LOGGER.debug("Cabecera %s ilegible: %r", key, value)
                return
            self.sync_used_weight(used_weight)
            return

    def snapshot_metrics(self) -> RateLimitMetrics:
        with self._lock:
            self._expire(self._clock())
            return self._metrics()

    def _metrics(self) -> RateLimitMetrics:
        return RateLimitMetrics(
            calls_per_minute=len(self._sent),
            weight_per_minute=self._local_weight,
            server_weight=self._server_weight,
        )

    def _expire(self, now: float) -> None:
        while self._sent and now - self._sent[0][0] >= WINDOW_S:
            _, weight = self._sent.popleft()
            self._local_weight -= weight
        if self._server_weight is not None and now - self._server_seen_at >= WINDOW_S:
            self._server_weight = None

    def _wait_time(self, now: float, weight: float) -> float:
        waits = []
        if self._sent and (
            len(self._sent) >= self.max_calls_per_minute
            or self._local_weight + weight > self.max_weight_per_minute
        ):
            waits.append(self._sent[0][0] + WINDOW_S - now)
        if (
            self._server_weight is not None
            and self._server_weight + weight > self.max_weight_per_minute
        ):
            waits.append(self._server_seen_at + WINDOW_S - now)
        if not waits:
            return 0
        return max(0.01, max(waits))

    def _log_metrics(
        self, now: float, metrics: RateLimitMetrics, endpoint: Optional[str]
    ) -> None:
        if self._last_log is not None and now - self._last_log < self.metrics_log_interval_s:
            return
        self._last_log = now
        LOGGER.info(
            "RateLimiter: llamadas/min=%s peso/min=%.0f peso exchange=%s endpoint=%s",
            metrics.calls_per_minute,
            metrics.weight_per_minute,
            metrics.server_weight,
            endpoint or "-",
        )


class BinanceFuturesClient:
    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        base_url: str = FUTURES_LIVE_REST_URL,
        rate_limiter: Optional[BinanceRateLimiter] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        recv_window: Optional[int] = DEFAULT_RECV_WINDOW_MS,
        request_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or BinanceRateLimiter()
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.sleep = sleep
        self._signer = Signer(credentials, recv_window=recv_window) if credentials else None

    @property
    def has_credentials(self) -> bool:
        return self._signer is not None

    def build_request(
        self, params: Optional[Params] = None, signed: bool = False
    ) -> Tuple[str, Optional[SignedRequest]]:
        if not signed:
            return canonical_query(params), None
        if self._signer is None:
            raise ValueError("Se requieren credenciales para peticiones firmadas.")
        signed_request = self._signer.sign_request(params)
        return signed_request.query_string, signed_request

    def send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Params] = None,
        signed: bool = False,
        weight: Optional[int] = None,
    ) -> Any:
        """Single attempt: sign, send, and raise a classified ``ExchangeError`` on failure."""
        endpoint_path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        pairs = normalize_params(params)
        weight = weight if weight is not None else resolve_weight(endpoint_path, dict(pairs))
        query, _ = self.build_request(pairs, signed=signed)
        url = f"{self.base_url}{endpoint_path}"
        if query:
            url = f"{url}?{query}"
        headers = {}
        if self._signer is not None:
            headers["X-MBX-APIKEY"] = self._signer.api_key

        self.rate_limiter.acquire(weight, endpoint_path)
        try:
            response = self.session.request(
                method.upper(), url, headers=headers, timeout=self.request_timeout
            )
        except requests.RequestException as exc:
            raise transport_error(exc) from exc
        self.rate_limiter.observe_headers(response.headers)

        if 200 <= response.status_code < 300:
            try:
                return response.json()
            except ValueError:
                raise classify(response.status_code, response.text, response.headers)

        error = classify(response.status_code, response.text, response.headers)
        LOGGER.warning(
            "%s %s respondió %s (%s, code=%s): %s",
            method.upper(),
            endpoint_path,
            response.status_code,
            error.kind.name,
            error.code,
            error.message,
        )
        raise error

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Params] = None,
        signed: bool = False,
        weight: Optional[int] = None,
    ) -> Any:
        # Each attempt re-signs with a fresh timestamp.
        return self.retry_policy.run(
            lambda: self.send(method, endpoint, params=params, signed=signed, weight=weight),
            sleep=self.sleep,
            description=f"{method.upper()} {endpoint}",
        )
