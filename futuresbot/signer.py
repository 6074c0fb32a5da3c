from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlencode

from .models import Credentials

Params = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]

DEFAULT_RECV_WINDOW_MS = 5000


def timestamp_ms(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def normalize_params(params: Optional[Params]) -> Tuple[Tuple[str, str], ...]:
    """Keep the caller's order, drop ``None`` values and stringify the rest."""
    if params is None:
        return ()
    pairs = params.items() if isinstance(params, Mapping) else params
    return tuple((str(key), _encode_value(value)) for key, value in pairs if value is not None)


def canonical_query(params: Optional[Params]) -> str:
    return urlencode(normalize_params(params))


def sign(params: Optional[Params], secret: str) -> str:
    """HMAC-SHA256 hex digest of the canonical query, in the order given."""
    return hmac.new(
        secret.encode("utf-8"),
        canonical_query(params).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


@dataclass(frozen=True)
class SignedRequest:
    canonical_query: Tuple[Tuple[str, str], ...]
    timestamp: int
    signature: str

    @property
    def query_string(self) -> str:
        return f"{urlencode(self.canonical_query)}&signature={self.signature}"


class Signer:
    def __init__(
        self,
        credentials: Credentials,
        recv_window: Optional[int] = DEFAULT_RECV_WINDOW_MS,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._credentials = credentials
        self.recv_window = recv_window
        self._clock = clock or timestamp_ms

    @property
    def api_key(self) -> str:
        return self._credentials.api_key

    def sign_request(self, params: Optional[Params] = None) -> SignedRequest:
        # A fresh timestamp per call: signed requests expire after recvWindow.
        pairs: list[Tuple[str, Any]] = list(normalize_params(params))
        if self.recv_window:
            pairs.append(("recvWindow", self.recv_window))
        timestamp = int(self._clock())
        pairs.append(("timestamp", timestamp))
        query: Sequence[Tuple[str, str]] = normalize_params(pairs)
        return SignedRequest(
            canonical_query=tuple(query),
            timestamp=timestamp,
            signature=sign(query, self._credentials.secret_key),
        )
