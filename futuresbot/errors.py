from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

Body = Union[str, bytes, Mapping[str, Any], None]


class ErrorKind(Enum):
    BAD_GATEWAY = "E03: Error 502, exchange server is in trouble."
    ORDER_WOULD_TRIGGER_IMMEDIATELY = "E01: Order would immediately trigger."
    REDUCE_ONLY_REJECTED = "E05: ReduceOnly Order is rejected."
    RATE_LIMITED = "E09: Request rate limit exceeded."
    RECV_WINDOW_EXPIRED = "E08: Timestamp for this request is outside of the recvWindow."
    POSITION_SIDE_UNCHANGED = "E06: No need to change position side."
    TRANSPORT_ERROR = "E07: Transport error before any response."
    UNMAPPED = "E02: Error not mapped."

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_KINDS


TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.BAD_GATEWAY,
        ErrorKind.RATE_LIMITED,
        ErrorKind.RECV_WINDOW_EXPIRED,
        ErrorKind.TRANSPORT_ERROR,
    }
)

# Binance futures error codes.
CODE_TOO_MANY_REQUESTS = -1003
CODE_RECV_WINDOW = -1021
CODE_WOULD_IMMEDIATELY_TRIGGER = -2021
CODE_REDUCE_ONLY_REJECTED = -2022
CODE_ORDER_DOES_NOT_EXIST = -2013
CODE_NO_NEED_TO_CHANGE_POSITION_SIDE = -4059


class ExchangeError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        body: Body = None,
        retry_after: Optional[float] = None,
        attempts: int = 1,
    ) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code
        self.body = body
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(f"{kind.value} (HTTP {status_code}, code {code}): {message}")

    @property
    def is_transient(self) -> bool:
        return self.kind.is_transient

    def with_attempts(self, attempts: int) -> "ExchangeError":
        """Copy of this error reporting ``attempts`` tries; ``self`` is left as is."""
        if attempts == self.attempts:
            return self
        return ExchangeError(
            self.kind,
            self.message,
            status_code=self.status_code,
            code=self.code,
            body=self.body,
            retry_after=self.retry_after,
            attempts=attempts,
        )

    def __repr__(self) -> str:
        return (
            f"ExchangeError(kind={self.kind.name}, status_code={self.status_code}, "
            f"code={self.code}, message={self.message!r})"
        )


def _parse_body(body: Body) -> Dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _parse_code(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_after(headers: Optional[Mapping[str, Any]]) -> Optional[float]:
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() == "retry-after":
            try:
                return max(0.0, float(value))
            except (TypeError, ValueError):
                return None
    return None


def _raw_text(body: Body) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, Mapping):
        return json.dumps(dict(body), ensure_ascii=False, default=str)
    return str(body)


def classify(
    status_code: Optional[int],
    body: Body,
    headers: Optional[Mapping[str, Any]] = None,
) -> ExchangeError:
    """Map a failed exchange response to an ``ExchangeError``.

    Total over its inputs: empty, non-JSON or unknown bodies fall through to
    ``ErrorKind.UNMAPPED`` with the raw body kept verbatim.
    """
    payload = _parse_body(body)
    code = _parse_code(payload.get("code"))
    msg = payload.get("msg")
    message = str(msg) if msg is not None else _raw_text(body)
    text = f"{message} {_raw_text(body)}".lower()

    def build(kind: ErrorKind, retry_after: Optional[float] = None) -> ExchangeError:
        return ExchangeError(
            kind,
            message or kind.value,
            status_code=status_code,
            code=code,
            body=body,
            retry_after=retry_after,
        )

    if status_code in (502, 504) or "502 bad gateway" in text:
        return build(ErrorKind.BAD_GATEWAY)
    if code == CODE_WOULD_IMMEDIATELY_TRIGGER or "order would immediately trigger" in text:
        return build(ErrorKind.ORDER_WOULD_TRIGGER_IMMEDIATELY)
    if code == CODE_REDUCE_ONLY_REJECTED or "reduceonly order is rejected" in text:
        return build(ErrorKind.REDUCE_ONLY_REJECTED)
    if (
        status_code in (418, 429)
        or code == CODE_TOO_MANY_REQUESTS
        or "too many requests" in text
        or "rate limit" in text
    ):
        return build(ErrorKind.RATE_LIMITED, retry_after=_retry_after(headers))
    if code == CODE_RECV_WINDOW or "outside of the recvwindow" in text:
        return build(ErrorKind.RECV_WINDOW_EXPIRED)
    if code == CODE_NO_NEED_TO_CHANGE_POSITION_SIDE or "no need to change position side" in text:
        return build(ErrorKind.POSITION_SIDE_UNCHANGED)

    return build(ErrorKind.UNMAPPED)


def transport_error(exc: BaseException) -> ExchangeError:
    return ExchangeError(ErrorKind.TRANSPORT_ERROR, str(exc) or type(exc).__name__)
