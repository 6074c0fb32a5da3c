from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

import pytest

from futuresbot.models import Credentials
from futuresbot.rate_limiter import BinanceFuturesClient
from futuresbot.retry import RetryPolicy


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)
        self.headers = headers or {}

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    def __init__(self, handler: Callable[[Dict[str, Any]], Any]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, headers=None, timeout=None) -> FakeResponse:
        parts = urlsplit(url)
        call = {
            "method": method,
            "path": parts.path,
            "query": parts.query,
            "pairs": parse_qsl(parts.query),
            "params": dict(parse_qsl(parts.query)),
            "headers": dict(headers or {}),
            "timeout": timeout,
        }
        self.calls.append(call)
        result = self.handler(call)
        if isinstance(result, BaseException):
            raise result
        return result

    def calls_to(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["path"] == path]


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(api_key="test-api-key", secret_key="test-secret-key")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_client(credentials: Credentials, sleeps: List[float]):
    def _make(handler, max_attempts: int = 3, with_credentials: bool = True):
        session = FakeSession(handler)
        client = BinanceFuturesClient(
            credentials=credentials if with_credentials else None,
            base_url="https://fapi.test",
            session=session,
            retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=0.5, jitter=0.0),
            sleep=sleeps.append,
        )
        return client, session

    return _make


@pytest.fixture
def response():
    return FakeResponse
