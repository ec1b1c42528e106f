"""Shared fixtures and fakes. Nothing here touches the network."""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests

from options import ClientOptions
from schwab.auth import AuthCredential, AuthorizationGrant
from schwab.data import Candle, FetchWindow, PriceHistoryParams
from schwab.errors import LoginFailed


def make_candle(ts: int, price: float = 100.0, volume: int = 10) -> Candle:
    return Candle(timestamp=ts, open=price, high=price + 1, low=price - 1, close=price, volume=volume)


def candle_row(ts: int, price: float = 100.0) -> Dict[str, Any]:
    return make_candle(ts, price).to_dict()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ("" if payload is None else str(payload))
        self.headers = headers or {}

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeHttp:
    """Stands in for ``requests.Session``; replays scripted responses in order.

    A scripted item may be an exception instance, which is raised instead.
    """

    def __init__(self, responses: Optional[List[Any]] = None, delay_s: float = 0.0):
        self.responses = list(responses or [])
        self.delay_s = delay_s
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    def _next(self, call: Dict[str, Any]) -> Any:
        with self._lock:
            self.calls.append(call)
            item = self.responses.pop(0) if self.responses else FakeResponse(500, text="no scripted response")
        if self.delay_s:
            threading.Event().wait(self.delay_s)
        if isinstance(item, BaseException):
            raise item
        return item

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        return self._next({"method": method, "url": url, **kwargs})

    def post(self, url: str, **kwargs) -> FakeResponse:
        return self._next({"method": "POST", "url": url, **kwargs})

    def close(self) -> None:
        self.closed = True


class FakeTokens:
    """Minimal ``TokenManager`` double that records ``ensure_valid`` calls."""

    def __init__(self):
        self.calls: List[bool] = []
        self.refresh_count = 0
        self.generation = 0

    def ensure_valid(self, cancel=None, force_refresh: bool = False) -> AuthCredential:
        self.calls.append(force_refresh)
        if force_refresh:
            self.generation += 1
            self.refresh_count += 1
        return AuthCredential(token_type="Bearer", access_token=f"access-{self.generation}",
                              expires_at=9e12, issued_at=1)

    @property
    def force_calls(self) -> int:
        return sum(1 for forced in self.calls if forced)

    def auth_headers(self, credential: Optional[AuthCredential] = None) -> Dict[str, str]:
        cred = credential or self.ensure_valid()
        return {"Authorization": f"{cred.token_type} {cred.access_token}"}

    def ttl_remaining_s(self) -> Optional[int]:
        return None


class FakeLogin:
    def __init__(self, grant: Optional[AuthorizationGrant] = None, error: Optional[Exception] = None):
        self.grant = grant or AuthorizationGrant(code="auth-code", session="sess-1")
        self.error = error
        self.calls = 0

    def obtain_authorization_code(self, options: ClientOptions) -> AuthorizationGrant:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.grant


class FakeHistorySource:
    """Simulated price-history endpoint over a fixed set of candles.

    Each call returns the ``page_size`` newest candles at or before the
    window's end date, or ``{"empty": true}`` once nothing is left.
    """

    def __init__(self, timestamps: List[int], page_size: int = 3, symbol: str = "SPY"):
        self.timestamps = sorted(timestamps)
        self.page_size = page_size
        self.symbol = symbol
        self.windows: List[FetchWindow] = []

    def get_price_history(self, symbol: str, window: FetchWindow, params: PriceHistoryParams, cancel=None):
        self.windows.append(window)
        eligible = [ts for ts in self.timestamps if ts <= window.end_date][-self.page_size:]
        if not eligible:
            return {"symbol": symbol, "empty": True, "candles": []}
        return {"symbol": symbol, "empty": False, "candles": [candle_row(ts) for ts in eligible]}


class ScriptedHistorySource:
    """Returns the scripted payloads in order, then empty pages."""

    def __init__(self, pages: List[Dict[str, Any]]):
        self.pages = list(pages)
        self.windows: List[FetchWindow] = []

    def get_price_history(self, symbol: str, window: FetchWindow, params: PriceHistoryParams, cancel=None):
        self.windows.append(window)
        if self.pages:
            return self.pages.pop(0)
        return {"symbol": symbol, "empty": True, "candles": []}


@pytest.fixture
def client_options(tmp_path: Path) -> ClientOptions:
    return ClientOptions(
        auth_tokens_file_location=tmp_path / "tokens.json",
        developer_app_key="app-key",
        developer_app_secret="app-secret",
        developer_app_callback_url="https://127.0.0.1/callback",
        trading_account_username="user",
        trading_account_password="pass",
    )


@pytest.fixture
def token_payload() -> Dict[str, Any]:
    return {
        "expires_in": 1800,
        "token_type": "Bearer",
        "scope": "api",
        "refresh_token": "refresh-2",
        "access_token": "access-2",
        "id_token": "id-2",
    }


@pytest.fixture
def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection refused")


@pytest.fixture
def login_failed() -> LoginFailed:
    return LoginFailed("user closed the browser")
