import time
import logging
import os
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests
from file_io import (
    DATA_ROOT,
    append_jsonl_record,
    load_series,
    normalize_symbol,
    save_series,
)

from schwab.auth import AuthCredential, TokenManager
from schwab.data import (
    ONE_MINUTE_MS,
    Candle,
    CandleSeries,
    FetchWindow,
    PriceHistoryParams,
    merge_series,
    now_ms,
    parse_price_history,
)
from schwab.errors import (
    Cancelled,
    PersistenceFailure,
    SchwabError,
    TransientNetworkError,
    UpstreamRejected,
)
from schwab.rate_limit import RateLimiter

MARKET_DATA_SERVER = os.getenv("SCHWAB_MARKET_DATA_SERVER", "https://api.schwabapi.com/marketdata/v1")
REQUEST_TIMEOUT = float(os.getenv("SCHWAB_TIMEOUT", "10"))  # seconds
MAX_BACKOFF = int(os.getenv("SCHWAB_MAX_BACKOFF", "5"))

log = logging.getLogger("schwab")


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("cancelled")


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RateLimitInfo:
    """Normalized view of rate-limiting state (best-effort, header-agnostic)."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_epoch: Optional[int] = None  # epoch seconds if provided
    retry_after_s: Optional[int] = None
    raw: Dict[str, str] = field(default_factory=dict)

    def seconds_until_reset(self) -> Optional[int]:
        if self.reset_epoch is None:
            return None
        return max(0, self.reset_epoch - int(time.time()))

    @staticmethod
    def from_headers(headers: Dict[str, str]) -> "RateLimitInfo":
        rl = RateLimitInfo(raw={k: v for k, v in headers.items() if 'ratelimit' in k.lower()})
        for k, v in headers.items():
            kl = k.lower()
            if kl.endswith('remaining') and 'ratelimit' in kl:
                rl.remaining = _parse_int(v)
            elif kl.endswith('limit') and 'ratelimit' in kl:
                rl.limit = _parse_int(v)
            elif 'reset' in kl and 'ratelimit' in kl:
                iv = _parse_int(v)
                if iv is not None:
                    # Large values are epoch seconds, small ones seconds-from-now.
                    rl.reset_epoch = iv if iv > 10_000_000 else int(time.time()) + iv
            elif kl == 'retry-after':
                rl.retry_after_s = _parse_int(v)
        return rl


@dataclass
class APIMetrics:
    """Lightweight, in-memory telemetry for API health/usage."""
    started_at: int = field(default_factory=lambda: int(time.time()))
    total_requests: int = 0
    total_errors: int = 0
    unauthorized_retries: int = 0
    last_status: Optional[int] = None
    last_url: Optional[str] = None
    last_latency_ms: Optional[int] = None
    ema_latency_ms: Optional[float] = None
    rate_limit: RateLimitInfo = field(default_factory=RateLimitInfo)
    per_route_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record(self, method: str, url: str, status: int, latency_ms: int, headers: Dict[str, str]) -> None:
        self.total_requests += 1
        self.last_status = status
        self.last_url = url
        self.last_latency_ms = latency_ms
        self.ema_latency_ms = latency_ms if self.ema_latency_ms is None else (0.2*latency_ms + 0.8*self.ema_latency_ms)
        if status >= 400:
            self.total_errors += 1
        route_key = f"{method} {url.split('?', 1)[0]}"
        self.per_route_counts[route_key] += 1
        self.rate_limit = RateLimitInfo.from_headers(headers)

    def snapshot(self, token_ttl_s: Optional[int], token_refreshes: int) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "uptime_s": int(time.time()) - self.started_at,
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "unauthorized_retries": self.unauthorized_retries,
            "last_status": self.last_status,
            "last_url": self.last_url,
            "last_latency_ms": self.last_latency_ms,
            "ema_latency_ms": None if self.ema_latency_ms is None else round(self.ema_latency_ms, 1),
            "token_refreshes": token_refreshes,
            "token_ttl_remaining_s": token_ttl_s,
            "rate_limit": {
                "limit": self.rate_limit.limit,
                "remaining": self.rate_limit.remaining,
                "reset_epoch": self.rate_limit.reset_epoch,
                "retry_after_s": self.rate_limit.retry_after_s,
                "seconds_until_reset": self.rate_limit.seconds_until_reset(),
                "raw": self.rate_limit.raw,
            },
            "per_route_counts": dict(self.per_route_counts),
        }


class SchwabSession:
    """Authenticated, rate-limited HTTP client for the Schwab market-data API."""

    def __init__(self,
                 tokens: TokenManager,
                 limiter: Optional[RateLimiter] = None,
                 base_url: str = MARKET_DATA_SERVER,
                 http: Optional[requests.Session] = None,
                 usage_path: Optional[Path] = None):
        """``usage_path`` is the JSONL file receiving one record per request (``None`` disables it)."""
        self.tokens = tokens
        self.limiter = limiter or RateLimiter()
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.usage_path = usage_path
        self.metrics = APIMetrics()

    def close(self) -> None:
        """Close the underlying ``requests.Session``."""
        self.http.close()

    def __enter__(self) -> "SchwabSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_api_usage(self) -> Dict[str, Any]:
        """Return a point-in-time snapshot of API usage & rate-limit state."""
        return self.metrics.snapshot(self.tokens.ttl_remaining_s(), self.tokens.refresh_count)

    def _send_once(self, method: str, url: str, cancel: Optional[threading.Event], **kwargs) -> requests.Response:
        """Send one request, retrying a single time on connection/timeout errors."""
        _check_cancel(cancel)
        try:
            return self.http.request(method, url, **kwargs)
        except requests.RequestException as exc:
            log.warning("Network error calling %s (%s); retrying once.", url, exc)
        _check_cancel(cancel)
        try:
            return self.http.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise TransientNetworkError(f"HTTP error calling {url}: {exc}") from exc

    def _backoff(self, cancel: Optional[threading.Event]) -> None:
        rl = self.metrics.rate_limit
        delay = rl.retry_after_s or (rl.seconds_until_reset() or 1)
        delay = max(1, min(delay, MAX_BACKOFF))
        log.warning("Rate limited or service unavailable. Backing off %ss and retrying once.", delay)
        if cancel is None:
            time.sleep(delay)
        elif cancel.wait(delay):
            raise Cancelled("cancelled during back-off")

    def request(self, method: str, path: str, *,
                cancel: Optional[threading.Event] = None,
                usage_tags: Optional[Dict[str, Any]] = None,
                **kwargs) -> requests.Response:
        """Issue an authenticated, rate-limited request.

        A 401 forces one credential refresh and one resend; 429/503 get one
        capped back-off and one resend. Any other non-2xx status raises
        ``UpstreamRejected``.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        timeout = kwargs.pop("timeout", REQUEST_TIMEOUT)
        custom_headers = kwargs.pop("headers", {})

        def do_once(credential: AuthCredential) -> requests.Response:
            self.limiter.acquire(cancel=cancel)
            headers = {**custom_headers, **self.tokens.auth_headers(credential)}
            start = time.perf_counter()
            resp = self._send_once(method, url, cancel, headers=headers, timeout=timeout, **kwargs)
            latency_ms = int((time.perf_counter() - start) * 1000)
            self.metrics.record(method, url, resp.status_code, latency_ms, dict(resp.headers or {}))
            self._append_api_usage(method, path, usage_tags, resp.status_code, latency_ms)
            return resp

        resp = do_once(self.tokens.ensure_valid(cancel))
        if resp.status_code == 401:
            log.info("401 received; forcing token refresh and retrying once.")
            self.metrics.unauthorized_retries += 1
            resp = do_once(self.tokens.ensure_valid(cancel, force_refresh=True))

        if resp.status_code in (429, 503):
            self._backoff(cancel)
            resp = do_once(self.tokens.ensure_valid(cancel))

        if not (200 <= resp.status_code < 300):
            raise UpstreamRejected(resp.status_code, resp.text or "", url=f"{method} {url}")
        return resp

    def request_json(self, method: str, path: str, **kwargs) -> Any:
        """Convenience wrapper that returns the decoded JSON body."""
        resp = self.request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamRejected(resp.status_code, f"Response is not valid JSON: {exc}", url=path) from exc

    def get_price_history(self, symbol: str, window: FetchWindow, params: PriceHistoryParams,
                          cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Fetch one page of bars for ``symbol`` inside ``window``."""
        q = params.to_query()
        query = {
            "symbol": symbol,
            "periodType": q["periodType"],
            "period": q["period"],
            "frequencyType": q["frequencyType"],
            "frequency": q["frequency"],
            "startDate": str(window.start_date),
            "endDate": str(window.end_date),
            "needExtendedHoursData": q["needExtendedHoursData"],
            "needPreviousClose": q["needPreviousClose"],
        }
        usage = {"endpoint": "/pricehistory", "symbol": symbol, "end_date": window.end_date}
        payload = self.request_json("GET", "/pricehistory", params=query, cancel=cancel, usage_tags=usage)
        if not isinstance(payload, dict):
            raise UpstreamRejected(200, f"price history body is not an object: {payload!r}", url="GET /pricehistory")
        return payload

    def _append_api_usage(self, method: str, path: str, usage_tags: Optional[Dict[str, Any]], status: int, latency_ms: int) -> None:
        """Persist API call telemetry to disk without interrupting primary flow."""
        if self.usage_path is None:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "endpoint": path,
            "status": status,
            "duration_ms": latency_ms,
        }
        if usage_tags:
            record.update({k: v for k, v in usage_tags.items() if v is not None})
        try:
            append_jsonl_record(self.usage_path, record)
        except OSError:
            log.debug("Failed to append API usage record", exc_info=True)


class PriceHistorySource(Protocol):
    def get_price_history(self, symbol: str, window: FetchWindow, params: PriceHistoryParams,
                          cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        ...


class HistoryFetcher:
    """Walks backward through a symbol's history one bounded window at a time."""

    def __init__(self, source: PriceHistorySource, params: Optional[PriceHistoryParams] = None,
                 max_pages: Optional[int] = None):
        self.source = source
        self.params = params or PriceHistoryParams()
        self.max_pages = max_pages

    def fetch(self, symbol: str, end_date: Optional[int] = None,
              cancel: Optional[threading.Event] = None) -> Dict[int, Candle]:
        """Return every candle discovered for ``symbol`` at or before ``end_date`` (default: now).

        Stops when a page is empty or adds no unseen timestamp. Request
        failures propagate; they never count as an exhausted history.
        """
        end = now_ms() if end_date is None else int(end_date)
        found: Dict[int, Candle] = {}
        pages = 0
        while True:
            _check_cancel(cancel)
            if self.max_pages is not None and pages >= self.max_pages:
                log.warning("%s: stopping after %d pages (max_pages)", symbol, pages)
                break
            window = self.params.window_ending(end)
            payload = self.source.get_price_history(symbol, window, self.params, cancel=cancel)
            pages += 1

            empty, candles = parse_price_history(payload)
            if empty:
                log.debug("%s: history exhausted before %s", symbol, end)
                break

            added = 0
            for candle in candles:
                if candle.timestamp not in found:
                    found[candle.timestamp] = candle
                    added += 1
            log.debug("%s: page %d [%s, %s] returned %d candles, %d new",
                      symbol, pages, window.start_date, window.end_date, len(candles), added)
            if not added:
                break
            end = min(c.timestamp for c in candles) - ONE_MINUTE_MS
        log.info("%s: fetched %d candles in %d pages", symbol, len(found), pages)
        return found


@dataclass
class SymbolResult:
    """Outcome of one symbol's fetch-merge-save sequence."""
    symbol: str
    fetched: int = 0
    added: int = 0
    series: Optional[CandleSeries] = None
    saved_path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def total(self) -> int:
        return len(self.series) if self.series is not None else 0


def collect_symbol_history(session: PriceHistorySource, symbol: str,
                           params: Optional[PriceHistoryParams] = None, *,
                           base_dir: Path | str = DATA_ROOT,
                           end_date: Optional[int] = None,
                           cancel: Optional[threading.Event] = None) -> SymbolResult:
    """Fetch new history for ``symbol``, merge it with the stored series and save it.

    A write failure is recorded on the result, which keeps the merged series.
    """
    symbol = symbol.strip().upper()
    loaded = load_series(symbol, base_dir)
    if not loaded.from_disk and loaded.fallback_reason != "missing":
        log.warning("%s: starting from an empty series (%s)", symbol, loaded.fallback_reason)

    fresh = HistoryFetcher(session, params).fetch(symbol, end_date=end_date, cancel=cancel)
    merged = merge_series(loaded.series, fresh)
    result = SymbolResult(
        symbol=symbol,
        fetched=len(fresh),
        added=len(merged) - len(loaded.series),
        series=merged,
    )

    _check_cancel(cancel)
    if loaded.from_disk and result.added == 0:
        log.info("%s: up to date (%d candles)", symbol, len(merged))
        return result
    try:
        result.saved_path = save_series(merged, base_dir)
    except PersistenceFailure as exc:
        log.error("%s: could not save %d candles: %s", symbol, len(merged), exc)
        result.error = str(exc)
        return result
    log.info("%s: saved %d candles (%d new)", symbol, len(merged), result.added)
    return result


def collect_symbol_data(session: PriceHistorySource, symbols: List[str],
                        params: Optional[PriceHistoryParams] = None, *,
                        base_dir: Path | str = DATA_ROOT,
                        end_date: Optional[int] = None,
                        cancel: Optional[threading.Event] = None) -> List[SymbolResult]:
    """Collect every symbol in turn; one symbol's failure does not stop the others."""
    if not isinstance(symbols, list):
        raise TypeError("symbols must be a list of strings")
    results: List[SymbolResult] = []
    for raw in symbols:
        if raw is None:
            continue
        symbol = str(raw).strip().upper()
        if not symbol:
            continue
        try:
            normalize_symbol(symbol)
        except ValueError as exc:
            log.error("%r: not a usable symbol: %s", raw, exc)
            results.append(SymbolResult(symbol=symbol, error=str(exc)))
            continue
        log.info("Collecting %s", symbol)
        try:
            results.append(collect_symbol_history(
                session, symbol, params, base_dir=base_dir, end_date=end_date, cancel=cancel))
        except Cancelled:
            raise
        except SchwabError as exc:
            log.error("%s: collection failed: %s", symbol, exc)
            results.append(SymbolResult(symbol=symbol, error=str(exc)))
    return results


__all__ = [
    "MARKET_DATA_SERVER",
    "RateLimitInfo",
    "APIMetrics",
    "SchwabSession",
    "HistoryFetcher",
    "SymbolResult",
    "collect_symbol_history",
    "collect_symbol_data",
]
