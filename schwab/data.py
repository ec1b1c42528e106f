from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from schwab.errors import SeriesCorrupt, UpstreamRejected

ONE_MINUTE_MS = 60_000

# Span covered by one unit of ``periodType`` (used to derive a window's startDate).
PERIOD_TYPE_TO_DELTA: Dict[str, timedelta] = {
    "day": timedelta(days=1),
    "month": timedelta(days=31),
    "year": timedelta(days=366),
    "ytd": timedelta(days=366),
}

FREQUENCY_TYPE_TO_DELTA: Dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
    "monthly": timedelta(days=31),
}


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar keyed by its interval start (epoch milliseconds, UTC)."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: int

    @staticmethod
    def from_dict(row: Dict[str, Any]) -> "Candle":
        """Build a Candle from an API/disk row; raises ``ValueError`` on bad input."""
        try:
            return Candle(
                timestamp=int(row["datetime"]),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=int(row["volume"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed candle row: {row!r}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "datetime": self.timestamp,
        }


@dataclass
class CandleSeries:
    """Timestamp-keyed candles for one symbol, iterated in ascending order."""

    symbol: str
    candles: Dict[int, Candle] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.candles

    def __len__(self) -> int:
        return len(self.candles)

    def ordered(self) -> List[Candle]:
        return [self.candles[ts] for ts in sorted(self.candles)]

    def timestamps(self) -> List[int]:
        return sorted(self.candles)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the on-disk/API shape ``{symbol, empty, candles}``."""
        return {
            "symbol": self.symbol,
            "empty": self.empty,
            "candles": [c.to_dict() for c in self.ordered()],
        }

    @staticmethod
    def from_dict(payload: Any, symbol: Optional[str] = None) -> "CandleSeries":
        """Parse a persisted series; raises ``SeriesCorrupt`` when the payload is malformed."""
        if not isinstance(payload, dict):
            raise SeriesCorrupt("series payload is not an object")
        rows = payload.get("candles", [])
        if not isinstance(rows, list):
            raise SeriesCorrupt("'candles' is not a list")
        name = payload.get("symbol") or symbol or ""
        candles: Dict[int, Candle] = {}
        for row in rows:
            if not isinstance(row, dict):
                raise SeriesCorrupt(f"candle entry is not an object: {row!r}")
            try:
                candle = Candle.from_dict(row)
            except ValueError as exc:
                raise SeriesCorrupt(str(exc)) from exc
            candles[candle.timestamp] = candle
        return CandleSeries(symbol=str(name), candles={ts: candles[ts] for ts in sorted(candles)})


@dataclass(frozen=True)
class FetchWindow:
    """Inclusive ``[start_date, end_date]`` bounds of one page request, in epoch ms."""

    start_date: int
    end_date: int


@dataclass(frozen=True)
class PriceHistoryParams:
    """Query parameters sent with every price-history page request."""

    period_type: str = "day"
    period: int = 10
    frequency_type: str = "minute"
    frequency: int = 1
    need_extended_hours_data: bool = False
    need_previous_close: bool = False

    def __post_init__(self) -> None:
        if self.period_type not in PERIOD_TYPE_TO_DELTA:
            raise ValueError(f"Unsupported periodType '{self.period_type}'")
        if self.frequency_type not in FREQUENCY_TYPE_TO_DELTA:
            raise ValueError(f"Unsupported frequencyType '{self.frequency_type}'")
        if self.period <= 0 or self.frequency <= 0:
            raise ValueError("period and frequency must be > 0")

    @property
    def span(self) -> timedelta:
        return PERIOD_TYPE_TO_DELTA[self.period_type] * self.period

    @property
    def bar_delta(self) -> timedelta:
        return FREQUENCY_TYPE_TO_DELTA[self.frequency_type] * self.frequency

    def window_ending(self, end_date: int) -> FetchWindow:
        """Return the window of ``span`` length that ends at ``end_date``."""
        span_ms = int(self.span.total_seconds() * 1000)
        return FetchWindow(start_date=max(0, end_date - span_ms), end_date=end_date)

    def to_query(self) -> Dict[str, str]:
        return {
            "periodType": self.period_type,
            "period": str(self.period),
            "frequencyType": self.frequency_type,
            "frequency": str(self.frequency),
            "needExtendedHoursData": str(self.need_extended_hours_data).lower(),
            "needPreviousClose": str(self.need_previous_close).lower(),
        }


def now_ms() -> int:
    """Return the current UTC time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def parse_price_history(payload: Any) -> Tuple[bool, List[Candle]]:
    """Return ``(empty, candles)`` from a price-history response body.

    Rows that cannot be parsed are skipped; ``empty`` is true when the
    response says so or carries no usable candles. A body that is not an
    object, or whose ``candles`` is not a list, raises ``UpstreamRejected``.
    """
    if not isinstance(payload, dict):
        raise UpstreamRejected(200, f"price history body is not an object: {payload!r}")
    flagged_empty = payload.get("empty") is True
    rows = payload.get("candles")
    if rows is None and flagged_empty:
        rows = []
    if not isinstance(rows, list):
        raise UpstreamRejected(200, f"price history 'candles' is not a list: {rows!r}")
    candles: List[Candle] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            candles.append(Candle.from_dict(row))
        except ValueError:
            continue
    return flagged_empty or not candles, candles


def merge_series(existing: CandleSeries, fresh: Mapping[int, Candle]) -> CandleSeries:
    """Union ``existing`` with ``fresh`` into a new ascending, duplicate-free series.

    Existing candles win on a timestamp collision. Neither input is mutated.
    """
    combined: Dict[int, Candle] = dict(fresh)
    combined.update(existing.candles)
    return CandleSeries(
        symbol=existing.symbol,
        candles={ts: combined[ts] for ts in sorted(combined)},
    )


def candles_to_df(candles: Iterable[Candle]) -> pd.DataFrame:
    """Convert candles into a tidy, UTC-indexed pandas DataFrame."""
    rows = [c.to_dict() for c in candles]
    if not rows:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"]).set_index(
            pd.DatetimeIndex([], name="datetime", tz="UTC")
        )
    df = pd.DataFrame(rows)
    df["datetime"] = pd.to_datetime(df["datetime"], unit="ms", utc=True)
    return df.sort_values("datetime").set_index("datetime")


def summarize_series(series: CandleSeries, bar_delta: Optional[timedelta] = None) -> Dict[str, Any]:
    """Return row count, first/last bar and the widest spacing between bars."""
    df = candles_to_df(series.ordered())
    summary: Dict[str, Any] = {
        "symbol": series.symbol,
        "rows": len(df),
        "first": None,
        "last": None,
        "max_gap": None,
        "gaps": 0,
    }
    if df.empty:
        return summary
    summary["first"] = df.index[0].isoformat()
    summary["last"] = df.index[-1].isoformat()
    spacing = df.index.to_series().diff().dropna()
    if not spacing.empty:
        summary["max_gap"] = spacing.max().to_pytimedelta()
        if bar_delta is not None:
            summary["gaps"] = int((spacing > pd.Timedelta(bar_delta)).sum())
    return summary


__all__ = [
    "ONE_MINUTE_MS",
    "PERIOD_TYPE_TO_DELTA",
    "FREQUENCY_TYPE_TO_DELTA",
    "Candle",
    "CandleSeries",
    "FetchWindow",
    "PriceHistoryParams",
    "now_ms",
    "parse_price_history",
    "merge_series",
    "candles_to_df",
    "summarize_series",
]
