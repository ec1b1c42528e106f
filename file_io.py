from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from schwab.data import CandleSeries, candles_to_df
from schwab.errors import PersistenceFailure, SeriesCorrupt

log = logging.getLogger(__name__)

# Default root for data artifacts
DATA_ROOT = Path("data")
_SYMBOL_SAFE_RE = re.compile(r"[^A-Z0-9._-]")

def ensure_data_dirs(base_dir: Path | str = DATA_ROOT) -> Dict[str, Path]:
    base = Path(base_dir)
    account = base / "account"
    symbol = base / "symbol"

    account.mkdir(parents=True, exist_ok=True)
    symbol.mkdir(parents=True, exist_ok=True)

    log.debug("Data directories ensured: base=%s account=%s symbol=%s", base, account, symbol)
    return {
        "base": base.resolve(),
        "account": account.resolve(),
        "symbol": symbol.resolve(),
    }

def normalize_symbol(symbol: str) -> str:
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValueError("symbol must be a non-empty string")
    s = symbol.strip().upper()
    s = _SYMBOL_SAFE_RE.sub("_", s)
    s = re.sub(r"_+", "_", s).strip("_")  # collapse repeats and trim edges
    if not s:
        raise ValueError("symbol is empty after normalization")
    return s

def api_usage_path(base_dir: Path | str = DATA_ROOT) -> Path:
    """Return the JSONL path used for persistent API usage telemetry."""
    return ensure_data_dirs(base_dir)["account"] / "api_usage.jsonl"

def atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Atomically write a JSON payload to ``path``; failures raise ``PersistenceFailure``."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)
    except OSError as exc:
        if tmp.exists():
            tmp.unlink()
        raise PersistenceFailure(f"Failed to write {path}: {exc}") from exc

def append_jsonl_record(path: Path, record: Dict[str, Any]) -> None:
    """Append a single JSON line with durability."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, separators=(",", ":"), ensure_ascii=False) + "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())

def series_path(symbol: str, base_dir: Path | str = DATA_ROOT) -> Path:
    """Return the canonical JSON path holding the full candle series for ``symbol``."""
    return Path(base_dir) / "symbol" / f"{normalize_symbol(symbol)}.json"


@dataclass
class SeriesLoad:
    """Outcome of reading a series file.

    ``fallback_reason`` is ``None`` when ``series`` came from disk; otherwise
    ``series`` is empty and the reason says why (missing file or parse error).
    """

    series: CandleSeries
    fallback_reason: Optional[str] = None

    @property
    def from_disk(self) -> bool:
        return self.fallback_reason is None


def load_series(symbol: str, base_dir: Path | str = DATA_ROOT) -> SeriesLoad:
    """Load the stored series for ``symbol``; never raises for a missing or corrupt file."""
    path = series_path(symbol, base_dir)
    empty = CandleSeries(symbol=symbol.strip().upper())
    if not path.exists():
        return SeriesLoad(empty, "missing")
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        series = CandleSeries.from_dict(payload, symbol=empty.symbol)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, SeriesCorrupt) as exc:
        return SeriesLoad(empty, f"unreadable {path.name}: {exc}")
    series.symbol = empty.symbol
    return SeriesLoad(series)

def save_series(series: CandleSeries, base_dir: Path | str = DATA_ROOT) -> Path:
    """Replace the stored series for ``series.symbol`` with ``series`` (atomic)."""
    path = series_path(series.symbol, base_dir)
    atomic_write_json(path, series.to_dict())
    log.debug("Saved %s (%d candles) to %s", series.symbol, len(series), path)
    return path

def load_series_df(symbol: str, base_dir: Path | str = DATA_ROOT) -> pd.DataFrame:
    """Read a symbol's series file and convert it to a tidy DataFrame."""
    loaded = load_series(symbol, base_dir)
    if loaded.fallback_reason == "missing":
        raise FileNotFoundError(str(series_path(symbol, base_dir)))
    return candles_to_df(loaded.series.ordered())

__all__ = [
    "DATA_ROOT",
    "ensure_data_dirs",
    "normalize_symbol",
    "api_usage_path",
    "atomic_write_json",
    "append_jsonl_record",
    "series_path",
    "SeriesLoad",
    "load_series",
    "save_series",
    "load_series_df",
]
