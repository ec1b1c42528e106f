from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from schwab.data import PriceHistoryParams
from schwab.errors import SchwabConfigError
from schwab.rate_limit import RATE_CAPACITY, RATE_INTERVAL, RATE_REFILL

DEFAULT_CONFIG_PATH = Path("config.json")


@dataclass(frozen=True)
class ClientOptions:
    """Developer-app and account settings used for authentication."""

    auth_tokens_file_location: Path
    developer_app_key: str
    developer_app_secret: str
    developer_app_callback_url: str
    trading_account_username: str = ""
    trading_account_password: str = field(default="", repr=False)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ClientOptions":
        required = ("auth_tokens_file_location", "developer_app_key",
                    "developer_app_secret", "developer_app_callback_url")
        missing = [k for k in required if not str(d.get(k) or "").strip()]
        if missing:
            raise SchwabConfigError(f"ClientOptions missing required fields: {', '.join(missing)}")
        return ClientOptions(
            auth_tokens_file_location=Path(d["auth_tokens_file_location"]),
            developer_app_key=str(d["developer_app_key"]).strip(),
            developer_app_secret=str(d["developer_app_secret"]).strip(),
            developer_app_callback_url=str(d["developer_app_callback_url"]).strip(),
            trading_account_username=str(d.get("trading_account_username") or ""),
            trading_account_password=str(d.get("trading_account_password") or ""),
        )


@dataclass(frozen=True)
class CollectorOptions:
    """What to collect, where to store it and how fast to ask for it."""

    symbols: List[str]
    data_folder: Path
    params: PriceHistoryParams = field(default_factory=PriceHistoryParams)
    rate_capacity: int = RATE_CAPACITY
    rate_refill: int = RATE_REFILL
    rate_interval: float = RATE_INTERVAL
    symbols_csv: Optional[Path] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CollectorOptions":
        if not d.get("data_folder"):
            raise SchwabConfigError("CollectorOptions.data_folder is required")
        raw_symbols = d.get("symbols") or []
        if not isinstance(raw_symbols, list):
            raise SchwabConfigError("CollectorOptions.symbols must be a list of strings")
        try:
            params = PriceHistoryParams(
                period_type=d.get("period_type", "day"),
                period=int(d.get("period", 10)),
                frequency_type=d.get("frequency_type", "minute"),
                frequency=int(d.get("frequency", 1)),
                need_extended_hours_data=bool(d.get("need_extended_hours_data", False)),
                need_previous_close=bool(d.get("need_previous_close", False)),
            )
            rate_capacity = int(d.get("rate_capacity", RATE_CAPACITY))
            rate_refill = int(d.get("rate_refill", RATE_REFILL))
            rate_interval = float(d.get("rate_interval", RATE_INTERVAL))
        except (TypeError, ValueError) as exc:
            raise SchwabConfigError(f"Invalid CollectorOptions: {exc}") from exc
        csv_path = d.get("symbols_csv")
        return CollectorOptions(
            symbols=dedupe_symbols(raw_symbols),
            data_folder=Path(d["data_folder"]),
            params=params,
            rate_capacity=rate_capacity,
            rate_refill=rate_refill,
            rate_interval=rate_interval,
            symbols_csv=Path(csv_path) if csv_path else None,
        )

    def all_symbols(self) -> List[str]:
        """Configured symbols followed by any extra ones listed in ``symbols_csv``."""
        extra = read_tickers_csv(self.symbols_csv) if self.symbols_csv else []
        return dedupe_symbols(self.symbols + extra)


def dedupe_symbols(values: List[Any]) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    for raw in values:
        if raw is None:
            continue
        sym = str(raw).strip().upper()
        if sym and sym not in seen:
            seen.add(sym)
            out.append(sym)
    return out


def read_tickers_csv(path: Path) -> List[str]:
    """Read tickers from a CSV with a ``Ticker`` column, or one symbol per line."""
    if not path.exists():
        raise SchwabConfigError(f"Symbols file not found at: {path}")
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        rows = [cols for cols in csv.reader(handle) if cols]
    if not rows:
        return []
    header = [c.strip().lower() for c in rows[0]]
    column = header.index("ticker") if "ticker" in header else None
    if column is None:
        return dedupe_symbols([cols[0] for cols in rows])
    return dedupe_symbols([cols[column] for cols in rows[1:] if len(cols) > column])


def load_options(path: Path | str = DEFAULT_CONFIG_PATH) -> tuple[ClientOptions, CollectorOptions]:
    """Load both option sections from a JSON config file."""
    config_path = Path(path)
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as exc:
        raise SchwabConfigError(f"Config file not found at: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise SchwabConfigError("Config file is not valid JSON.") from exc

    if not isinstance(data, dict):
        raise SchwabConfigError("Config file must contain a JSON object.")
    client = data.get("ClientOptions")
    collector = data.get("CollectorOptions")
    if not isinstance(client, dict) or not isinstance(collector, dict):
        raise SchwabConfigError("Config file needs 'ClientOptions' and 'CollectorOptions' sections.")
    return ClientOptions.from_dict(client), CollectorOptions.from_dict(collector)


__all__ = [
    "ClientOptions",
    "CollectorOptions",
    "dedupe_symbols",
    "read_tickers_csv",
    "load_options",
]
