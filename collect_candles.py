from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import rich
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from file_io import api_usage_path, ensure_data_dirs
from options import DEFAULT_CONFIG_PATH, load_options
from schwab.api import SchwabSession, SymbolResult, collect_symbol_data
from schwab.auth import ConsoleLoginProvider, TokenManager, TokenStore
from schwab.data import summarize_series
from schwab.errors import Cancelled, SchwabConfigError
from schwab.rate_limit import RateLimiter

def _install_cancel_handler(cancel: threading.Event, console: Console) -> None:
    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print("[yellow]Cancelling after the current request... (Ctrl-C again to abort)[/yellow]")
        cancel.set()
    signal.signal(signal.SIGINT, handler)

def _results_table(results: List[SymbolResult], bar_delta) -> Table:
    table = Table(title="Candle collection")
    for column in ("Symbol", "Fetched", "New", "Total", "First", "Last", "Gaps", "Status"):
        table.add_column(column)
    for r in results:
        summary = summarize_series(r.series, bar_delta) if r.series is not None else {}
        status = "[green]ok[/green]" if r.ok else f"[red]{r.error}[/red]"
        table.add_row(
            r.symbol,
            str(r.fetched),
            str(r.added),
            str(r.total),
            summary.get("first") or "-",
            summary.get("last") or "-",
            str(summary.get("gaps", "-")),
            status,
        )
    return table

def main(console: Console, argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    config_path = Path(args[0]) if args else DEFAULT_CONFIG_PATH

    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    console.print("[bold]collect_candles: Schwab price history collector[/bold]")

    try:
        client_options, collector_options = load_options(config_path)
        symbols = collector_options.all_symbols()
    except SchwabConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2
    if not symbols:
        console.print("[yellow]No symbols configured. Nothing to do.[/yellow]")
        return 0

    ensure_data_dirs(collector_options.data_folder)
    cancel = threading.Event()
    _install_cancel_handler(cancel, console)

    tokens = TokenManager(
        client_options,
        TokenStore(client_options.auth_tokens_file_location),
        ConsoleLoginProvider(console),
    )
    limiter = RateLimiter(
        capacity=collector_options.rate_capacity,
        refill_amount=collector_options.rate_refill,
        refill_interval=collector_options.rate_interval,
    )
    console.log(f"Token state: {tokens.state.value}")

    with SchwabSession(tokens, limiter, usage_path=api_usage_path(collector_options.data_folder)) as session:
        try:
            results = collect_symbol_data(
                session,
                symbols,
                collector_options.params,
                base_dir=collector_options.data_folder,
                cancel=cancel,
            )
        except Cancelled:
            console.print("[yellow]Cancelled. Series saved so far are intact.[/yellow]")
            return 130
        usage = session.get_api_usage()

    console.print(_results_table(results, collector_options.params.bar_delta))
    console.log(f"{usage['total_requests']} requests, {usage['total_errors']} errors, "
                f"{usage['token_refreshes']} token refreshes")
    failed = [r.symbol for r in results if not r.ok]
    if failed:
        console.print(f"[red]Failed: {', '.join(failed)}[/red]")
        return 1
    console.print("[bold]Session closed.[/bold]")
    return 0

if __name__ == "__main__":
    sys.exit(main(rich.get_console()))
