"""
Rich console output for romshelf

Renders the end-of-run summary and user-facing error messages.
"""

import logging
from typing import Any, Dict, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from romshelf import __version__
from romshelf.workflow.orchestrator import RunSummary

logger = logging.getLogger(__name__)

MAX_UNMATCHED_SHOWN = 10


def build_summary_table(
    summary: RunSummary,
    cache_stats: Optional[Dict[str, Any]] = None,
    gate_stats: Optional[Dict[str, Any]] = None
) -> Table:
    """
    Build the run summary table.

    Args:
        summary: RunSummary from the orchestrator
        cache_stats: ResponseCache.get_stats() output, if a cache was used
        gate_stats: RequestGate.get_stats() output, if the gate was used

    Returns:
        Rich Table with one row per statistic
    """
    title = f"romshelf {__version__} run summary"
    if summary.interrupted:
        title += " (interrupted)"

    table = Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Statistic", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("ROMs discovered", str(summary.discovered))
    table.add_row("Processed", str(summary.total))
    table.add_row("New records", Text(str(summary.created), style="green"))
    table.add_row("Merged into existing", str(summary.merged))
    table.add_row("  already catalogued", Text(str(summary.skipped_existing), style="dim"))
    unmatched_style = "yellow" if summary.unmatched else "dim"
    table.add_row("Unmatched", Text(str(summary.unmatched), style=unmatched_style))
    table.add_row("API calls", str(summary.api_calls))
    table.add_row("Checkpoints", str(summary.checkpoints))

    if cache_stats:
        table.add_row(
            "Cache hit rate",
            f"{cache_stats.get('hit_rate', 0.0):.1f}% "
            f"({cache_stats.get('hits', 0)}/{cache_stats.get('hits', 0) + cache_stats.get('misses', 0)})"
        )
        if cache_stats.get('degraded'):
            table.add_row("Durable cache", Text("degraded", style="red"))

    if gate_stats:
        table.add_row(
            "Concurrency ceiling",
            f"{gate_stats.get('concurrency_limit')}/{gate_stats.get('max_concurrency')}"
        )
        table.add_row("Rate-limit rejections", str(gate_stats.get('rate_limit_hits', 0)))

    return table


class SummaryConsole:
    """Thin wrapper around a rich Console for end-of-run output."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def print_summary(
        self,
        summary: RunSummary,
        cache_stats: Optional[Dict[str, Any]] = None,
        gate_stats: Optional[Dict[str, Any]] = None
    ) -> None:
        self.console.print(build_summary_table(summary, cache_stats, gate_stats))

        if summary.unmatched_titles:
            shown = summary.unmatched_titles[:MAX_UNMATCHED_SHOWN]
            self.console.print("[bold yellow]Unmatched:[/bold yellow]")
            for title in shown:
                self.console.print(f"  - {escape(title)}")
            remaining = len(summary.unmatched_titles) - len(shown)
            if remaining > 0:
                self.console.print(f"  ... and {remaining} more (see unmatched.json)")

    def show_error(self, message: str) -> None:
        self.console.print(f"[bold red]ERROR:[/bold red] {escape(message)}")

    def show_warning(self, message: str) -> None:
        self.console.print(f"[bold yellow]WARNING:[/bold yellow] {escape(message)}")
