"""Console output for keystack workflows.

Thin wrapper around :mod:`rich`; degrades to plain lines when stdout is
not a TTY.  User-facing status goes through here, ``logger.*`` calls stay
for log files and ``--debug``.
"""

from __future__ import annotations

import sys
from typing import Mapping

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from keystack.state.models import CheckResult, CheckStatus

console = Console(stderr=False, force_terminal=None)

_MARKS = {
    CheckStatus.PASS: "[bold green]✓[/]",
    CheckStatus.WARN: "[bold yellow]⚠[/]",
    CheckStatus.FAIL: "[bold red]✗[/]",
}
_ARROW = "[bold cyan]›[/]"


def phase(title: str) -> None:
    """Print a bold phase header (``PREFLIGHT``, ``DEPLOY`` ...)."""
    console.print()
    console.print(f"[bold blue]── {title} ──[/]")


def ok(msg: str) -> None:
    console.print(f"  {_MARKS[CheckStatus.PASS]} {msg}")


def fail(msg: str) -> None:
    console.print(f"  {_MARKS[CheckStatus.FAIL]} [red]{msg}[/]")


def warn(msg: str) -> None:
    console.print(f"  {_MARKS[CheckStatus.WARN]} [yellow]{msg}[/]")


def step(msg: str) -> None:
    console.print(f"  {_ARROW} {msg}")


def detail(key: str, value: str) -> None:
    console.print(f"    [bold]{key}[/]: {value}", highlight=False)


def check_line(check: CheckResult) -> None:
    """One line per preflight check, remediation underneath when not PASS."""
    console.print(f"  {_MARKS[check.status]} {check.id}")
    if check.status != CheckStatus.PASS and check.remediation:
        console.print(f"      [dim]{check.remediation}[/]", highlight=False)


def outputs_table(title: str, outputs: Mapping[str, str]) -> None:
    """Render stack outputs as a two-column table."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Output")
    table.add_column("Value", overflow="fold")
    for key in sorted(outputs):
        table.add_row(key, outputs[key])
    console.print(table)


def success_panel(title: str, body: str) -> None:
    console.print()
    console.print(
        Panel(body, title=f"[bold green]{title}[/]", border_style="green", padding=(1, 2))
    )


def error_panel(title: str, body: str) -> None:
    console.print()
    console.print(
        Panel(body, title=f"[bold red]{title}[/]", border_style="red", padding=(1, 2))
    )


def elapsed_str(seconds: float) -> str:
    """Format seconds as ``Xm Ys``."""
    m, s = divmod(int(seconds), 60)
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


def progress_line(msg: str) -> None:
    """Overwrite the current line on a TTY, print normally otherwise."""
    if sys.stdout.isatty():
        console.print(f"  {_ARROW} {msg}", end="\r", highlight=False)
    else:
        console.print(f"  {_ARROW} {msg}", highlight=False)


def clear_progress() -> None:
    if sys.stdout.isatty():
        console.print(" " * console.width, end="\r")
