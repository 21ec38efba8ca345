from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

REDACTED = "********"
# orchestrator stderr is trimmed to this many lines before it is shown
DETAIL_LINES = 12


def step(msg: str) -> None:
    """Progress callback handed to the lifecycle driver."""
    console.print(f"[bold cyan]→[/] {escape(msg)}")


def info(msg: str) -> None:
    console.print(f"[bold cyan]•[/] {escape(msg)}")


def ok(msg: str) -> None:
    console.print(f"[bold green]OK[/] {escape(msg)}")


def warn(msg: str) -> None:
    err_console.print(f"[bold yellow]WARN[/] {escape(msg)}")


def err(msg: str) -> None:
    err_console.print(f"[bold red]ERR[/] {escape(msg)}")


def detail(text: str | None) -> None:
    lines = [line for line in (text or "").splitlines() if line.strip()]
    for line in lines[-DETAIL_LINES:]:
        err_console.print(f"    {line}", markup=False, style="dim")


def redact(value: str, *, show: bool = False) -> str:
    return value if show else REDACTED


def print(*args, **kwargs):
    console.print(*args, **kwargs)
