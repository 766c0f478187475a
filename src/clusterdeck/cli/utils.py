"""
CLI utility helpers — settings, logging and output formatting.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from clusterdeck.core.errors import ClusterError
from clusterdeck.core.logging import configure_logging
from clusterdeck.core.settings import ClusterSettings

console = Console()
err_console = Console(stderr=True)


# ── Settings / logging ───────────────────────────────────────────────────


def load_settings(**overrides: Any) -> ClusterSettings:
    """Environment-backed settings with non-``None`` CLI options applied on top."""
    return ClusterSettings(**{k: v for k, v in overrides.items() if v is not None})


def setup_logging(settings: ClusterSettings, service: str) -> None:
    configure_logging(level=settings.log_level, json_format=settings.json_logs, service=service)


def fail(exc: ClusterError, *, code: int = 1) -> typer.Exit:
    """Print a ClusterError and return the ``typer.Exit`` to raise."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.code}): {escape(exc.message)}")
    unresolved = getattr(exc, "unresolved", None)
    if unresolved:
        err_console.print(f"  [dim]unresolved imports:[/dim] {escape(', '.join(unresolved))}")
    return typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "", columns: list[str] | None = None) -> None:
    """Render a record or a list of records to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list | tuple):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(list(data), title=title, columns=columns)
    else:
        _print_dict(_to_dict(data), title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    rows = [_to_dict(item) for item in items]
    cols = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in cols:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if row.get(c) is None else escape(str(row.get(c))) for c in cols))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {escape(str(v))}")
