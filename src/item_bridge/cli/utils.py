"""
Output helpers for CLI commands.

Status lines, rich tables and the live migration progress bar, plus the
loader for field mapping files.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

console = Console()


def echo_success(message: str) -> None:
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    click.secho(f"ℹ {message}", fg="blue")


def format_duration(seconds: float | None) -> str:
    """Render seconds as ``45.2s``, ``3m 5s`` or ``2h 0m 12s``."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


def format_timestamp(dt: datetime | None) -> str:
    """Render a timestamp in local time, or ``-`` when unset."""
    if dt is None:
        return "-"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def format_count(count: int) -> str:
    return f"{count:,}"


def print_table(title: str, columns: list[str], rows: list[list[Any]]) -> None:
    """
    Print rows as a rich table.

    Args:
        title: Table title
        columns: Column headers
        rows: Row values; ``None`` cells are shown as ``-``
    """
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*["-" if cell is None else str(cell) for cell in row])
    console.print(table)


def print_stats(stats: dict[str, Any], title: str) -> None:
    """Print a two-column metric table; keys are title-cased."""
    rows = [[key.replace("_", " ").title(), value] for key, value in stats.items()]
    print_table(title, ["Metric", "Value"], rows)


def create_progress_bar() -> Progress:
    """Progress bar showing processed/total items, elapsed time and ETA."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
    )


def load_mapping_file(path: Path) -> dict[str, str]:
    """
    Load a ``source field -> target field`` mapping from JSON or YAML.

    Args:
        path: Mapping file (.json, .yaml or .yml)

    Returns:
        Mapping with keys and values as strings

    Raises:
        click.BadParameter: If the format is unsupported or the file is not a mapping
    """
    suffix = path.suffix.lower()
    with open(path) as f:
        if suffix == ".json":
            data = json.load(f)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            raise click.BadParameter(
                f"Unsupported file format: {suffix}. Use .json, .yaml, or .yml",
                param_hint="--mapping-file",
            )

    if not isinstance(data, dict):
        raise click.BadParameter(
            f"{path} must contain a mapping of source to target fields",
            param_hint="--mapping-file",
        )
    return {str(k): str(v) for k, v in data.items()}
