from __future__ import annotations

from enum import Enum
from typing import Optional
from pathlib import Path
import json

import typer

from awaitguard.config import load_guard_config
from awaitguard.stack_trace import find_responsible_caller, parse_stack_text

app = typer.Typer(add_completion=False, help="Inspect awaitguard stacks and settings.")


class Operation(str, Enum):
    GUARD = "guard"
    GUARD_SYNC = "guard_sync"


@app.command()
def caller(
    stack_file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    operation: Operation = typer.Option(Operation.GUARD, "--operation", "-o"),
) -> None:
    """Print the responsible caller of a guarded call from a saved stack."""
    stack = parse_stack_text(stack_file.read_text(encoding="utf-8"))
    notes: list[str] = []
    entry = find_responsible_caller(stack, operation.value, notes)
    if entry is None:
        for note in notes:
            typer.echo(note, err=True)
        raise typer.Exit(code=1)
    name = entry.method_name
    if entry.class_name is not None:
        name = f"{entry.class_name}.{name}"
    typer.echo(f"{name} {entry.caller_file}:{entry.caller_line}")


@app.command()
def config(
    root: Path = typer.Option(Path("."), "--root", file_okay=False),
    config_path: Optional[Path] = typer.Option(None, "--config"),
) -> None:
    """Print the effective guard configuration as JSON."""
    settings = load_guard_config(root=root, config_path=config_path)
    payload = {
        "sync_variants": dict(sorted(settings.sync_variants.items())),
        "elided_packages": sorted(settings.elided_packages),
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
