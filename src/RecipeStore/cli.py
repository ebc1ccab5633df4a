# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.cli",
#   "purpose": "Typer CLI for inspecting, configuring, and collecting a recipe store",
#   "sections": [
#     {"id": "imports", "name": "Imports & Setup", "anchor": "IMP", "kind": "infra"},
#     {"id": "commands", "name": "CLI Commands", "anchor": "CMDS", "kind": "commands"},
#     {"id": "config", "name": "Config Commands", "anchor": "CFG", "kind": "commands"}
#   ]
# }
# === /NAVMAP ===

"""Store CLI commands.

Examples:
    $ recipestore status
    $ recipestore list --kind storage --format json
    $ recipestore config set max_size 20GiB
    $ recipestore gc --dry-run
    $ recipestore reset --yes
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .errors import ConfigError, CorruptIndex, RecipeStoreError
from .gc import collect
from .inventory import Inventory
from .logging_config import setup_logging
from .settings import GC_SETTING_NAMES, describe_gc_settings, load_settings

# ============================================================================
# SETUP (IMP)
# ============================================================================

app = typer.Typer(help="Inspect and maintain a recipe store", no_args_is_help=True)
config_app = typer.Typer(help="Show or change the store's garbage collection settings")
app.add_typer(config_app, name="config")


def _human_size(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(num) < 1024 or unit == "TiB":
            return f"{num:.0f} {unit}" if unit == "B" else f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TiB"  # pragma: no cover


def _inventory(ctx: typer.Context) -> Inventory:
    inventory: Inventory = ctx.obj["inventory"]
    try:
        inventory.refresh()
    except CorruptIndex as exc:
        typer.echo(f"Error: {exc}. Run 'recipestore reset --yes' to start over.", err=True)
        raise typer.Exit(1)
    return inventory


def _emit(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Store directory"),
    config_file: Optional[Path] = typer.Option(None, "--settings", help="YAML settings file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose output"),
) -> None:
    """Recipe store maintenance."""
    try:
        settings = load_settings(config_file, {"root": root} if root else None)
    except ConfigError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2)
    setup_logging(settings.logging.model_copy(update={"level": "DEBUG"}) if verbose else settings.logging)
    inventory = Inventory(
        settings.root, index_name=settings.index_name, lock_timeout=settings.lock_timeout
    )
    ctx.obj = {"settings": settings, "inventory": inventory}


# ============================================================================
# CLI COMMANDS (CMDS)
# ============================================================================


@app.command()
def status(
    ctx: typer.Context,
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
) -> None:
    """Summarise the store: entries, size, and last collection."""
    inventory = _inventory(ctx)
    data = {
        "root": str(inventory.root),
        "entries": len(inventory),
        "total_size": inventory.total_size(),
        "max_size": inventory.config.max_size,
        "last_gc": inventory.last_gc.isoformat() if inventory.last_gc else None,
    }
    if fmt == "json":
        _emit(data)
        return
    typer.echo(f"Store:      {data['root']}")
    typer.echo(f"Entries:    {data['entries']}")
    typer.echo(f"Size:       {_human_size(data['total_size'])} of {_human_size(data['max_size'])}")
    typer.echo(f"Last GC:    {data['last_gc'] or 'never'}")


@app.command("list")
def list_entries(
    ctx: typer.Context,
    kind: Optional[str] = typer.Option(None, "--kind", help="Only 'storage' or 'cache' entries"),
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
) -> None:
    """List stored artifacts and cached values."""
    inventory = _inventory(ctx)
    entries = sorted(inventory.entries(kind), key=lambda e: e.last_accessed_at, reverse=True)
    if fmt == "json":
        _emit([entry.to_mapping() for entry in entries])
        return
    table = Table(title=f"{len(entries)} entries")
    for column in ("hash", "kind", "dataset", "size", "last accessed"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.recipe_hash[:12],
            entry.kind,
            entry.source.dataset if entry.source else "-",
            _human_size(entry.size_bytes),
            entry.last_accessed_at.strftime("%Y-%m-%d %H:%M"),
        )
    Console().print(table)


@app.command()
def gc(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed"),
) -> None:
    """Run garbage collection now."""
    inventory = _inventory(ctx)
    try:
        result = collect(inventory, dry_run=dry_run)
    except RecipeStoreError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    prefix = "Would remove" if dry_run else "Removed"
    typer.echo(
        f"{prefix} {len(result.removed)} entries and {len(result.orphans_removed)} orphaned files, "
        f"freeing {_human_size(result.bytes_freed)}"
    )
    for failure in result.failures:
        typer.echo(f"Failed: {failure}", err=True)
    if result.failures:
        raise typer.Exit(1)


@app.command()
def remove(
    ctx: typer.Context,
    hashes: List[str] = typer.Argument(..., help="Recipe hashes (or unique prefixes) to remove"),
) -> None:
    """Remove entries and their files."""
    inventory = _inventory(ctx)
    known = [entry.recipe_hash for entry in inventory.entries()]
    exit_code = 0
    for prefix in hashes:
        matches = [h for h in known if h.startswith(prefix)]
        if len(matches) != 1:
            typer.echo(f"No unique entry matches '{prefix}'", err=True)
            exit_code = 1
            continue
        inventory.remove_entry(matches[0])
        typer.echo(f"Removed {matches[0][:12]}")
    if exit_code:
        raise typer.Exit(exit_code)


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Confirm discarding the index"),
    keep_config: bool = typer.Option(False, "--keep-config", help="Keep GC settings if readable"),
) -> None:
    """Replace the index with an empty one (recovery from a corrupt index)."""
    if not yes:
        typer.echo("Refusing to reset without --yes", err=True)
        raise typer.Exit(2)
    inventory: Inventory = ctx.obj["inventory"]
    if keep_config:
        try:
            inventory.refresh()
        except CorruptIndex:
            keep_config = False
    inventory.reset(keep_config=keep_config)
    typer.echo(f"Reset {inventory.index_path}")


# ============================================================================
# CONFIG COMMANDS (CFG)
# ============================================================================


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
) -> None:
    """Display the store's garbage collection settings."""
    inventory = _inventory(ctx)
    if fmt == "json":
        _emit(inventory.config.model_dump())
        return
    typer.echo(describe_gc_settings(inventory.config))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    name: str = typer.Argument(..., help=f"One of: {', '.join(GC_SETTING_NAMES)}"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Change one garbage collection setting."""
    inventory = _inventory(ctx)
    try:
        config = inventory.update_config(**{name: value})
    except ConfigError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2)
    typer.echo(f"{name} = {getattr(config, name)}")


if __name__ == "__main__":  # pragma: no cover
    app()
