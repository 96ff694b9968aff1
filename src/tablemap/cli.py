#!/usr/bin/env python3
"""Command line entry point for provisioning tables."""
import importlib
import pathlib
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table as RichTable
from typing_extensions import Annotated

from tablemap.common.errors import TablemapError
from tablemap.common.logger import configure_logging
from tablemap.common.settings import settings
from tablemap.execution import connect
from tablemap.sync import sync_all
from tablemap.table import Table

app = typer.Typer(
    name="tablemap",
    help="Schema-aware tables, relations and indexes over document stores.",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()

ModuleArgument = Annotated[str, typer.Argument(help="Importable module declaring Table instances")]
UrlOption = Annotated[Optional[str], typer.Option("--url", help="Store URL (memory:// or a SQLAlchemy URL)")]


@app.callback()
def global_callback(
    log_level: Annotated[Optional[str], typer.Option("--log-level", help="Logging level")] = None,
):
    """
    tablemap CLI Entry Point.
    """
    configure_logging(level=(log_level or settings.log_level).upper(), json_format=settings.log_json)


def load_tables(module: str) -> List[Table]:
    """Imports ``module`` and returns the Table instances it defines."""
    cwd = str(pathlib.Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    imported = importlib.import_module(module)
    tables = [value for value in vars(imported).values() if isinstance(value, Table)]
    if not tables:
        raise typer.BadParameter(f"No Table instances found in module '{module}'.")
    return tables


@app.command()
def plan(module: ModuleArgument):
    """Show the indexes and relations of every table in a module."""
    try:
        for table in load_tables(module):
            grid = RichTable(title=f"{table.name} (pk: {table.pk})")
            grid.add_column("Index", style="cyan")
            grid.add_column("Fields")
            grid.add_column("Multi")
            for definition in table.index_plan().values():
                grid.add_row(definition.name, ", ".join(definition.fields), str(definition.multi))
            console.print(grid)
            for name, relation in table.relations.items():
                console.print(f"  [bold]{name}[/bold]: {relation!r}")
    except TablemapError as exc:
        console.print(f"[red]Invalid table definition:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command()
def sync(module: ModuleArgument, url: UrlOption = None):
    """Create missing tables and indexes for every table in a module."""
    tables = load_tables(module)
    try:
        with connect(url) as connection:
            states = sync_all(tables, connection)
    except TablemapError as exc:
        console.print(f"[red]Sync failed:[/red] {exc}")
        raise typer.Exit(code=1)

    for table, state in zip(tables, states):
        console.print(f"[green]{table.name}[/green]: {state.value}")


def main():
    app()


if __name__ == "__main__":
    main()
