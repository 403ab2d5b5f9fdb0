"""
CLI interface for cellsync.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.status import Status
from rich.table import Table

from cellsync import persistence
from cellsync.cells import CodeCell, MarkdownCell, TitleCell
from cellsync.config import load_settings
from cellsync.errors import CellSyncError
from cellsync.session import SessionManager
from cellsync.utils import (
    format_rich_error,
    format_rich_output,
    format_rich_source,
    get_cell_status,
    get_cell_type_icon,
    slugify,
)


console = Console()


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


@click.group()
@click.option("--base-dir", type=click.Path(file_okay=False), default=None, help="Config and notebooks directory")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, base_dir: Optional[str], verbose: bool):
    """cellsync: notebooks with a persistent, shared Python session."""
    setup_logging(verbose)
    ctx.obj = load_settings(Path(base_dir) if base_dir else None)


@main.command()
@click.argument("directory", type=click.Path(file_okay=False), required=False, default=None)
@click.option("--title", "-t", default=None, help="Notebook title")
@click.pass_obj
def new(settings, directory: Optional[str], title: Optional[str]):
    """Create a new notebook directory."""
    if directory is None:
        directory = settings.notebooks_dir / slugify(title or "Untitled")
    directory = Path(directory)
    title = title or directory.name

    if persistence.notebook_exists(directory):
        console.print(f"[red]A notebook already exists in {directory}[/red]")
        sys.exit(1)

    cells = [
        TitleCell(text=title),
        MarkdownCell(text="## Notes\n\nAdd your notes here."),
        CodeCell(filename="main.py", source="# Variables persist across cells.\n"),
    ]
    persistence.save_notebook(directory, cells, persistence.new_metadata(title))

    console.print(Panel(
        f"[green]Created:[/green] {directory}\n"
        f"[dim]Title:[/dim] {title}\n"
        f"[dim]Cells:[/dim] {len(cells)}",
        title="[bold blue]cellsync[/bold blue]",
        border_style="green",
    ))
    console.print(f"\n[dim]Run with:[/dim] cellsync run {directory}")


@main.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--keep-going", "-k", is_flag=True, help="Continue after a failing cell")
@click.pass_obj
def run(settings, directory: str, keep_going: bool):
    """Run every code cell of a notebook in order and save the outputs."""
    if not persistence.notebook_exists(Path(directory)):
        console.print(f"[red]No notebook in {directory}[/red]")
        sys.exit(1)

    manager = SessionManager(settings)
    try:
        session = manager.create_session(directory)
        console.print(Panel(
            f"[bold]{session.title}[/bold]  [dim]{session.directory}[/dim]",
            title="[bold blue]cellsync[/bold blue]",
            border_style="blue",
        ))
        console.print()

        code_cells = [c for c in session.store.code_cells() if c.source.strip()]
        if not code_cells:
            console.print("[yellow]No code cells to execute[/yellow]")
            return

        success_count = 0
        for cell in code_cells:
            console.print(f"[dim]--- {cell.filename} ---[/dim]")
            console.print(format_rich_source(cell.source))

            with Status("Executing...", console=console, spinner="dots"):
                result = manager.execute_cell(session, cell.id)

            for chunk in result.output:
                console.print(format_rich_output(chunk))
            console.print()

            if result.success:
                success_count += 1
            else:
                console.print(format_rich_error(result.error))
                if not keep_going:
                    break

        manager.save_session(session)

        total = len(code_cells)
        if success_count == total:
            console.print(f"[green]All {total} cells executed successfully[/green]")
        else:
            console.print(f"[yellow]Executed {success_count}/{total} cells[/yellow]")
            sys.exit(1)
    except CellSyncError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        manager.shutdown()


@main.command()
@click.pass_obj
def notebooks(settings):
    """List notebooks in the notebooks directory."""
    root = settings.notebooks_dir
    found = sorted(p.parent for p in root.glob(f"*/{persistence.NOTEBOOK_FILENAME}")) if root.is_dir() else []

    if not found:
        console.print(f"[yellow]No notebooks found in {root}[/yellow]")
        console.print("[dim]Create one with 'cellsync new --title NAME'[/dim]")
        return

    table = Table(title="Notebooks", border_style="blue", show_lines=True)
    table.add_column("Name", style="bold cyan")
    table.add_column("Title", style="white")
    table.add_column("Cells", justify="right", style="green")
    table.add_column("Modified", style="dim")

    for directory in found:
        try:
            cells, metadata = persistence.load_notebook(directory)
        except CellSyncError as e:
            table.add_row(directory.name, f"[red]{e}[/red]", "", "")
            continue
        kinds = " ".join(
            f"{get_cell_type_icon(c.type)}:{get_cell_status(c)[0]}" if c.type == "code" else get_cell_type_icon(c.type)
            for c in cells
        )
        table.add_row(
            directory.name,
            metadata.get("title", ""),
            f"{len(cells)}  [dim]{kinds}[/dim]",
            metadata.get("modified", ""),
        )

    console.print(table)


@main.command()
@click.option("--host", default=None, help="Interface to bind")
@click.option("--port", "-p", type=int, default=None, help="Port to bind")
@click.pass_obj
def serve(settings, host: Optional[str], port: Optional[int]):
    """Start the web and realtime server."""
    from cellsync.web import launch_web

    manager = SessionManager(settings)
    autosaver = persistence.AutoSaver(manager, interval=settings.autosave_interval)
    console.print(f"[bold blue]cellsync[/bold blue] serving on http://{host or settings.host}:{port or settings.port}")
    try:
        with autosaver:
            launch_web(manager, settings, host=host, port=port)
    finally:
        manager.shutdown()


@main.command()
@click.argument("directories", nargs=-1, type=click.Path(file_okay=False))
@click.pass_obj
def mcp(settings, directories: tuple[str, ...]):
    """Serve notebook sessions to an AI agent over MCP (stdio)."""
    from cellsync.mcp_server import create_mcp_server

    manager = SessionManager(settings)
    for directory in directories:
        manager.create_session(directory)
    autosaver = persistence.AutoSaver(manager, interval=settings.autosave_interval)
    try:
        with autosaver:
            create_mcp_server(manager).run()
    finally:
        manager.shutdown()


@main.command()
@click.pass_obj
def config(settings):
    """Show the active configuration."""
    console.print_json(json.dumps(settings.model_dump(mode="json")))


if __name__ == "__main__":
    main()
