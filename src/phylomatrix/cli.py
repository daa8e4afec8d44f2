from __future__ import annotations

import platform
import sys

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from phylomatrix import __version__
from phylomatrix.commands import bbdecompose, bbmerge, orthologize

console = Console()
SUBCOMMANDS = ["orthologize", "bbmerge", "bbdecompose"]

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help=(
        "PhyloMatrix command-line toolkit for merging orthologous alignments, building "
        "backbone supermatrices and decomposing backbones into clades."
    ),
)

app.add_typer(orthologize.app, name="orthologize", help="Cluster and merge orthologous alignments.")
app.add_typer(bbmerge.app, name="bbmerge", help="Select exemplars and write the backbone supermatrix.")
app.add_typer(bbdecompose.app, name="bbdecompose", help="Split the backbone into clades with their alignments.")


def _print_startup_intro(command_name: str) -> None:
    banner = Panel(
        f"[bold cyan]PhyloMatrix {__version__}[/bold cyan]\n"
        "[white]Phylogenomic dataset assembly[/white]",
        title="[bold]CLI Start[/bold]",
        border_style="cyan",
        expand=False,
    )
    console.print(banner)

    stats = Table(
        title="[bold]Session Summary[/bold]",
        box=box.SIMPLE_HEAVY,
        show_header=False,
        expand=False,
    )
    stats.add_column("Key", style="bold cyan")
    stats.add_column("Value", style="white")
    stats.add_row("Command", command_name)
    stats.add_row("Subcommands", str(len(SUBCOMMANDS)))
    stats.add_row("Python", sys.version.split()[0])
    stats.add_row("Platform", f"{platform.system()} {platform.release()}")
    console.print(stats)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show PhyloMatrix version and exit."),
) -> None:
    if version:
        console.print(f"PhyloMatrix {__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand:
        _print_startup_intro(ctx.invoked_subcommand)
