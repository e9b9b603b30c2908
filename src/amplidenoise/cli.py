from __future__ import annotations

import platform
import sys

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from amplidenoise import __version__
from amplidenoise.commands import calibrate, denoise

console = Console()
SUBCOMMANDS = ["denoise", "calibrate"]

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help=(
        "amplidenoise command-line toolkit for divisive denoising of amplicon uniques "
        "and k-mer distance calibration."
    ),
)

app.add_typer(denoise.app, name="denoise", help="Denoise unique sequences into genotypes.")
app.add_typer(calibrate.app, name="calibrate", help="Compare k-mer and alignment distances on sampled pairs.")


def _print_startup_intro(command_name: str) -> None:
    banner = Panel(
        f"[bold cyan]amplidenoise {__version__}[/bold cyan]\n"
        "[white]Divisive amplicon denoising[/white]",
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
    stats.add_row("Python", sys.version.split()[0])
    stats.add_row("Platform", f"{platform.system()} {platform.release()}")
    console.print(stats)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"amplidenoise {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show amplidenoise version and exit.",
    ),
) -> None:
    if ctx.invoked_subcommand in SUBCOMMANDS:
        _print_startup_intro(ctx.invoked_subcommand)
