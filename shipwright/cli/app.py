"""Main Typer application — imports and registers all CLI commands.

Entry point: ``shipwright`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from shipwright.cli.commands.approve import approve_cmd
from shipwright.cli.commands.run import run_cmd
from shipwright.cli.commands.status import status_cmd
from shipwright.cli.commands.validate import validate_cmd
from shipwright.config import ShipwrightSettings

app = typer.Typer(
    name="shipwright",
    help="Shipwright: stage-gated build, promote and multi-instance deploy.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def log_level(verbose: bool, settings: ShipwrightSettings) -> str:
    """``--verbose`` and ``SHIPWRIGHT_DEBUG`` both force DEBUG."""
    if verbose or settings.debug:
        return "DEBUG"
    return settings.log_level.upper()


# Register subcommands
app.command(name="run", help="Run the pipeline for a branch or tag.")(run_cmd)
app.command(name="approve", help="Approve a manual job and resume its run.")(approve_cmd)
app.command(name="status", help="Show the state of a run or environment.")(status_cmd)
app.command(name="validate", help="Validate the pipeline definition.")(validate_cmd)


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Install the Rich log handler at the configured level."""
    logging.basicConfig(
        level=log_level(verbose, ShipwrightSettings()),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
