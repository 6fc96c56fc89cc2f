from __future__ import annotations

import click
from loguru import logger


def _echo_sink(message: str) -> None:
    # click.echo resolves stderr on every call and strips colours off a tty.
    click.echo(message, err=True, nl=False)


def configure_logging(verbose: bool = False) -> None:
    """Route loguru output to stderr at the CLI verbosity."""
    logger.remove()
    logger.add(
        _echo_sink,
        level="DEBUG" if verbose else "WARNING",
        format="<level>{level: <8}</level> {message}",
        colorize=True,
    )
