"""Image cache manager command-line interface."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import click
import structlog
from safir.asyncio import run_with_asyncio
from safir.click import display_help
from safir.kubernetes import initialize_kubernetes
from safir.logging import configure_logging

from .config import Config
from .constants import CONFIGURATION_PATH, CONFIGURATION_PATH_ENV_VAR
from .factory import Factory

__all__ = [
    "help",
    "main",
    "run",
]


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(
    package_name="imagecache-manager", message="%(version)s"
)
def main() -> None:
    """Command-line interface for the image cache manager."""


@main.command()
@click.argument("topic", default=None, required=False, nargs=1)
@click.argument("subtopic", default=None, required=False, nargs=1)
@click.pass_context
def help(ctx: click.Context, topic: str | None, subtopic: str | None) -> None:
    """Show help for any command."""
    display_help(main, ctx, topic, subtopic)


@main.command()
@click.option(
    "--config-file",
    "-c",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    envvar=CONFIGURATION_PATH_ENV_VAR,
    default=CONFIGURATION_PATH,
    help="Path to the configuration file",
)
@run_with_asyncio
async def run(*, config_file: Path) -> None:
    """Run the image manager until terminated."""
    config = Config.from_file(config_file)
    configure_logging(
        name="imagecache",
        profile=config.profile,
        log_level=config.log_level,
    )
    logger = structlog.get_logger("imagecache")
    await initialize_kubernetes()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async with Factory.standalone(config) as factory:
        await factory.start_background_services()
        logger.info("Image cache manager started", namespace=config.namespace)
        await stop.wait()
        logger.info("Shutting down image cache manager")
