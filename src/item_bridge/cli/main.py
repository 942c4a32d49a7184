"""
Main CLI entry point for Item Bridge.

This module provides the command-line interface for migrating app items
between two platform instances.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from item_bridge import __version__
from item_bridge.cli.commands import migrate as migrate_commands
from item_bridge.cli.context import BridgeContext
from item_bridge.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="item-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="ITEM_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="ITEM_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file path (default: logs/item-bridge.log)",
    envvar="ITEM_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Item Bridge - Migrate app items between platform instances.

    Streams items from a source app, detects duplicates already present in
    the target app, and writes the rest in rate-limit aware batches. Jobs
    are checkpointed and can be paused, resumed and retried.

    Examples:

        # Preview a migration
        item-bridge -c config.yaml migrate run --source-app 1 --target-app 2 --dry-run

        # Run an upsert keyed on a field
        item-bridge -c config.yaml migrate run --source-app 1 --target-app 2 \\
            --mode upsert --source-match-field email --target-match-field email

        # Show job status
        item-bridge -c config.yaml migrate status JOB_ID
    """
    effective_log_file = str(log_file) if log_file else "logs/item-bridge.log"
    Path(effective_log_file).parent.mkdir(parents=True, exist_ok=True)

    configure_logging(level=log_level, log_file=effective_log_file)

    ctx.obj = BridgeContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


cli.add_command(migrate_commands.migrate)


def main() -> int:
    """Main entry point for CLI."""
    try:
        cli(standalone_mode=False)
        return 0
    except click.exceptions.Exit as e:
        return e.exit_code
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
