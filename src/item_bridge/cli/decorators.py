"""
Decorators shared by the CLI commands.

Commands receive the ``BridgeContext`` as their first argument, get their
configuration loaded up front, and have Item Bridge errors turned into a
short message plus a stable exit code.
"""

import functools
from collections.abc import Callable

import click

from item_bridge.cli.context import BridgeContext
from item_bridge.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    JobLifecycleError,
    MigrationError,
    NetworkError,
    PrefetchError,
    RateLimitError,
    StateCorruptionError,
    StateError,
)
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_GENERAL = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_API = 4
EXIT_STATE = 5
EXIT_MIGRATION = 6


def _hint(error: Exception) -> str | None:
    if isinstance(error, RateLimitError) and error.retry_after:
        return f"The platform asked to wait {error.retry_after}s before retrying."
    if isinstance(error, AuthorizationError):
        return "The token is valid but lacks access to this app."
    if isinstance(error, AuthenticationError):
        return "Please verify the API tokens in the configuration file."
    if isinstance(error, NetworkError):
        return "Check connectivity to both platform instances."
    if isinstance(error, StateCorruptionError):
        return "Neither the job file nor its backup could be read."
    if isinstance(error, PrefetchError):
        return error.remediation or None
    if isinstance(error, JobLifecycleError):
        return "Run 'item-bridge migrate status JOB_ID' to see the job's current status."
    if isinstance(error, ConfigurationError):
        return "Please check your configuration file and migration options."
    return None


# First match wins; subclasses come before their bases
_ERROR_TABLE: list[tuple[type[Exception], str, int]] = [
    (ConfigurationError, "Configuration Error", EXIT_CONFIG),
    (AuthenticationError, "Authentication Error", EXIT_AUTH),
    (AuthorizationError, "Authorization Error", EXIT_AUTH),
    (APIError, "API Error", EXIT_API),
    (NetworkError, "Network Error", EXIT_API),
    (StateError, "State Error", EXIT_STATE),
    (JobLifecycleError, "Job Error", EXIT_MIGRATION),
    (MigrationError, "Migration Error", EXIT_MIGRATION),
]


def pass_context(f: Callable) -> Callable:
    """Pass the ``BridgeContext`` stored on the click context as first argument."""

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        return f(click_ctx.obj, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Convert Item Bridge errors into a message and an exit code.

    Exit codes:
        1: Unexpected error
        2: Configuration error
        3: Authentication or authorization error
        4: API or network error
        5: Job state error
        6: Migration or job lifecycle error
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except click.exceptions.Exit:
            raise
        except click.ClickException:
            raise
        except Exception as e:
            for exc_type, label, exit_code in _ERROR_TABLE:
                if isinstance(e, exc_type):
                    break
            else:
                logger.error("unexpected_error", error=str(e), exc_info=True)
                click.echo(f"Unexpected Error: {e}", err=True)
                click.echo("\nPlease check the log file for details.", err=True)
                raise click.exceptions.Exit(EXIT_GENERAL) from e

            logger.error("command_failed", error_type=type(e).__name__, error=str(e))
            click.echo(f"{label}: {e}", err=True)
            hint = _hint(e)
            if hint:
                click.echo(f"\n{hint}", err=True)
            raise click.exceptions.Exit(exit_code) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Load and validate the configuration before the command runs."""

    @functools.wraps(f)
    def wrapper(ctx: BridgeContext, *args, **kwargs):
        if ctx.config_path is None:
            click.echo(
                "Error: Configuration file required. "
                "Use --config option or set ITEM_BRIDGE_CONFIG.",
                err=True,
            )
            raise click.exceptions.Exit(EXIT_CONFIG)

        try:
            _ = ctx.config
        except (OSError, ValueError) as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(EXIT_CONFIG) from e

        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(message: str, abort_message: str = "Operation cancelled.") -> Callable:
    """
    Ask for confirmation unless the command was called with ``--yes``.

    Args:
        message: Confirmation prompt
        abort_message: Printed when the user declines
    """

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not click.get_current_context().params.get("yes", False):
                if not click.confirm(message):
                    click.echo(abort_message)
                    raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
