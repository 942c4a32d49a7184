"""
Migration execution commands.

This module provides commands for running, inspecting and controlling item
migration jobs.
"""

import asyncio
import contextlib
import json
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
from pydantic import ValidationError as PydanticValidationError
from rich.progress import Progress, TaskID

from item_bridge.cli.context import BridgeContext
from item_bridge.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from item_bridge.cli.utils import (
    console,
    create_progress_bar,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    format_duration,
    format_timestamp,
    load_mapping_file,
    print_stats,
    print_table,
)
from item_bridge.client.exceptions import ConfigurationError
from item_bridge.migration.cancellation import PauseToken
from item_bridge.migration.error_classifier import category_label
from item_bridge.migration.models import (
    DuplicateBehavior,
    ErrorCategory,
    ItemFilters,
    ItemMigrationConfig,
    JobStatus,
    MigrationMode,
    MigrationResult,
    ProgressEvent,
    ProgressEventKind,
)
from item_bridge.migration.service import MigrationService
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)

PROGRESS_QUEUE_SIZE = 1000
PREVIEW_ROWS = 20

MIGRATION_OPTIONS = [
    click.option("--source-app", type=int, required=True, help="Source app id"),
    click.option("--target-app", type=int, required=True, help="Target app id"),
    click.option(
        "--mode",
        type=click.Choice([m.value for m in MigrationMode], case_sensitive=False),
        default=MigrationMode.CREATE.value,
        show_default=True,
        help="create, update (match required) or upsert",
    ),
    click.option(
        "--map",
        "mappings",
        multiple=True,
        metavar="SRC=TGT",
        help="Field mapping entry (field id or external id); repeatable",
    ),
    click.option(
        "--mapping-file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="JSON or YAML file with a source -> target field mapping",
    ),
    click.option("--source-match-field", help="Source field used to find existing items"),
    click.option("--target-match-field", help="Target field used to find existing items"),
]


def migration_options(f: Callable) -> Callable:
    for option in reversed(MIGRATION_OPTIONS):
        f = option(f)
    return f


def _parse_mapping(mappings: tuple[str, ...], mapping_file: Path | None) -> dict[str, str]:
    mapping = load_mapping_file(mapping_file) if mapping_file is not None else {}

    for entry in mappings:
        source, sep, target = entry.partition("=")
        if not sep or not source.strip() or not target.strip():
            raise click.BadParameter(f"Expected SRC=TGT, got '{entry}'", param_hint="--map")
        mapping[source.strip()] = target.strip()
    return mapping


def _build_config(ctx: BridgeContext, **options) -> ItemMigrationConfig:
    performance = ctx.config.performance
    filters = ItemFilters(
        created_from=options.pop("created_from", None),
        created_to=options.pop("created_to", None),
        last_edit_from=options.pop("last_edit_from", None),
        last_edit_to=options.pop("last_edit_to", None),
        tags=list(options.pop("tags", ()) or ()),
    )
    try:
        return ItemMigrationConfig(
            source_app_id=options["source_app"],
            target_app_id=options["target_app"],
            mode=MigrationMode(options["mode"].lower()),
            field_mapping=_parse_mapping(options["mappings"], options["mapping_file"]),
            source_match_field=options.get("source_match_field"),
            target_match_field=options.get("target_match_field"),
            duplicate_behavior=DuplicateBehavior(
                (options.get("duplicate_behavior") or DuplicateBehavior.SKIP.value).lower()
            ),
            batch_size=options.get("batch_size") or performance.batch_size,
            concurrency=options.get("concurrency") or performance.concurrency,
            stop_on_error=options.get("stop_on_error") or performance.stop_on_error,
            silent=performance.silent,
            filters=None if filters.is_empty() else filters,
            max_items=options.get("max_items"),
            smoke_test_items=0 if options.get("no_smoke_test") else 3,
        )
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid migration options: {e}") from e


async def _consume_progress(queue: asyncio.Queue, progress: Progress, task: TaskID) -> None:
    while True:
        event: ProgressEvent = await queue.get()
        if event.kind == ProgressEventKind.RATE_LIMIT_PAUSED:
            progress.update(
                task,
                description=f"[yellow]Rate limited, waiting {event.wait_seconds or 0:.0f}s",
            )
        elif event.kind in (ProgressEventKind.PROGRESS, ProgressEventKind.RATE_LIMIT_RESUMED):
            progress.update(
                task,
                total=event.total or None,
                completed=event.processed,
                description=(
                    f"Migrating items [green]{format_count(event.successful)} ok[/green] "
                    f"[red]{format_count(event.failed)} failed[/red]"
                ),
            )


def _install_signal_handlers(token: PauseToken) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.request_pause, f"signal {sig.name}")
        except (NotImplementedError, RuntimeError):
            logger.debug("signal_handler_unavailable", signal=sig.name)
            continue
        installed.append(sig)
    return installed


async def _run_job(
    ctx: BridgeContext,
    operation: Callable[[MigrationService, PauseToken], Awaitable[MigrationResult]],
    show_progress: bool = True,
) -> MigrationResult:
    """Run a job operation with a progress bar and graceful Ctrl+C handling."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=PROGRESS_QUEUE_SIZE)
    service = ctx.create_service(queue if show_progress else None)
    token = PauseToken()
    installed = _install_signal_handlers(token)
    loop = asyncio.get_running_loop()

    try:
        if not show_progress:
            return await operation(service, token)

        with create_progress_bar() as progress:
            task = progress.add_task("Migrating items", total=None)
            consumer = asyncio.create_task(_consume_progress(queue, progress, task))
            try:
                return await operation(service, token)
            finally:
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await ctx.aclose()


def _report_result(result: MigrationResult) -> None:
    click.echo()
    print_stats(
        {
            "job_id": result.job_id,
            "status": result.status.value,
            "total": format_count(result.total),
            "processed": format_count(result.processed),
            "successful": format_count(result.successful),
            "failed": format_count(result.failed),
            "skipped": format_count(result.skipped),
            "duration": format_duration(result.duration_seconds),
        },
        "Migration Result",
    )

    if result.status == JobStatus.COMPLETED:
        if result.failed:
            echo_warning(
                f"Completed with {format_count(result.failed)} failed items. "
                f"Retry them with: item-bridge migrate retry {result.job_id}"
            )
        else:
            echo_success("Migration completed successfully!")
    elif result.status == JobStatus.PAUSED:
        echo_warning(f"Migration paused. Resume with: item-bridge migrate resume {result.job_id}")
    else:
        for error in result.errors:
            echo_error(error)
        raise click.exceptions.Exit(6)


@click.group(name="migrate")
def migrate() -> None:
    """Run and manage item migration jobs."""


@migrate.command(name="run")
@migration_options
@click.option(
    "--duplicate-behavior",
    type=click.Choice([b.value for b in DuplicateBehavior], case_sensitive=False),
    default=DuplicateBehavior.SKIP.value,
    show_default=True,
    help="What create mode does when a matching target item exists",
)
@click.option("--batch-size", type=int, help="Items per write batch (max 500)")
@click.option("--concurrency", type=int, help="Concurrent writes within a batch")
@click.option("--stop-on-error", is_flag=True, help="Stop on the first batch-level exception")
@click.option("--max-items", type=int, help="Migrate at most this many source items")
@click.option("--dry-run", is_flag=True, help="Preview the migration without writing")
@click.option("--no-smoke-test", is_flag=True, help="Skip the field mapping smoke test")
@click.option("--created-from", help="Only items created on/after this ISO date")
@click.option("--created-to", help="Only items created on/before this ISO date")
@click.option("--last-edit-from", help="Only items edited on/after this ISO date")
@click.option("--last-edit-to", help="Only items edited on/before this ISO date")
@click.option("--tag", "tags", multiple=True, help="Only items with this tag; repeatable")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the dry-run preview to this JSON file",
)
@click.option("--no-progress", is_flag=True, help="Disable the live progress bar")
@pass_context
@requires_config
@handle_errors
def run(ctx: BridgeContext, dry_run: bool, output: Path | None, no_progress: bool, **options):
    """Start a new item migration.

    Examples:

        \b
        # Copy every item, mapping fields by external id
        item-bridge migrate run --source-app 1001 --target-app 2002

        \b
        # Update existing items matched on an email field
        item-bridge migrate run --source-app 1001 --target-app 2002 \\
            --mode update --source-match-field email --target-match-field email

        \b
        # Preview what would happen
        item-bridge migrate run --source-app 1001 --target-app 2002 --dry-run
    """
    config = _build_config(ctx, **options)

    if dry_run:
        asyncio.run(_dry_run(ctx, config, output))
        return

    async def start(service: MigrationService, token: PauseToken) -> MigrationResult:
        job_id = await service.create_job(config)
        echo_info(f"Created job {job_id}")
        return await service.start(job_id, token)

    _report_result(asyncio.run(_run_job(ctx, start, show_progress=not no_progress)))


async def _dry_run(ctx: BridgeContext, config: ItemMigrationConfig, output: Path | None) -> None:
    try:
        preview = await ctx.create_migrator().dry_run(config)
    finally:
        await ctx.aclose()

    print_stats(preview.summary, "Dry Run Summary")

    if preview.would_update:
        rows = []
        for update in preview.would_update[:PREVIEW_ROWS]:
            for change in update.changes:
                if change.will_change:
                    rows.append(
                        [
                            update.source_item_id,
                            update.target_item_id,
                            change.field,
                            change.current_value,
                            change.new_value,
                        ]
                    )
        if rows:
            print_table("Field Changes", ["Source", "Target", "Field", "Current", "New"], rows)

    if preview.would_fail:
        rows = [
            [failure.source_item_id, failure.category.value, failure.reason]
            for failure in preview.would_fail[:PREVIEW_ROWS]
        ]
        print_table("Would Fail", ["Source", "Category", "Reason"], rows)

    if output is not None:
        output.write_text(json.dumps(preview.to_dict(), indent=2, default=str))
        echo_success(f"Preview written to {output}")


@migrate.command(name="validate")
@migration_options
@click.option("--sample-size", type=int, default=3, show_default=True, help="Items to test")
@pass_context
@requires_config
@handle_errors
def validate(ctx: BridgeContext, sample_size: int, **options) -> None:
    """Check a field mapping by creating and deleting a few real items.

    Examples:

        item-bridge migrate validate --source-app 1001 --target-app 2002 --map title=name
    """
    config = _build_config(ctx, **options)

    async def run_validation():
        try:
            return await ctx.create_migrator().validate_field_mapping(config, sample_size)
        finally:
            await ctx.aclose()

    result = asyncio.run(run_validation())
    print_stats(
        {
            "tested": result.tested,
            "created": result.created,
            "deleted": result.deleted,
        },
        "Mapping Validation",
    )
    if result.valid:
        echo_success("Field mapping is valid")
        return

    for error in result.errors:
        echo_error(error)
    raise click.exceptions.Exit(6)


@migrate.command(name="resume")
@click.argument("job_id")
@click.option("--no-progress", is_flag=True, help="Disable the live progress bar")
@pass_context
@requires_config
@handle_errors
def resume(ctx: BridgeContext, job_id: str, no_progress: bool) -> None:
    """Resume a paused or failed job from its last checkpoint."""
    echo_info(f"Resuming job {job_id}...")
    result = asyncio.run(
        _run_job(ctx, lambda service, token: service.resume(job_id, token), not no_progress)
    )
    _report_result(result)


@migrate.command(name="retry")
@click.argument("job_id")
@click.option("--no-progress", is_flag=True, help="Disable the live progress bar")
@pass_context
@requires_config
@handle_errors
def retry(ctx: BridgeContext, job_id: str, no_progress: bool) -> None:
    """Re-process the items that failed in a job."""
    echo_info(f"Retrying failed items of job {job_id}...")
    result = asyncio.run(
        _run_job(ctx, lambda service, token: service.retry(job_id, token), not no_progress)
    )
    _report_result(result)


@migrate.command(name="pause")
@click.argument("job_id")
@pass_context
@requires_config
@handle_errors
def pause(ctx: BridgeContext, job_id: str) -> None:
    """Ask a running job to pause at its next page boundary."""
    job = asyncio.run(ctx.create_service().pause(job_id))
    if job.status == JobStatus.CANCELLED:
        echo_warning(f"Job {job_id} had stopped sending heartbeats and was marked cancelled")
    else:
        echo_success(f"Pause requested for job {job_id}")


@migrate.command(name="status")
@click.argument("job_id")
@click.option("--failures", type=int, default=10, show_default=True, help="Failed items to show")
@pass_context
@requires_config
@handle_errors
def status(ctx: BridgeContext, job_id: str, failures: int) -> None:
    """Show progress, throughput and failures of a job."""
    report = asyncio.run(ctx.create_service().get_status(job_id))
    progress = report.progress

    stats = {
        "job_id": report.job_id,
        "status": report.status.value,
        "mode": report.mode.value if report.mode else "-",
        "progress": f"{progress.percent}%",
        "total": format_count(progress.total),
        "processed": format_count(progress.processed),
        "successful": format_count(progress.successful),
        "failed": format_count(progress.failed),
        "skipped": format_count(progress.skipped),
        "last_update": format_timestamp(progress.last_update),
        "can_resume": "yes" if report.can_resume else "no",
        "retry_attempts": report.retry_attempts,
    }
    if report.throughput is not None:
        stats["items_per_second"] = report.throughput.items_per_second
        stats["rate_limit_pauses"] = report.throughput.rate_limit_pauses
        if report.throughput.eta_seconds is not None:
            stats["eta"] = format_duration(report.throughput.eta_seconds)
    print_stats(stats, "Job Status")

    if report.errors_by_category:
        rows = [
            [
                category_label(ErrorCategory(category)),
                entry["count"],
                f"{entry['percentage']}%",
                "yes" if entry["should_retry"] else "no",
            ]
            for category, entry in report.errors_by_category.items()
        ]
        print_table("Failures by Category", ["Category", "Count", "Share", "Retry?"], rows)

    if report.failed_items and failures > 0:
        rows = [
            [item.source_item_id or "-", item.error_category.value, item.error[:80]]
            for item in report.failed_items[:failures]
        ]
        print_table("Failed Items", ["Source", "Category", "Error"], rows)

    if report.errors:
        rows = [
            [format_timestamp(error.timestamp), error.context, error.message[:80]]
            for error in report.errors[-5:]
        ]
        print_table("Job Errors", ["When", "Context", "Message"], rows)


@migrate.command(name="list")
@pass_context
@requires_config
@handle_errors
def list_jobs(ctx: BridgeContext) -> None:
    """List migration jobs, newest first."""
    jobs = asyncio.run(ctx.create_service().list_jobs())
    if not jobs:
        echo_info("No migration jobs found")
        return

    rows = [
        [
            job.id,
            job.kind,
            job.status.value,
            f"{job.source_app_id or '-'} -> {job.target_app_id or '-'}",
            f"{job.progress.percent}%",
            format_timestamp(job.started_at),
        ]
        for job in jobs
    ]
    print_table("Migration Jobs", ["Job", "Kind", "Status", "Apps", "Progress", "Started"], rows)
    console.print(f"{len(jobs)} job(s)")


@migrate.command(name="delete")
@click.argument("job_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts")
@pass_context
@requires_config
@handle_errors
@confirm_action(
    message="Delete this job, its checkpoints and its failure log?",
    abort_message="Delete cancelled.",
)
def delete(ctx: BridgeContext, job_id: str, yes: bool) -> None:
    """Delete a job and its failure log."""
    if asyncio.run(ctx.create_service().delete_job(job_id)):
        echo_success(f"Deleted job {job_id}")
    else:
        echo_warning(f"Job {job_id} not found")
