"""CLI interface for contactqueue."""

import asyncio
import json
import sys
from datetime import datetime
from typing import Optional

import click
from pydantic import ValidationError

from .collaborators import load_collaborators
from .errors import ConfigurationError
from .logging_conf import setup_logging
from .models import EnqueueRequest, ItemStatus, RunStatus
from .settings import get_settings
from .worker import OPERATIONS, Runtime, Worker, build_runtime, run_operations


def get_runtime(with_collaborators: bool = False) -> Runtime:
    """Build the runtime, loading collaborators when processing is needed."""
    settings = get_settings()
    collaborators = None
    if with_collaborators:
        if not settings.collaborators:
            raise ConfigurationError("QUEUE_COLLABORATORS is not set (expected 'module:factory')")
        collaborators = load_collaborators(settings.collaborators)
    return build_runtime(settings, collaborators)


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@click.group()
def cli():
    """ContactQueue - queued contact validation processor"""
    setup_logging(get_settings())


@cli.command()
@click.argument("event_json")
def enqueue(event_json: str):
    """Enqueue a change event.

    Example:
        contactqueue enqueue '{"event_id":"evt1","subject_id":"101","client_id":"0001","flags":{"email":true}}'
    """
    try:
        request = EnqueueRequest(**json.loads(event_json))
        queue = get_runtime().queue
        result = asyncio.run(queue.enqueue(**request.model_dump()))
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except ValidationError as e:
        _fail(f"Invalid event: {e}")
    except Exception as e:
        _fail(f"Error: {e}")

    if result.duplicate:
        click.echo(f"✓ Event {result.event_id} already queued as {result.id}")
    else:
        click.echo(f"✓ Event {result.event_id} enqueued as {result.id}")


@cli.command()
@click.option("--limit", type=int, default=None, help="Maximum items to fetch (default: batch size)")
@click.option("--concurrency", type=int, default=None, help="Maximum items in flight")
@click.option("--max-runtime", type=float, default=None, help="Runtime budget in seconds")
def process(limit: Optional[int], concurrency: Optional[int], max_runtime: Optional[float]):
    """Process one batch of eligible items.

    Example:
        contactqueue process --limit 25 --concurrency 5
    """
    try:
        processor = get_runtime(with_collaborators=True).processor
        result = asyncio.run(
            processor.process_pending(batch_size=limit, concurrency=concurrency, max_runtime=max_runtime)
        )
    except ConfigurationError as e:
        _fail(str(e))

    click.echo(f"Run status:  {result.status.value}")
    click.echo(f"  Processed: {result.processed}")
    click.echo(f"  Failed:    {result.failed}")
    click.echo(f"  Skipped:   {result.skipped}")
    click.echo(f"  Runtime:   {result.runtime:.2f}s")
    for err in result.errors:
        click.echo(f"  ✗ {err['item_id']}: {err['error']}")
    if result.status == RunStatus.ERROR:
        _fail(result.error or "Run failed")


@cli.command()
@click.option("--ops", default="process,monitor,reset-stalled", help="Comma-separated operations")
@click.option("--limit", type=int, default=None, help="Batch size for the process operation")
def run(ops: str, limit: Optional[int]):
    """Run scheduled operations (process, monitor, reset-stalled, cleanup).

    Example:
        contactqueue run --ops cleanup
    """
    operations = [op.strip() for op in ops.split(",") if op.strip()]
    unknown = [op for op in operations if op not in OPERATIONS]
    if unknown:
        _fail(f"Unknown operation(s): {', '.join(unknown)}")

    try:
        runtime = get_runtime(with_collaborators="process" in operations)
    except ConfigurationError as e:
        _fail(str(e))

    results = asyncio.run(run_operations(runtime, operations, limit=limit))
    click.echo(json.dumps(results, indent=2, default=str))


@cli.group()
def worker():
    """Run the long-lived worker"""
    pass


@worker.command()
@click.option("--interval", default=60.0, help="Seconds between processing runs")
@click.option("--maintenance-interval", default=300.0, help="Seconds between maintenance runs")
def start(interval: float, maintenance_interval: float):
    """Start the worker loop.

    Example:
        contactqueue worker start --interval 30
    """
    try:
        w = Worker(get_runtime(with_collaborators=True), interval, maintenance_interval)
    except ConfigurationError as e:
        _fail(str(e))

    click.echo("Starting worker...")
    asyncio.run(w.run())
    click.echo("Worker stopped")


@cli.command("reset-stalled")
def reset_stalled():
    """Return items stuck in processing to the queue."""
    result = asyncio.run(get_runtime().maintenance.reset_stalled())
    click.echo(f"✓ Reset {result['reset_count']} stalled item(s)")


@cli.command()
def cleanup():
    """Delete completed items past the retention window."""
    result = asyncio.run(get_runtime().maintenance.cleanup_completed())
    click.echo(f"✓ Deleted {result['deleted_count']} completed item(s)")


@cli.command()
def monitor():
    """Check queue health and raise alerts."""
    report = asyncio.run(get_runtime().maintenance.check_queue_status())
    click.echo(f"Oldest pending:    {report.oldest_pending_age:.0f}s")
    click.echo(f"Oldest processing: {report.oldest_processing_age:.0f}s")
    if report.exhausted:
        click.echo(f"Out of attempts:   {report.exhausted}")
    if report.alerts:
        for alert in report.alerts:
            click.echo(f"  ⚠ {alert}")
    else:
        click.echo("✓ No alerts")


@cli.command()
def status():
    """Show queue status and statistics.

    Example:
        contactqueue status
    """
    settings = get_settings()
    stats = asyncio.run(get_runtime().queue.get_stats())

    click.echo("\n" + "=" * 50)
    click.echo("ContactQueue Status")
    click.echo("=" * 50)
    click.echo(f"Total Items:    {stats.total}")
    click.echo(f"  Pending:      {stats.pending}")
    click.echo(f"  Processing:   {stats.processing}")
    click.echo(f"  Completed:    {stats.completed}")
    click.echo(f"  Failed:       {stats.failed}")
    click.echo("\nConfiguration:")
    click.echo(f"  Batch Size:   {settings.batch_size}")
    click.echo(f"  Concurrency:  {settings.max_concurrency}")
    click.echo(f"  Max Retries:  {settings.max_retries}")
    click.echo("=" * 50 + "\n")


@cli.command("list")
@click.option("--state", type=click.Choice([s.value for s in ItemStatus]), help="Filter by state")
@click.option("--limit", default=10, help="Maximum items to display")
def list_items(state: Optional[str], limit: int):
    """List queue items by state.

    Example:
        contactqueue list --state pending
    """
    queue = get_runtime().queue
    if state:
        items = asyncio.run(queue.get_items_by_status(ItemStatus(state)))
    else:
        items = asyncio.run(queue.get_all_items())

    items = items[:limit]
    if not items:
        click.echo("No items found")
        return

    click.echo(f"\n{'ID':<34} {'Event':<20} {'State':<12} {'Attempts':<10} {'Created':<20}")
    click.echo("-" * 98)
    for item in items:
        attempts = f"{item.attempts}/{item.max_attempts}"
        click.echo(
            f"{item.id:<34} {item.event_id[:20]:<20} {item.status.value:<12} "
            f"{attempts:<10} {_format_time(item.created_at):<20}"
        )
    click.echo()


@cli.group()
def failed():
    """Inspect and retry failed items"""
    pass


@failed.command("list")
@click.option("--page", default=1, help="Page number")
@click.option("--limit", default=20, help="Items per page")
def list_failed(page: int, limit: int):
    """List failed items, newest first.

    Example:
        contactqueue failed list --page 2
    """
    items, total = asyncio.run(get_runtime().queue.list_failed(page, limit))
    if not items:
        click.echo("No failed items")
        return

    pages = (total + limit - 1) // limit
    click.echo(f"\nPage {page}/{pages} ({total} failed)")
    click.echo(f"{'ID':<34} {'Event':<20} {'Attempts':<10} {'Error':<40}")
    click.echo("-" * 104)
    for item in items:
        error = (item.error_message or "")[:40]
        attempts = f"{item.attempts}/{item.max_attempts}"
        click.echo(f"{item.id:<34} {item.event_id[:20]:<20} {attempts:<10} {error:<40}")
    click.echo()


@failed.command()
@click.argument("item_id")
def retry(item_id: str):
    """Move a failed item back to the queue.

    Example:
        contactqueue failed retry 3f2a...
    """
    if asyncio.run(get_runtime().queue.retry_item(item_id)):
        click.echo(f"✓ Item {item_id} moved back to queue for retry")
    else:
        _fail(f"Item {item_id} not found")


@cli.group()
def config():
    """Inspect configuration"""
    pass


@config.command()
def show():
    """Show current configuration.

    Example:
        contactqueue config show
    """
    settings = get_settings()
    click.echo("\nCurrent Configuration:")
    for key, value in settings.model_dump().items():
        if key == "betterstack_source_token" and value:
            value = "********"
        click.echo(f"  {key.replace('_', '-')}: {value}")
    click.echo()


if __name__ == "__main__":
    cli()
