"""Courier CLI.

Usage::

    courier serve --port 8000
    courier deliver
    courier subscribe --topic demo-topic
    courier task create send_email --data recipient=a@b.com --delay 10
    courier task list --limit 20
    courier task status <task_id>
    courier message publish demo-topic "hello" --attr source=cli
    courier message list
    courier watch tasks

Every command reads ``COURIER_*`` environment variables; ``--redis-url``
overrides ``COURIER_REDIS_URL``.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Annotated, Any
from urllib.parse import urlparse

import typer
from rich.console import Console
from rich.live import Live
from rich.table import Table

from courier.actions import DEFAULT_TASK_LIMIT
from courier.config import Settings
from courier.errors import CourierError
from courier.log import configure_logging
from courier.models import MessageRecord, TaskRecord
from courier.projection import VIEWS
from courier.services import (
    Services,
    TransportRunner,
    build_delivery_agent,
    build_services,
    build_subscribers,
)

app = typer.Typer(
    name="courier",
    help="Courier: task and message lifecycle tracking.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    redis_url: Annotated[
        str | None,
        typer.Option("--redis-url", help="Redis connection URL (default: COURIER_REDIS_URL)."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging."),
    ] = False,
) -> None:
    """Courier CLI: dispatch tasks, publish messages and watch their lifecycle."""
    settings = Settings.from_env()
    if redis_url:
        settings = settings.model_copy(update={"redis_url": redis_url})
    if verbose:
        configure_logging("DEBUG", settings.log_format, force=True)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _settings(ctx: typer.Context) -> Settings:
    obj = ctx.ensure_object(dict)
    settings = obj.get("settings")
    return settings if settings is not None else Settings.from_env()


@contextlib.asynccontextmanager
async def _open_services(settings: Settings) -> AsyncIterator[Services]:
    services = build_services(settings)
    await services.connect()
    try:
        yield services
    finally:
        await services.disconnect()


def _run(coro: Any) -> None:
    """Run *coro*, turning Courier errors into a red message and exit code 1."""
    try:
        asyncio.run(coro)
    except CourierError as exc:
        console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(code=1) from exc


def _mask_redis_url(url: str) -> str:
    """Return a masked version of the Redis URL showing only the host."""
    try:
        parsed = urlparse(url)
        host = parsed.hostname or "unknown"
        port = parsed.port or 6379
        return f"redis://{host}:{port}/***"
    except ValueError:
        return "redis://***"


def _parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated ``key=value`` options into a dict."""
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {item!r}", param_hint=option)
        pairs[key] = value
    return pairs


def _format_timestamp(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _status_color(status: str) -> str:
    """Return a Rich color name for a task or message status."""
    colors: dict[str, str] = {
        "queued": "yellow",
        "scheduled": "cyan",
        "processing": "blue",
        "completed": "green",
        "failed": "red",
        "published": "yellow",
        "processed": "green",
    }
    return colors.get(status, "white")


def _colored(status: str) -> str:
    color = _status_color(status)
    return f"[{color}]{status}[/{color}]"


def _task_table(tasks: list[TaskRecord], title: str = "Tasks") -> Table:
    table = Table(title=title)
    table.add_column("Task ID", style="cyan", no_wrap=True)
    table.add_column("Action", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Created", no_wrap=True)
    table.add_column("Outcome")
    for t in tasks:
        outcome = t.result.message if t.result is not None else (t.error or "-")
        table.add_row(
            t.id,
            t.action.value,
            _colored(t.status.value),
            _format_timestamp(t.created_at),
            outcome,
        )
    return table


def _message_table(messages: list[MessageRecord], title: str = "Messages") -> Table:
    table = Table(title=title)
    table.add_column("Message ID", style="cyan", no_wrap=True)
    table.add_column("Topic", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Published", no_wrap=True)
    table.add_column("Processed", no_wrap=True)
    table.add_column("Message")
    for m in messages:
        table.add_row(
            m.id,
            m.topic,
            _colored(m.status.value),
            _format_timestamp(m.published_at),
            _format_timestamp(m.processed_at),
            m.message,
        )
    return table


async def _run_until_signal(runner: TransportRunner) -> None:
    """Run *runner* until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await runner.start()
    try:
        await stop.wait()
    finally:
        await runner.stop()


# ---------------------------------------------------------------------------
# Long-running services
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Annotated[str, typer.Option("--host", help="Bind address.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Bind port.")] = 8000,
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from courier.server import create_app

    settings = _settings(ctx)
    console.print("[bold green]Courier API Starting[/bold green]")
    console.print(f"  Listening:   http://{host}:{port}")
    console.print(f"  Redis URL:   {_mask_redis_url(settings.redis_url)}")
    console.print(f"  Queue:       {settings.queue_name}")
    console.print(f"  Transports:  {'embedded' if settings.embedded_transports else 'external'}")
    console.print()
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


@app.command("deliver")
def deliver(ctx: typer.Context) -> None:
    """Run the delivery agent that POSTs queued tasks to the worker endpoint."""
    settings = _settings(ctx)
    configure_logging(settings.log_level, settings.log_format)

    console.print("[bold green]Courier Delivery Agent Starting[/bold green]")
    console.print(f"  Redis URL:   {_mask_redis_url(settings.redis_url)}")
    console.print(f"  Queue:       {settings.queue_name}")
    console.print(f"  Target:      {settings.process_task_url}")
    console.print(f"  Attempts:    {settings.delivery_max_attempts}")
    console.print()
    console.print("[dim]Press Ctrl+C to stop.[/dim]")

    async def _deliver() -> None:
        async with _open_services(settings) as services:
            runner = TransportRunner(build_delivery_agent(services), [])
            await _run_until_signal(runner)

    _run(_deliver())


@app.command("subscribe")
def subscribe(
    ctx: typer.Context,
    topic: Annotated[
        list[str] | None,
        typer.Option("--topic", "-t", help="Topic to consume (repeatable; default: COURIER_TOPICS)."),
    ] = None,
) -> None:
    """Consume topics and mark their messages processed."""
    settings = _settings(ctx)
    configure_logging(settings.log_level, settings.log_format)
    topics = topic or list(settings.topics)

    console.print("[bold green]Courier Subscriber Starting[/bold green]")
    console.print(f"  Redis URL:   {_mask_redis_url(settings.redis_url)}")
    console.print(f"  Topics:      {', '.join(topics)}")
    console.print(f"  Delay:       {settings.message_processing_delay_seconds}s")
    console.print()
    console.print("[dim]Press Ctrl+C to stop.[/dim]")

    async def _subscribe() -> None:
        async with _open_services(settings) as services:
            runner = TransportRunner(None, build_subscribers(services, topics))
            await _run_until_signal(runner)

    _run(_subscribe())


# ---------------------------------------------------------------------------
# Subcommand group: task
# ---------------------------------------------------------------------------

task_app = typer.Typer(name="task", help="Create and inspect tasks.", no_args_is_help=True)
app.add_typer(task_app, name="task")


@task_app.command("create")
def task_create(
    ctx: typer.Context,
    action: Annotated[str, typer.Argument(help="Task action, e.g. send_email.")],
    data: Annotated[
        list[str] | None,
        typer.Option("--data", "-d", help="Task data as key=value (repeatable)."),
    ] = None,
    delay: Annotated[
        int,
        typer.Option("--delay", help="Seconds to wait before the task runs."),
    ] = 0,
) -> None:
    """Dispatch a new task."""
    settings = _settings(ctx)
    payload = _parse_pairs(data, "--data")

    async def _create() -> None:
        async with _open_services(settings) as services:
            response = await services.dispatcher.create_task(action, payload, delay)
        console.print(f"[green]{response.message}[/green]")
        console.print(f"  Task ID:     {response.task_id}")
        console.print(f"  Queue item:  {response.cloud_task_name}")

    _run(_create())


@task_app.command("list")
def task_list(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", help="Maximum number of tasks to display."),
    ] = DEFAULT_TASK_LIMIT,
) -> None:
    """List the most recent tasks."""
    settings = _settings(ctx)

    async def _list() -> None:
        async with _open_services(settings) as services:
            tasks = await services.tasks.list_recent(limit)
        if not tasks:
            console.print("[dim]No tasks found.[/dim]")
            return
        console.print(_task_table(tasks))

    _run(_list())


@task_app.command("status")
def task_status(
    ctx: typer.Context,
    task_id: Annotated[str, typer.Argument(help="Task ID to inspect.")],
) -> None:
    """Show the lifecycle of one task."""
    settings = _settings(ctx)

    async def _show() -> None:
        async with _open_services(settings) as services:
            task = await services.tasks.get(task_id)
        if task is None:
            console.print(f"[yellow]Task not found: {task_id}[/yellow]")
            raise typer.Exit(code=1)

        console.print(f"[bold]Task {task.id}[/bold]")
        console.print(f"  Action:      {task.action.value}")
        console.print(f"  Status:      {_colored(task.status.value)}")
        console.print(f"  Delay:       {task.schedule_delay_seconds}s")
        console.print(f"  Created:     {_format_timestamp(task.created_at)}")
        console.print(f"  Started:     {_format_timestamp(task.processing_started_at)}")
        console.print(f"  Completed:   {_format_timestamp(task.completed_at)}")
        console.print(f"  Failed:      {_format_timestamp(task.failed_at)}")
        if task.dispatch_handle:
            console.print(f"  Queue item:  {task.dispatch_handle}")
        if task.result is not None:
            console.print(f"  Result:      {task.result.message}")
        if task.error:
            console.print(f"  Error:       [red]{task.error}[/red]")

    _run(_show())


# ---------------------------------------------------------------------------
# Subcommand group: message
# ---------------------------------------------------------------------------

message_app = typer.Typer(name="message", help="Publish and inspect messages.", no_args_is_help=True)
app.add_typer(message_app, name="message")


@message_app.command("publish")
def message_publish(
    ctx: typer.Context,
    topic: Annotated[str, typer.Argument(help="Topic to publish to.")],
    message: Annotated[str, typer.Argument(help="Message text.")],
    attr: Annotated[
        list[str] | None,
        typer.Option("--attr", "-a", help="Message attribute as key=value (repeatable)."),
    ] = None,
) -> None:
    """Publish a message to a topic."""
    settings = _settings(ctx)
    attributes = _parse_pairs(attr, "--attr")

    async def _publish() -> None:
        async with _open_services(settings) as services:
            response = await services.publisher.publish(topic, message, attributes)
        console.print(f"[green]{response.message}[/green]")
        console.print(f"  Message ID:  {response.message_id}")

    _run(_publish())


@message_app.command("list")
def message_list(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", help="Maximum number of messages to display."),
    ] = 50,
) -> None:
    """List the most recent messages."""
    settings = _settings(ctx)

    async def _list() -> None:
        async with _open_services(settings) as services:
            messages = await services.messages.list_recent(limit)
        if not messages:
            console.print("[dim]No messages found.[/dim]")
            return
        console.print(_message_table(messages))

    _run(_list())


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


def _snapshot_table(view_name: str, snapshot: list[dict[str, Any]]) -> Table:
    if view_name == "tasks":
        return _task_table([TaskRecord.model_validate(d) for d in snapshot], title="Tasks (live)")
    return _message_table(
        [MessageRecord.model_validate(d) for d in snapshot], title="Messages (live)"
    )


@app.command("watch")
def watch(
    ctx: typer.Context,
    view_name: Annotated[str, typer.Argument(help="View to watch: tasks or messages.")],
    limit: Annotated[
        int,
        typer.Option("--limit", help="Number of records to show."),
    ] = DEFAULT_TASK_LIMIT,
    order_by: Annotated[
        str | None,
        typer.Option("--order-by", help="Field to order by, newest first."),
    ] = None,
    once: Annotated[
        bool,
        typer.Option("--once", help="Print the current snapshot and exit."),
    ] = False,
) -> None:
    """Show a live table that refreshes on every change."""
    view = VIEWS.get(view_name)
    if view is None:
        console.print(f"[red]Unknown view: {view_name}. Valid values: {', '.join(VIEWS)}[/red]")
        raise typer.Exit(code=1)
    settings = _settings(ctx)

    async def _watch() -> None:
        async with _open_services(settings) as services:
            subscription = services.projection.subscribe(
                view.collection, limit, order_by or view.order_field
            )
            if once:
                async for snapshot in subscription:
                    console.print(_snapshot_table(view_name, snapshot))
                    subscription.unsubscribe()
                return
            with Live(console=console, refresh_per_second=4) as live:
                async for snapshot in subscription:
                    live.update(_snapshot_table(view_name, snapshot))

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
