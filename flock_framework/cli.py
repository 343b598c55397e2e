"""
Flock Coordination Framework - Command Line Interface

    flock agent            Run one agent runtime
    flock directory        Run the directory service
    flock mcp              Run the coordinator MCP server (stdio)
    flock publish-task     Publish a task and print the results
    flock list-agents      Query the directory
    flock send             Send a direct message
    flock health           Run the health check
"""

import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from typing import Any, Optional

import anyio
import click

from . import __version__
from .agents import AgentRuntime
from .bus import MessageBus, connect_with_retry, create_bus
from .client import CoordinationClient
from .config import agent_config, bus_config, directory_config
from .directory import STATUS_FILTERS, DirectoryService
from .exceptions import FlockError
from .logs import configure_logging
from .metrics import metrics_manager
from .models import MessageKind, TaskPriority
from .tasks import ResultCollector, TaskProducer

logger = logging.getLogger("flock.cli")


def _parse_data(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _bus(ctx: click.Context) -> MessageBus:
    try:
        return create_bus(ctx.obj["bus_url"])
    except FlockError as e:
        raise click.BadParameter(str(e), param_hint="--bus-url")


async def _wait_for_signal():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await stop.wait()


@click.group()
@click.version_option(__version__, prog_name="flock")
@click.option("--bus-url", default=None, help="Bus URL (memory://<name> or redis://host:port/db)")
@click.option("--log-level", default=None, help="Log level (default from LOG_LEVEL)")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format")
@click.pass_context
def main(ctx: click.Context, bus_url: Optional[str], log_level: Optional[str], log_format: Optional[str]):
    """Publish/subscribe coordination layer for worker agents."""
    configure_logging(log_level, log_format)
    ctx.ensure_object(dict)
    ctx.obj["bus_url"] = bus_url or bus_config.url


# ══════════════════════════════════════════════════════════════════════════════
# LONG-RUNNING PROCESSES
# ══════════════════════════════════════════════════════════════════════════════

@main.command()
@click.option("--id", "agent_id", default=None, help="Agent id (default from AGENT_ID)")
@click.option("--name", default=None, help="Display name")
@click.option("--capability", "capabilities", multiple=True, help="Advertised capability (repeatable)")
@click.option("--task-type", "task_types", multiple=True, help="Task type to subscribe to (default: all)")
@click.option("--heartbeat-interval", type=float, default=None, help="Seconds between heartbeats")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
@click.pass_context
def agent(ctx, agent_id, name, capabilities, task_types, heartbeat_interval, metrics_port):
    """Run an agent until SIGINT/SIGTERM or a shutdown broadcast."""
    overrides = {}
    if agent_id:
        overrides["agent_id"] = agent_id
    if name:
        overrides["name"] = name
    if capabilities:
        overrides["capabilities"] = list(capabilities)
    if task_types:
        overrides["task_types"] = list(task_types)
    if heartbeat_interval:
        overrides["heartbeat_interval"] = heartbeat_interval
    config = replace(agent_config, **overrides)

    if metrics_port:
        metrics_manager.start_server(metrics_port)

    runtime = AgentRuntime(_bus(ctx), config=config)
    code = anyio.run(runtime.run)
    ctx.exit(code)


@main.command()
@click.option("--sweep-interval", type=float, default=None, help="Seconds between staleness sweeps")
@click.option("--heartbeat-interval", type=float, default=None, help="Expected agent heartbeat interval")
@click.option("--staleness-factor", type=int, default=None, help="Missed heartbeats before offline")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
@click.pass_context
def directory(ctx, sweep_interval, heartbeat_interval, staleness_factor, metrics_port):
    """Run the directory service until SIGINT/SIGTERM."""
    overrides = {}
    if sweep_interval:
        overrides["sweep_interval"] = sweep_interval
    if heartbeat_interval:
        overrides["heartbeat_interval"] = heartbeat_interval
    if staleness_factor:
        overrides["staleness_factor"] = staleness_factor
    config = replace(directory_config, **overrides)

    if metrics_port:
        metrics_manager.start_server(metrics_port)

    service = DirectoryService(_bus(ctx), config=config)

    async def serve():
        await service.start()
        logger.info(f"Directory running (staleness threshold {config.staleness_threshold}s)")
        try:
            await _wait_for_signal()
        finally:
            await service.stop()

    anyio.run(serve)


@main.command()
@click.pass_context
def mcp(ctx):
    """Run the coordinator MCP server over stdio."""
    from .server import start_stdio_server

    ctx.exit(start_stdio_server(ctx.obj["bus_url"]))


# ══════════════════════════════════════════════════════════════════════════════
# ONE-SHOT COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

@main.command("publish-task")
@click.argument("task_type")
@click.argument("data")
@click.option("--priority", type=click.Choice([p.value for p in TaskPriority]), default="normal")
@click.option("--timeout", "timeout_ms", type=int, default=None, help="Per-task timeout in milliseconds")
@click.option("--id", "task_id", default=None, help="Explicit task id")
@click.option("--wait", type=float, default=5.0, show_default=True, help="Seconds to collect results (0 to skip)")
@click.option("--expect", type=int, default=1, show_default=True, help="Results to wait for")
@click.pass_context
def publish_task(ctx, task_type, data, priority, timeout_ms, task_id, wait, expect):
    """Publish DATA (JSON or plain text) to tasks.TASK_TYPE."""
    bus = _bus(ctx)

    async def publish():
        await connect_with_retry(bus, component="cli")
        collector = ResultCollector(bus)
        try:
            if wait > 0:
                await collector.start()
            task = await TaskProducer(bus).submit(
                task_type, _parse_data(data), TaskPriority(priority), timeout_ms, task_id
            )
            results = await collector.collect(task.task_id, expect, wait) if wait > 0 else []
            return task, results
        finally:
            await collector.stop()
            await bus.close()

    try:
        task, results = anyio.run(publish)
    except FlockError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps({"task": task.to_dict(), "results": [r.to_dict() for r in results]}, indent=2))


@main.command("list-agents")
@click.option("--status", type=click.Choice(list(STATUS_FILTERS)), default="all", show_default=True)
@click.pass_context
def list_agents(ctx, status):
    """Ask the directory for the roster."""
    bus = _bus(ctx)

    async def query():
        await connect_with_retry(bus, component="cli")
        try:
            return await CoordinationClient(bus, "cli", bus_config.request_timeout).list_agents(status)
        finally:
            await bus.close()

    try:
        records = anyio.run(query)
    except FlockError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps([r.to_dict() for r in records], indent=2))


@main.command()
@click.argument("to")
@click.argument("message")
@click.option("--type", "kind", type=click.Choice([k.value for k in MessageKind]), default="text")
@click.pass_context
def send(ctx, to, message, kind):
    """Send MESSAGE to agent TO ("all" broadcasts)."""
    bus = _bus(ctx)

    async def deliver():
        await connect_with_retry(bus, component="cli")
        try:
            return await CoordinationClient(bus, "cli").send_message(to, message, MessageKind(kind))
        finally:
            await bus.close()

    try:
        envelope = anyio.run(deliver)
    except FlockError as e:
        raise click.ClickException(str(e))
    click.echo(f"Message sent to {envelope.recipient} on {envelope.topic}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--quick", is_flag=True, help="Skip the tool listing and bus round-trip")
@click.pass_context
def health(ctx, as_json, quick):
    """Run the health check. Exit status 1 on failure."""
    from .healthcheck import Status, format_report_text, run_health_check

    report = run_health_check(quick=quick)
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(format_report_text(report))
    ctx.exit(0 if report.overall_status != Status.FAIL else 1)


if __name__ == "__main__":
    sys.exit(main())
