"""
Flows CLI

Command-line interface for flow engine administration.

Commands:
- define: Register a flow from a JSON file
- undefine: Stop a flow from enrolling contacts
- flows: List flow definitions
- status: Show one flow instance
- instances: List flow instances
- tick: Fire due wakes
- recover: Rebuild scheduler state after a restart
- failures: Show recent failed instances
- stream-info: Show information about a Redis stream
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from flows_core.engine.runtime import FlowEngine

app = typer.Typer(
    name="flows-cli",
    help="Flow Execution Engine CLI",
)

console = Console()


def get_redis():
    """Get Redis client."""
    from flowbase.redis import get_redis_client
    return get_redis_client()


def get_engine() -> FlowEngine:
    """
    Engine whose bus forwards to the worker streams.

    Trigger fires and resumes issued from the CLI are executed by the
    worker, which holds the contact data.
    """
    from flowbase.settings import get_settings

    from flows_core.bootstrap import build_flow_engine
    from flows_core.streams.bus import StreamEventBus
    from flows_core.streams.producer import FlowStreamProducer

    settings = get_settings()
    redis_client = get_redis()
    bus = StreamEventBus(FlowStreamProducer.from_settings(redis_client, settings))
    return build_flow_engine(settings, redis_client=redis_client, bus=bus)


def _short(value: str | None) -> str:
    if not value:
        return "-"
    return value[:8] + "..." if len(value) > 11 else value


@app.command()
def define(
    path: Path = typer.Argument(..., help="JSON file with the flow definition"),
):
    """
    Register (or replace) a flow.

    Now triggers enroll the matching segment immediately; At triggers are
    scheduled for their instant.
    """
    from pydantic import ValidationError as SchemaError

    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        rprint(f"[red]Could not read {path}: {e}[/red]")
        raise typer.Exit(1)

    engine = get_engine()
    try:
        cause_id = engine.define_flow(data)
    except SchemaError as e:
        rprint(f"[red]Invalid flow definition:[/red]\n{e}")
        raise typer.Exit(1)
    finally:
        engine.close()

    rprint(f"[green]Flow {data.get('flow_id')} defined[/green]")
    if cause_id:
        rprint(f"  Enrollment cause: {cause_id}")


@app.command()
def undefine(
    flow_id: str = typer.Argument(..., help="Flow ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """
    Deactivate a flow.

    Contacts already in the flow finish it; no new contacts are enrolled.
    """
    from flows_core.errors import UnknownFlowError

    if not force:
        confirm = typer.confirm(f"Undefine flow {flow_id}?")
        if not confirm:
            rprint("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    engine = get_engine()
    try:
        engine.undefine_flow(flow_id)
    except UnknownFlowError:
        rprint(f"[red]No flow found: {flow_id}[/red]")
        raise typer.Exit(1)
    finally:
        engine.close()

    rprint(f"[green]Flow {flow_id} undefined[/green]")


@app.command()
def flows(
    all_: bool = typer.Option(False, "--all", "-a", help="Show inactive flows too"),
):
    """
    List flow definitions.
    """
    from flows_core.persistence.repo import definition_summary

    engine = get_engine()
    try:
        definitions = engine.flows(active_only=not all_)
        rows = [definition_summary(d, engine.store.is_active_definition(d.flow_id)) for d in definitions]
    finally:
        engine.close()

    if not rows:
        rprint("[yellow]No flows found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Flows")
    table.add_column("Flow", style="dim")
    table.add_column("Name")
    table.add_column("Trigger")
    table.add_column("Steps")
    table.add_column("Goal")
    table.add_column("Active")

    for row in rows:
        table.add_row(
            row["flow_id"],
            row["name"] or "-",
            row["trigger"],
            str(row["steps"]),
            "Yes" if row["goal"] else "No",
            "Yes" if row["active"] else "No",
        )

    console.print(table)


@app.command()
def status(
    instance_id: str = typer.Argument(..., help="Flow instance ID"),
):
    """
    Show the status of a flow instance.
    """
    from flows_core.errors import UnknownInstanceError

    engine = get_engine()
    try:
        view = engine.query_instance_status(instance_id).status_view()
    except UnknownInstanceError:
        rprint(f"[red]Instance not found: {instance_id}[/red]")
        raise typer.Exit(1)
    finally:
        engine.close()

    rprint(f"\n[cyan]Instance: {view['instance_id']}[/cyan]")
    for key in ("flow_id", "contact_id", "status", "pointer", "wake_at", "attempts", "last_error",
                "failure_reason", "entered_at", "finished_at"):
        if view.get(key) not in (None, ""):
            rprint(f"  {key}: {view[key]}")


@app.command()
def instances(
    contact: Optional[str] = typer.Option(None, "--contact", help="Filter by contact ID"),
    flow: Optional[str] = typer.Option(None, "--flow", help="Filter by flow ID"),
    status_: Optional[str] = typer.Option(None, "--status", help="Filter by status (running, completed, ...)"),
    limit: int = typer.Option(20, help="Maximum number of instances to show"),
):
    """
    List flow instances.
    """
    from flows_core.engine.state import InstanceStatus

    status_filter = None
    if status_:
        try:
            status_filter = InstanceStatus(status_)
        except ValueError:
            rprint(f"[red]Unknown status: {status_}[/red]")
            raise typer.Exit(1)

    engine = get_engine()
    try:
        found = engine.store.list_instances(
            contact_id=contact,
            flow_id=flow,
            status=status_filter,
            limit=limit,
        )
    finally:
        engine.close()

    if not found:
        rprint("[yellow]No instances found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Flow Instances")
    table.add_column("ID", style="dim")
    table.add_column("Flow")
    table.add_column("Contact")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Wake At")

    for instance in found:
        table.add_row(
            _short(instance.instance_id),
            instance.flow_id,
            instance.contact_id,
            str(instance.status),
            ".".join(str(p) for p in instance.pointer),
            instance.wake_at.strftime("%Y-%m-%d %H:%M") if instance.wake_at else "-",
        )

    console.print(table)


@app.command()
def tick():
    """
    Fire every wake that is due now.

    Resumes are published to the worker streams.
    """
    engine = get_engine()
    try:
        fired = engine.scheduler.tick()
    finally:
        engine.close()

    rprint(f"[green]Fired {fired} wake(s)[/green]")


@app.command()
def recover():
    """
    Rebuild the wake queue from stored instances and pending At triggers.

    Running instances with no wake are resumed at their current step.
    """
    engine = get_engine()
    try:
        result = engine.recover()
    finally:
        engine.close()

    rprint("[green]Recovered[/green]")
    rprint(f"  Wakes queued: {result['wakes']}")
    rprint(f"  Stalled instances resumed: {result['stalled']}")


@app.command()
def failures(
    limit: int = typer.Option(20, help="Maximum entries to show"),
):
    """
    Show the most recent failed instances from the failures stream.
    """
    from flowbase.settings import get_settings

    from flows_core.streams.consumer import read_recent_failures

    entries = read_recent_failures(get_redis(), get_settings().FAILURES_STREAM, count=limit)
    if not entries:
        rprint("[yellow]No failures recorded[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Failed Instances")
    table.add_column("Instance", style="dim")
    table.add_column("Flow")
    table.add_column("Contact")
    table.add_column("Attempts")
    table.add_column("Reason")
    table.add_column("Failed At")

    for entry in entries:
        table.add_row(
            _short(entry.get("instance_id")),
            entry.get("flow_id", "-"),
            entry.get("contact_id", "-"),
            entry.get("attempts", "-"),
            entry.get("reason", "-"),
            entry.get("failed_at", "-"),
        )

    console.print(table)


@app.command()
def stream_info(
    stream: Optional[str] = typer.Option(None, help="Stream name (defaults to the events stream)"),
):
    """
    Show information about a Redis stream.
    """
    from flowbase.settings import get_settings

    from flows_core.streams.groups import get_stream_info

    stream = stream or get_settings().EVENTS_STREAM
    info = get_stream_info(get_redis(), stream)

    rprint(f"\n[cyan]Stream: {stream}[/cyan]")
    rprint(f"  Length: {info.get('length', 0)}")

    if info.get("first_entry"):
        rprint(f"  First entry: {info['first_entry'][0]}")
    if info.get("last_entry"):
        rprint(f"  Last entry: {info['last_entry'][0]}")

    groups = info.get("groups", [])
    if groups:
        rprint("\n  Consumer Groups:")
        for group in groups:
            rprint(f"    - {group.get('name')}: {group.get('pending', 0)} pending, {group.get('consumers', 0)} consumers")


def main():
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
