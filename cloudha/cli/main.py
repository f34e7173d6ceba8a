#!/usr/bin/env python3
"""
cloudha Command Line Interface

Entry point used by BIG-IP HA event scripts and operators:
- failover: run one failover pass for the local device
- instances: show the unified instance map
- elect: elect (and optionally validate and record) the primary
- status: show the persisted failover run record
- nodes: look up nodes by scale set or tag
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Dict, Optional

import typer
from prometheus_client import start_http_server
from rich.console import Console
from rich.table import Table

from ..cluster.topology import TopologyOptions
from ..core.config import Config
from ..core.context import HAContext
from ..core.errors import CloudHAError, RecordNotFound
from ..core.logs import configure_logging
from ..core.models import FailoverRunRecord, InstanceRecord
from ..failover.state_machine import FailoverRunner
from ..provider.azure import AzureCloudProvider
from ..storage.registry import FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY

app = typer.Typer(
    name="cloudha",
    help="cloudha - BIG-IP cluster failover for Azure",
    rich_markup_mode="rich"
)
console = Console()


@dataclass
class CliState:
    config: Config


def build_context(config: Config) -> HAContext:
    """Build the execution context for a command"""
    return HAContext.from_config(config)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _fail(message: str):
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (error, warning, info, debug, silly)"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file location"),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose Prometheus metrics on this port"),
):
    """cloudha - BIG-IP cluster failover for Azure"""
    try:
        config = Config.load(config_file, overrides={"log_level": log_level, "log_file": log_file})
    except CloudHAError as e:
        _fail(str(e))

    configure_logging(config.log_level, config.log_file)
    if metrics_port:
        start_http_server(metrics_port)
    ctx.obj = CliState(config=config)


async def _with_context(config: Config, fn):
    context = build_context(config)
    try:
        return await fn(context)
    finally:
        await context.close()


def _run(config: Config, fn):
    try:
        return asyncio.run(_with_context(config, fn))
    except CloudHAError as e:
        _fail(str(e))


def _instances_table(instances: Dict[str, InstanceRecord], primary_id: Optional[str] = None) -> Table:
    table = Table(title="Instances")
    table.add_column("Instance ID", style="cyan")
    table.add_column("Private IP", style="bold")
    table.add_column("Hostname")
    table.add_column("Primary", style="magenta")
    table.add_column("Visible", style="green")
    table.add_column("Version OK", style="green")
    table.add_column("External", style="dim")
    for instance_id, instance in instances.items():
        marker = "elected" if instance_id == primary_id else ("yes" if instance.is_primary else "")
        table.add_row(
            instance_id,
            instance.private_ip or "",
            instance.hostname or "",
            marker,
            "yes" if instance.provider_visible else "no",
            "yes" if instance.version_ok else "no",
            "yes" if instance.external else "",
        )
    return table


@app.command("failover")
def failover(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Run even if this device is not PRIMARY"),
):
    """Point routes and floating IPs at this device"""
    config = _state(ctx).config

    async def run(context: HAContext):
        provider = AzureCloudProvider(context)
        if not force and not await provider.is_primary_device():
            console.print("No need to perform failover for SECONDARY device")
            return None
        return await FailoverRunner(context).run()

    result = _run(config, run)
    if result is not None:
        console.print(f"[green]✓[/green] Failover {result.status.value}"
                      f"{' (recovered previous task)' if result.recovered else ''}")
        console.print(f"[bold]Disassociated:[/bold] {len(result.plan.disassociate)}  "
                      f"[bold]Associated:[/bold] {len(result.plan.associate)}  "
                      f"[bold]Routes:[/bold] {len(result.plan.routes)}")


@app.command("instances")
def instances(
    ctx: typer.Context,
    external_tag: Optional[str] = typer.Option(None, "--external-tag", help="Also include VMs tagged key=value"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="This instance's ID"),
    output_format: str = typer.Option("table", "--format", "-f", help="Output format (table, json)"),
):
    """Show the unified instance map"""
    config = _state(ctx).config
    options = TopologyOptions(instance_id=instance_id, external_tag=external_tag or config.external_tag)

    async def run(context: HAContext):
        return await AzureCloudProvider(context).get_instances(options)

    result = _run(config, run)
    if output_format == "json":
        console.print_json(json.dumps({iid: inst.to_blob() for iid, inst in result.items()}))
    else:
        console.print(_instances_table(result))


@app.command("elect")
def elect(
    ctx: typer.Context,
    validate: bool = typer.Option(False, "--validate", help="Check the winner's live hostname"),
    mark: bool = typer.Option(False, "--mark", help="Record the winner as primary in the registry"),
    tag_scale_set: bool = typer.Option(False, "--tag-scale-set", help="Write the primary tag on the scale set"),
    external_tag: Optional[str] = typer.Option(None, "--external-tag", help="Also include VMs tagged key=value"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="This instance's ID"),
):
    """Elect the primary instance"""
    config = _state(ctx).config
    options = TopologyOptions(instance_id=instance_id, external_tag=external_tag or config.external_tag)

    async def run(context: HAContext):
        provider = AzureCloudProvider(context)
        members = await provider.get_instances(options)
        primary_id = await provider.elect_primary(members)
        valid = None
        if validate:
            valid = await provider.is_valid_primary(primary_id, members)
        if mark and valid is not False:
            await provider.primary_elected(primary_id)
            await provider.put_instance(primary_id, members[primary_id].model_copy(update={"is_primary": True}))
        if tag_scale_set and valid is not False:
            await provider.tag_primary_instance(primary_id, members)
        return members, primary_id, valid

    members, primary_id, valid = _run(config, run)
    console.print(_instances_table(members, primary_id))
    console.print(f"[bold]Primary:[/bold] {primary_id}")
    if valid is False:
        _fail(f"Primary {primary_id} failed hostname validation")
    if valid:
        console.print("[green]✓[/green] Primary validated")


@app.command("status")
def status(
    ctx: typer.Context,
    output_format: str = typer.Option("table", "--format", "-f", help="Output format (table, json)"),
):
    """Show the persisted failover run record"""
    config = _state(ctx).config

    async def run(context: HAContext):
        try:
            blob = await context.registry.get(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY)
        except RecordNotFound:
            return None
        return FailoverRunRecord.model_validate(blob)

    record = _run(config, run)
    if record is None:
        console.print("[yellow]No failover record found[/yellow]")
        return
    if output_format == "json":
        console.print_json(json.dumps(record.to_blob()))
        return

    table = Table(title="Failover Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", record.status.value if record.status else "")
    table.add_row("Timestamp", record.time_stamp or "")
    age = record.age_seconds()
    table.add_row("Age", f"{age:.0f}s" if age is not None else "")
    desired = record.desired_configuration
    table.add_row("Pending disassociations", ", ".join(u.nic_name for u in desired.disassociate))
    table.add_row("Pending associations", ", ".join(u.nic_name for u in desired.associate))
    console.print(table)


@app.command("nodes")
def nodes(
    ctx: typer.Context,
    resource_id: str = typer.Argument(..., help="Scale set name, or key=value for tags"),
    resource_type: str = typer.Option("scaleSet", "--type", "-t", help="Resource type (scaleSet, tag)"),
):
    """Look up nodes by resource ID"""
    config = _state(ctx).config

    async def run(context: HAContext):
        return await AzureCloudProvider(context).get_nodes_by_resource_id(resource_id, resource_type)

    result = _run(config, run)
    table = Table(title="Nodes")
    table.add_column("ID", style="cyan")
    table.add_column("Private IP", style="bold")
    table.add_column("Public IP")
    for node in result:
        table.add_row(node.id, node.ip.private or "", node.ip.public or "")
    console.print(table)


if __name__ == "__main__":
    app()
