"""
Command-line interface for the Ruuvi collector.
Provides the daemon entry point and diagnostic commands using click and rich.
"""

import asyncio
import sys
from typing import Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .. import __version__
from ..ble.decoder import DecodeError, decode
from ..ble.transport import AdapterUnavailableError, BleakTransport, RUUVI_NAME_FILTER, TransportError
from ..service.daemon import run_daemon
from ..settings.loader import load_collector_config
from ..utils.config import Config, ConfigurationError
from ..utils.logging import ComponentLogger, PerformanceMonitor


console = Console()


def _load_config(ctx: click.Context) -> Config:
    return Config(env_file=ctx.obj.get("env_file"))


def _configured_names(config: Config) -> Dict[str, str]:
    """Address to configured name, empty if the config file is unusable."""
    try:
        collector_config = load_collector_config(config.collector_config_file)
    except ConfigurationError as e:
        console.print(f"[yellow]Configured devices unavailable: {e}[/yellow]")
        return {}
    return {address: name for name, address in collector_config.tags.items()}


@click.group()
@click.version_option(version=__version__, prog_name="ruuvi-collector")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None,
              help="Environment file to load (defaults to .env in the project root)")
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[str]):
    """Ruuvi collector - BLE sensor telemetry to InfluxDB."""
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Run the collector until interrupted."""
    try:
        config = _load_config(ctx)
        asyncio.run(run_daemon(config))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    except AdapterUnavailableError as e:
        console.print(f"[red]Bluetooth adapter unavailable:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[blue]Collector interrupted by user[/blue]")


@cli.command()
@click.option("--duration", "-d", default=5.0, type=float, show_default=True,
              help="Scan duration in seconds")
@click.pass_context
def discover(ctx: click.Context, duration: float):
    """Scan once and list visible Ruuvi devices."""
    try:
        config = _load_config(ctx)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    configured = _configured_names(config)
    transport = BleakTransport(config, ComponentLogger(), PerformanceMonitor())
    transport.scan_duration = duration

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    ) as progress:
        progress.add_task(f"Scanning for {duration:.0f}s...", total=None)
        try:
            visible = asyncio.run(transport.scan(RUUVI_NAME_FILTER))
        except TransportError as e:
            console.print(f"[red]Scan failed:[/red] {e}")
            sys.exit(1)

    if not visible:
        console.print("[yellow]No Ruuvi devices found[/yellow]")
    else:
        table = Table(title="Discovered Devices", show_header=True, header_style="bold green")
        table.add_column("MAC Address", style="cyan")
        table.add_column("Advertised Name")
        table.add_column("RSSI", style="yellow")
        table.add_column("Configured As", style="magenta")

        for address, handle in sorted(visible.items()):
            table.add_row(
                address,
                handle.name or "N/A",
                f"{handle.rssi} dBm" if handle.rssi is not None else "N/A",
                configured.get(address, "-")
            )
        console.print(table)

    missing = sorted(name for address, name in configured.items() if address not in visible)
    if missing:
        console.print(f"[yellow]Configured but not visible: {', '.join(missing)}[/yellow]")


@cli.command(name="decode")
@click.argument("payload")
def decode_command(payload: str):
    """Decode one payload given as hex."""
    try:
        raw = bytes.fromhex(payload.replace(":", "").replace(" ", ""))
    except ValueError:
        raise click.BadParameter(f"not a hex string: {payload}", param_hint="PAYLOAD")

    try:
        decoded = decode(raw)
    except DecodeError as e:
        console.print(f"[red]Decode failed:[/red] {e}")
        sys.exit(1)

    table = Table(title="Decoded Payload", show_header=True, header_style="bold cyan")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Temperature", f"{decoded.temperature:.3f} °C")
    table.add_row("Humidity", f"{decoded.humidity:.4f} %")
    table.add_row("Pressure", f"{decoded.pressure} Pa")
    table.add_row("Acceleration X", f"{decoded.acceleration_x:.3f} g")
    table.add_row("Acceleration Y", f"{decoded.acceleration_y:.3f} g")
    table.add_row("Acceleration Z", f"{decoded.acceleration_z:.3f} g")
    table.add_row("Battery", f"{decoded.battery_voltage:.3f} V")
    table.add_row("TX Power", f"{decoded.tx_power} dBm")
    table.add_row("Movement Counter", str(decoded.movement_counter))
    table.add_row("Measurement Sequence", str(decoded.measurement_sequence))
    console.print(table)


@cli.command(name="check-config")
@click.pass_context
def check_config(ctx: click.Context):
    """Validate runtime settings and the collector configuration file."""
    try:
        config = _load_config(ctx)
        config.validate_configuration()
        collector_config = load_collector_config(config.collector_config_file)
    except ConfigurationError as e:
        console.print(Panel(str(e), title="Configuration invalid", border_style="red"))
        sys.exit(1)

    table = Table(title="Runtime Settings", show_header=True, header_style="bold cyan")
    table.add_column("Section", style="cyan")
    table.add_column("Setting")
    table.add_column("Value", style="green")
    for section, values in config.get_summary().items():
        if isinstance(values, dict):
            for key, value in values.items():
                table.add_row(section, key, str(value))
        else:
            table.add_row(section, "", str(values))
    console.print(table)

    sink = Table(title="InfluxDB", show_header=True, header_style="bold cyan")
    sink.add_column("Setting", style="cyan")
    sink.add_column("Value", style="green")
    sink.add_row("URL", collector_config.influx_url)
    sink.add_row("Organization", collector_config.org)
    sink.add_row("Bucket", collector_config.bucket)
    sink.add_row("Measurement", collector_config.measurement)
    sink.add_row("Interval", f"{collector_config.interval}s")
    console.print(sink)

    devices = Table(title="Configured Devices", show_header=True, header_style="bold magenta")
    devices.add_column("Name", style="cyan")
    devices.add_column("MAC Address", style="yellow")
    for name, address in collector_config.tags.items():
        devices.add_row(name, address)
    console.print(devices)

    console.print("[green]Configuration is valid[/green]")


if __name__ == "__main__":
    cli()
