"""
Command-line interface for the SwitchBot BLE Ingester.
Provides ingestion, diagnostic scanning, device catalog and CSV import commands using click and rich.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, Optional, Union

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .. import __version__
from ..ble.codecs import (
    DecodedMeasurement,
    DecodeError,
    PowerMeasurement,
    decode_power_advertisement,
    decode_switchbot_advertisement,
)
from ..ble.scanner import RawAdvertisement, SwitchBotBLEScanner
from ..devices.registry import DeviceRegistry, RegistryLoadError
from ..devices.schema import Device, DeviceType
from ..importer.csv_importer import CsvImportError, import_csv
from ..influxdb.client import InfluxDBError, SwitchBotInfluxDBClient
from ..service.daemon import run_ingester
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor, ProductionLogger, setup_logging


class CLIError(Exception):
    """Base exception for CLI operations."""
    pass


def decode_for_display(advertisement: RawAdvertisement) -> Optional[Union[DecodedMeasurement, PowerMeasurement]]:
    """
    Decode an advertisement without a device catalog.

    SwitchBot devices are identified by their service data; RATOC power
    meters by their company id. Anything else returns None.
    """
    try:
        return decode_switchbot_advertisement(advertisement.manufacturer_data, advertisement.service_data)
    except DecodeError:
        pass
    try:
        return decode_power_advertisement(advertisement.manufacturer_data)
    except DecodeError:
        return None


class SwitchBotCLI:
    """
    CLI application state shared by the click commands.

    Components are created lazily so that commands which do not touch
    InfluxDB or Bluetooth can run without them.
    """

    def __init__(self, env_file: Optional[str] = None):
        self.console = Console()
        self.env_file = env_file
        self.config: Optional[Config] = None
        self.logger: Optional[ProductionLogger] = None
        self.performance_monitor: Optional[PerformanceMonitor] = None

    def _initialize_components(self):
        """Load configuration and logging."""
        try:
            self.config = Config(self.env_file)
            self.logger = setup_logging(self.config)
            self.performance_monitor = PerformanceMonitor()
        except ConfigurationError as e:
            raise CLIError(f"Configuration error: {e}") from e

    def _create_influxdb_client(self) -> SwitchBotInfluxDBClient:
        return SwitchBotInfluxDBClient(self.config, self.logger.for_component("influxdb"), self.performance_monitor)

    async def scan(self, duration: float):
        """Print decoded readings seen during a timed scan."""
        tz = self.config.timezone
        latest: Dict[str, RawAdvertisement] = {}
        readings: Dict[str, Union[DecodedMeasurement, PowerMeasurement]] = {}

        def on_advertisement(advertisement: RawAdvertisement):
            reading = decode_for_display(advertisement)
            if reading is not None:
                latest[advertisement.address] = advertisement
                readings[advertisement.address] = reading

        scanner = SwitchBotBLEScanner(self.config, self.logger.for_component("ble"), self.performance_monitor)
        scanner.add_callback(on_advertisement)

        self.console.print(f"[blue]Scanning for {duration} seconds...[/blue]")
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=self.console
            ) as progress:
                progress.add_task("Scanning...", total=None)
                await scanner.scan_once(duration)
        finally:
            await scanner.cleanup()

        if not readings:
            self.console.print("[yellow]No SwitchBot or power meter advertisements found[/yellow]")
            return

        table = Table(title="Decoded Advertisements", show_header=True, header_style="bold green")
        table.add_column("Address", style="cyan")
        table.add_column("Seen At", style="white")
        table.add_column("RSSI", style="yellow")
        table.add_column("Reading", style="green")

        for address in sorted(readings):
            advertisement = latest[address]
            table.add_row(
                address,
                advertisement.observed_at.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z"),
                f"{advertisement.rssi} dBm" if advertisement.rssi is not None else "N/A",
                format_reading(readings[address]),
            )

        self.console.print(table)

    async def list_devices(self):
        client = self._create_influxdb_client()
        try:
            await client.connect()
            registry = await DeviceRegistry.load(client, self.logger)
        finally:
            await client.disconnect()

        if len(registry) == 0:
            self.console.print("[yellow]No devices in catalog[/yellow]")
            return

        table = Table(title="Device Catalog", show_header=True, header_style="bold magenta")
        table.add_column("Order", style="white", justify="right")
        table.add_column("Address", style="cyan")
        table.add_column("Type", style="green")
        table.add_column("Name", style="yellow")

        for device in registry:
            table.add_row(str(device.sort_order), device.address, device.type.value, device.name)

        self.console.print(table)

    async def add_device(self, device: Device):
        client = self._create_influxdb_client()
        try:
            await client.connect()
            if not await client.add_device(device):
                raise CLIError(f"Failed to store device {device.address}")
        finally:
            await client.disconnect()

        self.console.print(f"[green]Added device: {device.name} ({device.address}, {device.type.value})[/green]")

    async def import_csv(self, device_id: str, file: Path) -> int:
        client = self._create_influxdb_client()
        try:
            await client.connect()
            total = await import_csv(
                file,
                device_id,
                self.config.timezone,
                client,
                batch_size=self.config.import_batch_size,
                logger=self.logger
            )
        finally:
            await client.disconnect()

        self.console.print(f"[green]Inserted {total} records from {file}[/green]")
        return total


def format_reading(reading: Union[DecodedMeasurement, PowerMeasurement]) -> str:
    if isinstance(reading, PowerMeasurement):
        return f"{reading.voltage_v:.1f} V, {reading.current_ma} mA, {reading.power_w:.3f} W"

    parts = [f"{reading.temperature_celsius:.1f}°C", f"{reading.humidity_percent}%"]
    if reading.co2_ppm is not None:
        parts.append(f"CO2 {reading.co2_ppm} ppm")
    if reading.light_level is not None:
        parts.append(f"light {reading.light_level}")
    return ", ".join(parts)


def _run(app: SwitchBotCLI, coro_factory):
    """Initialize components and run a coroutine, mapping failures to exit status 1."""
    try:
        app._initialize_components()
        return asyncio.run(coro_factory())
    except (CLIError, InfluxDBError, RegistryLoadError, CsvImportError) as e:
        app.console.print(f"[red]{e}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="switchbot-ingester")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None,
              help="Path to .env file (defaults to .env in project root)")
@click.pass_context
def cli(ctx, env_file):
    """SwitchBot BLE Ingester - minute-resolution telemetry from BLE advertisements."""
    ctx.obj = SwitchBotCLI(env_file)


@cli.command()
@click.pass_obj
def ingest(app: SwitchBotCLI):
    """Run the ingestion service until interrupted."""
    try:
        config = Config(app.env_file)
    except ConfigurationError as e:
        app.console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    exit_code = asyncio.run(run_ingester(config))
    sys.exit(exit_code)


@cli.command()
@click.option("--duration", "-d", default=10.0, type=float, help="Scan duration in seconds")
@click.pass_obj
def scan(app: SwitchBotCLI, duration):
    """Print decoded readings without storing them."""
    _run(app, lambda: app.scan(duration))


@cli.group()
def devices():
    """Manage the device catalog."""
    pass


@devices.command("list")
@click.pass_obj
def list_devices(app: SwitchBotCLI):
    """Show catalogued devices in display order."""
    _run(app, app.list_devices)


@devices.command("add")
@click.option("--address", required=True, help="Device MAC address")
@click.option("--type", "device_type", required=True,
              type=click.Choice([t.value for t in DeviceType]), help="Device model")
@click.option("--name", required=True, help="Display name")
@click.option("--sort-order", default=0, type=click.IntRange(0, 255), help="Display order")
@click.pass_obj
def add_device(app: SwitchBotCLI, address, device_type, name, sort_order):
    """Add or replace a catalog entry."""
    try:
        device = Device(address=address, type=DeviceType(device_type), name=name, sort_order=sort_order)
    except ValueError as e:
        raise click.BadParameter(str(e))

    _run(app, lambda: app.add_device(device))


@cli.command("import-csv")
@click.option("--device-id", required=True, help="MAC address of the device the export belongs to")
@click.option("--file", "file_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path), help="CSV export")
@click.pass_obj
def import_csv_command(app: SwitchBotCLI, device_id, file_path):
    """Import a SwitchBot app CSV export."""
    _run(app, lambda: app.import_csv(device_id, file_path))


if __name__ == "__main__":
    cli()
