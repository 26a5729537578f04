"""
Command line interface for ThermSmart sensors.
Provides listener, monitor and session commands using click and rich.
"""

import asyncio
import sys
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .. import __version__
from ..ble.device import ThermSmartDevice
from ..ble.errors import ThermSmartError
from ..ble.identity import DeviceIdentity, format_address, normalize_address, normalize_addresses
from ..ble.radio import BleakRadioAdapter, Peripheral
from ..ble.readings import Reading, ReadingType, SensorRole
from ..ble.scanner import collect_readings, start_device_scan, start_reading_scan, stop_scan
from ..ble.sensor import ThermSmartSensor
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor, ProductionLogger, get_component_logger, setup_logging

# Battery level below which a sensor is reported as low
LOW_BATTERY_LEVEL = 10


class CLIError(Exception):
    """Base exception for CLI operations."""
    pass


class ThermSmartCLI:
    """
    Wires configuration, logging and the BLE radio into the protocol core.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.config: Optional[Config] = None
        self.logger: Optional[ProductionLogger] = None
        self.performance_monitor: Optional[PerformanceMonitor] = None
        self.radio: Optional[BleakRadioAdapter] = None

    def _initialize_components(self):
        """Load configuration, set up logging and create the radio adapter."""
        try:
            self.config = Config()
            self.config.validate_configuration()

            self.logger = setup_logging(self.config)
            self.performance_monitor = PerformanceMonitor()
            self.radio = BleakRadioAdapter.from_config(self.config, logger=get_component_logger())

        except ConfigurationError as e:
            self.console.print(f"[red]Configuration Error: {e}[/red]")
            raise CLIError(f"Configuration error: {e}")

    def _session_options(self) -> dict:
        return {
            "command_timeout": self.config.ble_command_timeout,
            "scan_timeout": self.config.ble_scan_duration,
            "ready_timeout": self.config.ble_power_on_timeout,
            "performance_monitor": self.performance_monitor,
        }

    def _addresses(self, addresses: Iterable[str]):
        return normalize_addresses(addresses) if addresses else self.config.ble_addresses

    @staticmethod
    def format_reading(reading: Reading) -> Text:
        """Listener line: `[sensor-]type: value [symbol]`."""
        text = Text()
        if reading.sensor is not None:
            text.append(f"{reading.sensor.value}-")
        text.append(f"{reading.type.value}: ")
        text.append(str(reading.value), style="green")
        if reading.symbol:
            text.append(" ")
            text.append(reading.symbol, style="green")
        return text

    async def listen(self, addresses: Iterable[str], duration: Optional[float]):
        """Print readings as they arrive."""
        def on_reading(reading: Reading, identity: DeviceIdentity):
            self.console.print(self.format_reading(reading))

        self.console.print("Listening for readings...")
        session = await start_reading_scan(
            self.radio,
            on_reading,
            self._addresses(addresses),
            ready_timeout=self.config.ble_power_on_timeout,
            performance_monitor=self.performance_monitor
        )
        try:
            if duration is None:
                await session.wait()
            else:
                await asyncio.wait({session.completion}, timeout=duration)
                if not session.done:
                    await stop_scan(self.radio)
                await session.wait()
        finally:
            await session.cancel()

    def _readings_table(self, collected: List[Tuple[Reading, DeviceIdentity]]) -> Table:
        latest: Dict[DeviceIdentity, Dict[Tuple[ReadingType, Optional[SensorRole]], Reading]] = {}
        for reading, identity in collected:
            latest.setdefault(identity, {})[(reading.type, reading.sensor)] = reading

        table = Table(
            title=f"Readings at {datetime.now().strftime('%H:%M:%S')}",
            show_header=True,
            header_style="bold blue"
        )
        table.add_column("Sensor", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Indoor", style="red")
        table.add_column("Humidity", style="blue")
        table.add_column("Outdoor", style="red")
        table.add_column("Battery", style="magenta")

        def cell(values, key):
            reading = values.get(key)
            return f"{reading.value} {reading.symbol}" if reading else "N/A"

        for identity, values in latest.items():
            battery = values.get((ReadingType.BATTERY_LEVEL, None))
            battery_cell = cell(values, (ReadingType.BATTERY_LEVEL, None))
            if battery is not None and battery.value < LOW_BATTERY_LEVEL:
                battery_cell = f"[bold red]{battery_cell} (low)[/bold red]"

            table.add_row(
                format_address(identity.address),
                identity.name,
                cell(values, (ReadingType.TEMPERATURE, SensorRole.INDOOR)),
                cell(values, (ReadingType.HUMIDITY, SensorRole.INDOOR)),
                cell(values, (ReadingType.TEMPERATURE, SensorRole.OUTDOOR)),
                battery_cell
            )
        return table

    def _summary_line(self) -> str:
        summary = self.performance_monitor.get_performance_summary()
        scans = summary['ble_scans']
        return (
            f"[dim]Scans: {scans['successful']}/{scans['total']} successful, "
            f"avg {scans['avg_devices_found']:.1f} sensors per window, "
            f"uptime {summary['uptime_seconds']:.0f}s[/dim]"
        )

    async def monitor(self):
        """Alternate scan windows and idle intervals, printing the latest readings."""
        addresses = self.config.ble_addresses
        self.console.print(Panel.fit(
            f"[bold green]Monitoring[/bold green] - scan {self.config.ble_scan_duration}s, "
            f"idle {self.config.ble_scan_idle_interval}s\n"
            f"[dim]Sensors: {', '.join(sorted(addresses)) if addresses else 'all'}[/dim]",
            border_style="green"
        ))

        while True:
            try:
                collected = await collect_readings(
                    self.radio,
                    self.config.ble_scan_duration,
                    addresses,
                    performance_monitor=self.performance_monitor,
                    ready_timeout=self.config.ble_power_on_timeout
                )
            except ThermSmartError as e:
                self.console.print(f"[red]Scan failed: {e}[/red]")
            else:
                if collected:
                    self.console.print(self._readings_table(collected))
                else:
                    self.console.print("[yellow]No readings received[/yellow]")
            self.console.print(self._summary_line())

            await asyncio.sleep(self.config.ble_scan_idle_interval)

    async def devices(self, duration: float):
        """Show a table of discovered sensors."""
        self.console.print(f"[blue]Scanning for sensors for {duration} seconds...[/blue]")

        session = await start_device_scan(
            self.radio, addresses=self.config.ble_addresses, ready_timeout=self.config.ble_power_on_timeout
        )
        try:
            await asyncio.wait({session.completion}, timeout=duration)
            if not session.done:
                await stop_scan(self.radio)
            found: List[Peripheral] = await session.wait()
        finally:
            await session.cancel()

        if not found:
            self.console.print("[yellow]No sensors found[/yellow]")
            return

        table = Table(title="Discovered Sensors", show_header=True, header_style="bold green")
        table.add_column("Address", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("RSSI", style="yellow")

        for peripheral in found:
            identity = DeviceIdentity.from_peripheral(peripheral)
            table.add_row(
                format_address(peripheral.address),
                identity.name,
                f"{peripheral.rssi} dBm" if peripheral.rssi is not None else "N/A"
            )
        self.console.print(table)

    async def time(self, address: str, sync: bool):
        device = ThermSmartDevice(self.radio, normalize_address(address), **self._session_options())
        try:
            await device.connect()
            if sync:
                written = await device.sync_time()
                self.console.print(f"[green]Time of {device.name} set to {written.isoformat(' ')}[/green]")
            else:
                sensor_time = await device.read_time()
                drift = (sensor_time - datetime.now()).total_seconds()
                self.console.print(f"{device.name}: {sensor_time.isoformat(' ')} [dim](drift {drift:+.0f}s)[/dim]")
        finally:
            await device.disconnect()

    async def identify(self, address: str):
        device = ThermSmartDevice(self.radio, normalize_address(address), **self._session_options())
        try:
            await device.connect()
            await device.identify()
            self.console.print(f"[green]Identify sent to {device.name}[/green]")
        finally:
            await device.disconnect()

    async def poll(self, address: Optional[str]):
        """Read temperatures over a connection (sensors without advertised readings)."""
        sensor = ThermSmartSensor(
            self.radio, normalize_address(address) if address else None, **self._session_options()
        )
        try:
            indoor = await sensor.get_indoor_temperature()
            humidity = await sensor.get_relative_humidity()
            outdoor = await sensor.get_outdoor_temperature()
        finally:
            await sensor.disconnect()

        table = Table(title=f"Sensor {format_address(sensor.address)}", show_header=True, header_style="bold cyan")
        table.add_column("Reading", style="blue")
        table.add_column("Value", style="green")
        table.add_row("Indoor temperature", f"{indoor} °C")
        table.add_row("Relative humidity", f"{humidity} %")
        table.add_row("Outdoor temperature", f"{outdoor} °C")
        self.console.print(table)


def _run(operation):
    """Initialize the CLI, run an async operation and map errors to exit codes."""
    app = ThermSmartCLI()
    try:
        app._initialize_components()
        asyncio.run(operation(app))
    except CLIError:
        sys.exit(1)
    except ThermSmartError as e:
        app.console.print(f"[red]An error occurred: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        app.console.print("\n[yellow]Interrupted[/yellow]")


@click.group()
@click.version_option(version=__version__, prog_name="thermsmart")
def cli():
    """ThermSmart - BLE thermometer readings and sensor sessions."""
    pass


@cli.command()
@click.argument("addresses", nargs=-1)
@click.option("--duration", "-d", type=float, default=None, help="Stop after this many seconds")
def listen(addresses, duration):
    """Print readings from ADDRESSES (default: configured or all sensors)."""
    _run(lambda app: app.listen(addresses, duration))


@cli.command()
def monitor():
    """Periodically collect readings from configured sensors."""
    _run(lambda app: app.monitor())


@cli.command()
@click.option("--duration", "-d", type=float, default=10.0, help="Scan duration in seconds")
def devices(duration):
    """Discover sensors."""
    _run(lambda app: app.devices(duration))


@cli.command()
@click.argument("address")
@click.option("--sync", is_flag=True, help="Set the sensor clock to local time")
def time(address, sync):
    """Read (or sync) the clock of the sensor at ADDRESS."""
    _run(lambda app: app.time(address, sync))


@cli.command()
@click.argument("address")
def identify(address):
    """Make the sensor at ADDRESS identify itself."""
    _run(lambda app: app.identify(address))


@cli.command()
@click.argument("address", required=False)
def poll(address):
    """Poll temperatures over a connection from ADDRESS (default: first sensor found)."""
    _run(lambda app: app.poll(address))


if __name__ == "__main__":
    cli()
