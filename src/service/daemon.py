"""
Ingestion service for SwitchBot sensors.
Wires the BLE scanner, decoders, dedup buffer, flush loop and InfluxDB sink together.
"""

import asyncio
import logging
import signal
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..ble.codecs import DecodeError, decode_switchbot_advertisement, format_vendor_key
from ..ble.scanner import RawAdvertisement, ScannerError, SwitchBotBLEScanner
from ..devices.registry import DeviceRegistry, RegistryLoadError
from ..influxdb.client import InfluxDBError, SwitchBotInfluxDBClient
from ..ingest.dedup import BufferLockError, DedupBuffer
from ..ingest.flush import FlushScheduler
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor, ProductionLogger, setup_logging


@dataclass
class IngesterStats:
    """Ingestion statistics container."""
    start_time: datetime
    advertisements_received: int = 0
    unknown_devices: int = 0
    decode_errors: int = 0
    readings_accepted: int = 0
    readings_discarded: int = 0
    lock_timeouts: int = 0


class IngesterError(Exception):
    """Fatal ingestion service error."""
    pass


class IngestionService:
    """
    Long-running ingestion service.

    Two activities share the dedup buffer: the scanner's detection callback
    offers decoded readings, and the flush loop drains final buckets to the
    sink. Startup failures (configuration, sink, catalog, adapter) are fatal.
    """

    def __init__(self, config: Optional[Config] = None,
                 logger: Optional[ProductionLogger] = None,
                 performance_monitor: Optional[PerformanceMonitor] = None,
                 influxdb_client: Optional[SwitchBotInfluxDBClient] = None,
                 ble_scanner: Optional[SwitchBotBLEScanner] = None):
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.influxdb_client = influxdb_client
        self.ble_scanner = ble_scanner

        self.registry: Optional[DeviceRegistry] = None
        self.buffer: Optional[DedupBuffer] = None
        self.flush_scheduler: Optional[FlushScheduler] = None

        self._running = False
        self._shutdown_requested = False
        self._stats = IngesterStats(start_time=datetime.now())

    async def _initialize_components(self):
        """Initialize all service components. Any failure is fatal."""
        try:
            if self.config is None:
                self.config = Config()
            self.config.validate_configuration()

            if self.logger is None:
                self.logger = setup_logging(self.config)
            if self.performance_monitor is None:
                self.performance_monitor = PerformanceMonitor()

            if self.influxdb_client is None:
                self.influxdb_client = SwitchBotInfluxDBClient(
                    self.config,
                    self.logger.for_component("influxdb"),
                    self.performance_monitor
                )
            await self.influxdb_client.connect()

            self.registry = await DeviceRegistry.load(self.influxdb_client, self.logger)
            if len(self.registry) == 0:
                self.logger.warning("Device catalog is empty, no advertisements will be stored")

            self.buffer = DedupBuffer(
                tolerance_seconds=self.config.dedup_tolerance_seconds,
                lock_timeout=self.config.buffer_lock_timeout
            )
            self.flush_scheduler = FlushScheduler(
                self.buffer,
                self.influxdb_client,
                self.config.flush_interval,
                self.logger,
                self.performance_monitor
            )

            if self.ble_scanner is None:
                self.ble_scanner = SwitchBotBLEScanner(
                    self.config,
                    self.logger.for_component("ble"),
                    self.performance_monitor
                )
            self.ble_scanner.add_callback(self.handle_advertisement)

            self.logger.info("Ingester components initialized successfully")

        except (ConfigurationError, InfluxDBError, RegistryLoadError) as e:
            if self.logger:
                self.logger.critical(f"Component initialization failed: {e}")
            raise IngesterError(f"Initialization failed: {e}") from e

    def handle_advertisement(self, advertisement: RawAdvertisement):
        """
        Decode an advertisement from a catalogued device and offer it to the buffer.

        Unknown addresses, decode failures and lock timeouts drop the
        advertisement; none of them stop the service.
        """
        self._stats.advertisements_received += 1

        device = self.registry.lookup(advertisement.address) if self.registry else None
        if device is None:
            self._stats.unknown_devices += 1
            self.logger.debug(f"Ignoring advertisement from unknown device {advertisement.address}")
            return

        try:
            measurement = decode_switchbot_advertisement(
                advertisement.manufacturer_data,
                advertisement.service_data,
                device.type
            )
        except DecodeError as e:
            self._stats.decode_errors += 1
            self.performance_monitor.record_metric("decode_errors", 1)
            self.logger.warning(
                f"Failed to decode advertisement from {device.address} ({device.name}): {e} "
                f"[manufacturer data lengths: {_payload_lengths(advertisement.manufacturer_data)}, "
                f"service data lengths: {_payload_lengths(advertisement.service_data)}]"
            )
            return

        try:
            accepted = self.buffer.offer(device.address, advertisement.observed_at, measurement)
        except BufferLockError as e:
            self._stats.lock_timeouts += 1
            self.logger.warning(f"Dropping reading from {device.address}: {e}")
            return

        if accepted:
            self._stats.readings_accepted += 1
            self.performance_monitor.record_metric("readings_accepted", 1)
            if self.logger.isEnabledFor(logging.DEBUG):
                self._log_reading(device, advertisement, measurement)
        else:
            self._stats.readings_discarded += 1

    def _log_reading(self, device, advertisement: RawAdvertisement, measurement):
        local_time = advertisement.observed_at.astimezone(self.config.timezone)
        self.logger.debug(
            f"{device.name} ({device.address}) at {local_time:%Y-%m-%d %H:%M:%S %Z}: "
            f"{measurement.temperature_celsius}°C, {measurement.humidity_percent}%"
            + (f", CO2 {measurement.co2_ppm}ppm" if measurement.co2_ppm is not None else "")
            + (f", light {measurement.light_level}" if measurement.light_level is not None else "")
        )

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            if self.logger:
                self.logger.info(f"Received {signal_name}, initiating graceful shutdown...")
            self._shutdown_requested = True

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    def request_shutdown(self):
        self._shutdown_requested = True

    async def start(self):
        """
        Start the service and run until shutdown is requested.

        Raises:
            IngesterError: If startup fails
        """
        if self._running:
            raise IngesterError("Ingester is already running")

        await self._initialize_components()

        self.logger.info("Starting SwitchBot BLE Ingester...")
        self._setup_signal_handlers()

        try:
            await self.ble_scanner.start_continuous_scan()
        except ScannerError as e:
            self.logger.critical(f"BLE scanner failed to start: {e}")
            await self.influxdb_client.disconnect()
            raise IngesterError(f"Startup failed: {e}") from e

        self._running = True
        self.flush_scheduler.start()
        self.logger.info("SwitchBot BLE Ingester started successfully")

        while self._running and not self._shutdown_requested:
            await asyncio.sleep(1)

        await self.stop()

    async def stop(self):
        """Stop the service and make one final flush of already-final buckets."""
        if not self._running:
            return

        self.logger.info("Stopping SwitchBot BLE Ingester...")
        self._running = False

        if self.ble_scanner:
            await self.ble_scanner.cleanup()

        if self.flush_scheduler:
            await self.flush_scheduler.stop()
            written = await self.flush_scheduler.flush_once()
            self.logger.info(f"Final flush wrote {written} measurements")

        if self.influxdb_client:
            await self.influxdb_client.disconnect()

        self.logger.info(f"SwitchBot BLE Ingester stopped. Statistics: {self.get_status()['stats']}")

    def get_status(self) -> Dict[str, Any]:
        """Get current service status."""
        return {
            "running": self._running,
            "shutdown_requested": self._shutdown_requested,
            "stats": asdict(self._stats),
            "pending_readings": self.buffer.pending_count() if self.buffer else 0,
            "retained_readings": self.flush_scheduler.retained_count() if self.flush_scheduler else 0,
            "devices": len(self.registry) if self.registry else 0,
            "consecutive_flush_failures": (
                self.flush_scheduler.consecutive_failures if self.flush_scheduler else 0
            ),
        }

    def get_statistics(self) -> IngesterStats:
        return self._stats


def _payload_lengths(payloads: Dict) -> str:
    if not payloads:
        return "none"
    return ", ".join(f"{format_vendor_key(key)}={len(value)}" for key, value in payloads.items())


async def run_ingester(config: Optional[Config] = None) -> int:
    """
    Run the ingestion service from the command line.

    Returns:
        int: Process exit status
    """
    service = IngestionService(config=config)

    try:
        await service.start()
    except IngesterError as e:
        print(f"Ingester startup failed: {e}")
        return 1
    return 0
