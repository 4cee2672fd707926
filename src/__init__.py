"""
SwitchBot BLE Ingester - minute-resolution telemetry from BLE advertisements.

A Python service that listens to SwitchBot temperature, humidity, CO2 and
light sensors via Bluetooth Low Energy (BLE), keeps the reading closest to
each minute boundary, and stores it idempotently in InfluxDB.

Features:
- Bit-exact decoding of SwitchBot and RATOC Systems advertisements
- One reading per device per minute with closest-to-boundary selection
- Idempotent InfluxDB writes with retry and exponential backoff
- Device catalog stored alongside the measurements
- Historical import of SwitchBot app CSV exports
- Performance monitoring and logging
- Configuration management with environment variables
"""

__version__ = "1.0.0"
__author__ = "SwitchBot Ingester Team"
__description__ = "BLE telemetry ingestion service for SwitchBot sensors"

# Package imports for convenience
from .utils.config import Config
from .utils.logging import ProductionLogger, PerformanceMonitor
from .devices.schema import Device, DeviceType
from .devices.registry import DeviceRegistry
from .ble.codecs import DecodedMeasurement, PowerMeasurement, DecodeError
from .ble.scanner import SwitchBotBLEScanner, RawAdvertisement
from .ingest.dedup import DedupBuffer, BucketedReading
from .ingest.flush import FlushScheduler
from .influxdb.client import SwitchBotInfluxDBClient, Measurement
from .service.daemon import IngestionService

__all__ = [
    "Config",
    "ProductionLogger",
    "PerformanceMonitor",
    "Device",
    "DeviceType",
    "DeviceRegistry",
    "DecodedMeasurement",
    "PowerMeasurement",
    "DecodeError",
    "SwitchBotBLEScanner",
    "RawAdvertisement",
    "DedupBuffer",
    "BucketedReading",
    "FlushScheduler",
    "SwitchBotInfluxDBClient",
    "Measurement",
    "IngestionService",
]
