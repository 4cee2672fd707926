"""
InfluxDB sink for SwitchBot measurements and the device catalog.

Measurements are written as ``switchbot_measurements`` points tagged with
``device_id`` and timestamped with the minute bucket at second precision.
InfluxDB would replace a point written again with the same measurement, tag
set and timestamp, so each batch is first checked against the stored
(device, minute) pairs and only new minutes are written. A stored
measurement is never changed and replaying a batch writes nothing.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar, Union

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.exceptions import InfluxDBError as ClientInfluxDBError
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

from ..devices.schema import Device
from ..ingest.dedup import BucketedReading
from ..utils.config import Config
from ..utils.logging import PerformanceMonitor, ProductionLogger


MEASUREMENTS_MEASUREMENT = "switchbot_measurements"
DEVICES_MEASUREMENT = "switchbot_devices"

# Errors worth retrying; anything else fails the operation immediately
TRANSIENT_ERRORS = (ClientInfluxDBError, ApiException, OSError)

T = TypeVar("T")


@dataclass(frozen=True)
class Measurement:
    """One persisted reading per device per minute."""
    device_id: str
    measured_at: datetime
    temperature_celsius: float
    humidity_percent: int
    co2_ppm: Optional[int] = None
    light_level: Optional[int] = None

    @classmethod
    def from_bucketed(cls, device_id: str, reading: BucketedReading) -> 'Measurement':
        """Build the persisted row; the timestamp is the bucket, not the observation."""
        m = reading.measurement
        return cls(
            device_id=device_id,
            measured_at=reading.bucket,
            temperature_celsius=m.temperature_celsius,
            humidity_percent=m.humidity_percent,
            co2_ppm=m.co2_ppm,
            light_level=m.light_level,
        )


@dataclass
class WriteStats:
    points_written: int = 0
    points_failed: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    last_write_time: Optional[datetime] = None
    total_write_time: float = 0.0

    @property
    def average_write_time(self) -> float:
        return self.total_write_time / self.batches_sent if self.batches_sent else 0.0


class InfluxDBError(Exception):
    """Base exception for sink operations."""
    pass


class InfluxDBConnectionError(InfluxDBError):
    """The server is unreachable or the client is not connected."""
    pass


class InfluxDBQueryError(InfluxDBError):
    """A Flux query failed."""
    pass


def measurement_to_point(measurement: Measurement) -> Point:
    point = (
        Point(MEASUREMENTS_MEASUREMENT)
        .tag("device_id", measurement.device_id)
        .field("temperature_celsius", float(measurement.temperature_celsius))
        .field("humidity_percent", int(measurement.humidity_percent))
    )
    if measurement.co2_ppm is not None:
        point = point.field("co2_ppm", int(measurement.co2_ppm))
    if measurement.light_level is not None:
        point = point.field("light_level", int(measurement.light_level))
    return point.time(measurement.measured_at, WritePrecision.S)


def device_to_point(device: Device, timestamp: Optional[datetime] = None) -> Point:
    return (
        Point(DEVICES_MEASUREMENT)
        .tag("device_id", device.address)
        .field("type", device.type.value)
        .field("name", device.name)
        .field("sort_order", int(device.sort_order))
        .time(timestamp or datetime.now(timezone.utc), WritePrecision.S)
    )


class SwitchBotInfluxDBClient:
    """
    Async facade over the synchronous influxdb-client API.

    Connection and writes are retried with exponential backoff
    (``retry_delay * base ** attempt``). Writes report failure by returning
    False so the caller can keep the batch and try again later.
    """

    def __init__(self, config: Config, logger: Union[ProductionLogger, logging.Logger],
                 performance_monitor: PerformanceMonitor):
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.url = config.influxdb_url
        self.org = config.influxdb_org
        self.bucket = config.influxdb_bucket

        self.retry_attempts = max(1, config.influxdb_retry_attempts)
        self.retry_delay = config.influxdb_retry_delay
        self.retry_exponential_base = config.influxdb_retry_exponential_base

        self._client: Optional[InfluxDBClient] = None
        self._write_api = None
        self._query_api = None
        self._stats = WriteStats()
        self._connection_errors = 0

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (self.retry_exponential_base ** attempt)

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[T]],
                          retry_on=TRANSIENT_ERRORS) -> T:
        """Run ``operation`` up to ``retry_attempts`` times, re-raising the last error."""
        attempt = 0
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt + 1 >= self.retry_attempts:
                    raise
                delay = self._backoff(attempt)
                self.logger.warning(f"{description} attempt {attempt + 1} failed: {e}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                attempt += 1

    async def connect(self) -> bool:
        """
        Open the client and verify the server answers ``ping``.

        Raises:
            InfluxDBConnectionError: If every attempt fails
        """
        async def open_and_ping():
            client = InfluxDBClient(
                url=self.url,
                token=self.config.influxdb_token,
                org=self.org,
                timeout=self.config.influxdb_timeout * 1000,
                verify_ssl=self.config.influxdb_verify_ssl,
                enable_gzip=self.config.influxdb_enable_gzip,
            )
            try:
                if not client.ping():
                    raise OSError(f"no answer to ping from {self.url}")
            except Exception:
                self._connection_errors += 1
                client.close()
                raise
            return client

        try:
            self._client = await self._with_retry("Connection", open_and_ping, retry_on=Exception)
        except Exception as e:
            raise InfluxDBConnectionError(
                f"Failed to connect to {self.url} after {self.retry_attempts} attempts: {e}"
            ) from e

        self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
        self._query_api = self._client.query_api()
        self.logger.info(f"Connected to InfluxDB at {self.url} (bucket {self.bucket})")
        return True

    async def disconnect(self):
        if self._client is None:
            return
        try:
            self._client.close()
        except Exception as e:
            self.logger.debug(f"Error closing InfluxDB client: {e}")
        finally:
            self._client = None
            self._write_api = None
            self._query_api = None
        self.logger.info("Disconnected from InfluxDB")

    def is_connected(self) -> bool:
        return self._client is not None

    def _require_connection(self):
        if self._client is None:
            raise InfluxDBConnectionError("Not connected to InfluxDB")

    async def _write_points(self, points: List[Point]) -> bool:
        if not points:
            return True

        async def write():
            self._write_api.write(bucket=self.bucket, org=self.org, record=points,
                                  write_precision=WritePrecision.S)

        started = time.perf_counter()
        try:
            await self._with_retry("Write", write)
        except Exception as e:
            self._stats.points_failed += len(points)
            self._stats.batches_failed += 1
            self.performance_monitor.log_influxdb_write(0.0, len(points), False)
            self.logger.error(f"Failed to write {len(points)} points: {e}")
            return False

        elapsed = time.perf_counter() - started
        self._stats.points_written += len(points)
        self._stats.batches_sent += 1
        self._stats.total_write_time += elapsed
        self._stats.last_write_time = datetime.now(timezone.utc)
        self.performance_monitor.log_influxdb_write(elapsed, len(points), True)
        self.logger.debug(f"Wrote {len(points)} points in {elapsed:.3f}s")
        return True

    async def _stored_keys(self, measurements: List[Measurement]) -> Set[Tuple[str, int]]:
        """(device_id, epoch second) pairs already stored for the batch's devices and time span."""
        device_ids = sorted({m.device_id for m in measurements})
        instants = [m.measured_at for m in measurements]
        device_set = ", ".join(f'"{device_id}"' for device_id in device_ids)
        flux_query = f'''
        from(bucket: "{self.bucket}")
          |> range(start: {_rfc3339(min(instants))}, stop: {_rfc3339(max(instants) + timedelta(seconds=1))})
          |> filter(fn: (r) => r["_measurement"] == "{MEASUREMENTS_MEASUREMENT}")
          |> filter(fn: (r) => r["_field"] == "temperature_celsius")
          |> filter(fn: (r) => contains(value: r["device_id"], set: [{device_set}]))
          |> keep(columns: ["device_id", "_time"])
        '''

        async def lookup():
            return self._query_api.query(flux_query, org=self.org)

        tables = await self._with_retry("Existence check", lookup)
        return {
            (record.values["device_id"], _epoch_seconds(record.values["_time"]))
            for table in tables for record in table.records
        }

    async def write_measurements(self, measurements: Iterable[Measurement]) -> bool:
        """
        Insert a batch of measurements, leaving already stored minutes untouched.

        A (device, minute) that is already stored, or that appears earlier in
        the same batch, is skipped, so the first stored values always win.

        Returns:
            bool: True if every new row was stored

        Raises:
            InfluxDBConnectionError: If not connected
        """
        self._require_connection()
        batch = list(measurements)
        if not batch:
            return True

        try:
            seen = await self._stored_keys(batch)
        except Exception as e:
            self._stats.points_failed += len(batch)
            self._stats.batches_failed += 1
            self.logger.error(f"Could not check {len(batch)} measurements against stored rows: {e}")
            return False

        new_rows = []
        for m in batch:
            key = (m.device_id, _epoch_seconds(m.measured_at))
            if key not in seen:
                seen.add(key)
                new_rows.append(m)

        skipped = len(batch) - len(new_rows)
        if skipped:
            self.logger.debug(f"Skipping {skipped} measurements already stored")
        return await self._write_points([measurement_to_point(m) for m in new_rows])

    async def add_device(self, device: Device) -> bool:
        """Store a catalog row; a later row for the same address supersedes it."""
        self._require_connection()
        stored = await self._write_points([device_to_point(device)])
        if stored:
            self.logger.info(f"Stored device {device.address} ({device.type.value}, {device.name})")
        return stored

    async def query(self, flux_query: str) -> List[Dict[str, Any]]:
        """
        Run a Flux query and flatten the result tables into record dicts.

        Raises:
            InfluxDBConnectionError: If not connected
            InfluxDBQueryError: If the query fails
        """
        self._require_connection()
        try:
            tables = self._query_api.query(flux_query, org=self.org)
        except Exception as e:
            self.logger.error(f"Query failed: {e}")
            raise InfluxDBQueryError(f"Query failed: {e}") from e
        return [record.values for table in tables for record in table.records]

    async def load_devices(self) -> List[Dict[str, Any]]:
        """Latest catalog row per address, as dicts accepted by ``Device``."""
        flux_query = f'''
        from(bucket: "{self.bucket}")
          |> range(start: 0)
          |> filter(fn: (r) => r["_measurement"] == "{DEVICES_MEASUREMENT}")
          |> last()
          |> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")
        '''
        rows = [
            {
                "address": record.get("device_id"),
                "type": record.get("type"),
                "name": record.get("name"),
                "sort_order": record.get("sort_order"),
            }
            for record in await self.query(flux_query)
        ]
        self.logger.debug(f"Loaded {len(rows)} device catalog rows")
        return rows

    async def get_measurements(self, device_id: str, start_time: datetime,
                               end_time: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Stored minutes for one device, oldest first."""
        end_time = end_time or datetime.now(timezone.utc)
        flux_query = f'''
        from(bucket: "{self.bucket}")
          |> range(start: {_rfc3339(start_time)}, stop: {_rfc3339(end_time)})
          |> filter(fn: (r) => r["_measurement"] == "{MEASUREMENTS_MEASUREMENT}")
          |> filter(fn: (r) => r["device_id"] == "{device_id}")
          |> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")
          |> sort(columns: ["_time"])
        '''
        return await self.query(flux_query)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected(),
            "points_written": self._stats.points_written,
            "points_failed": self._stats.points_failed,
            "batches_sent": self._stats.batches_sent,
            "batches_failed": self._stats.batches_failed,
            "last_write_time": self._stats.last_write_time,
            "average_write_time": self._stats.average_write_time,
            "connection_errors": self._connection_errors,
        }


def _rfc3339(instant: datetime) -> str:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _epoch_seconds(instant: datetime) -> int:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return int(instant.timestamp())
