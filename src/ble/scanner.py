"""
Bluetooth Low Energy scanner for SwitchBot sensors.
Listens to connectionless advertisements and hands raw snapshots to registered callbacks.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from ..utils.config import Config
from ..utils.logging import ProductionLogger, PerformanceMonitor


@dataclass
class RawAdvertisement:
    """Snapshot of one BLE advertisement."""
    address: str
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)
    service_data: Dict[str, bytes] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rssi: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.manufacturer_data and not self.service_data


class ScannerError(Exception):
    """Base exception for scanner operations."""
    pass


class ScannerInitError(ScannerError):
    """Exception for scanner initialization errors."""
    pass


class ScannerOperationError(ScannerError):
    """Exception for scanner operation errors."""
    pass


def to_raw_advertisement(device: BLEDevice, advertisement_data: AdvertisementData,
                         observed_at: Optional[datetime] = None) -> RawAdvertisement:
    """
    Convert bleak's advertisement objects into a RawAdvertisement.

    Args:
        device: Detected BLE device
        advertisement_data: Advertisement data from bleak
        observed_at: Observation time (defaults to now, UTC)

    Returns:
        RawAdvertisement: Snapshot with normalized keys
    """
    return RawAdvertisement(
        address=device.address.upper(),
        manufacturer_data={
            int(company_id): bytes(payload)
            for company_id, payload in (advertisement_data.manufacturer_data or {}).items()
        },
        service_data={
            str(uuid).lower(): bytes(payload)
            for uuid, payload in (advertisement_data.service_data or {}).items()
        },
        observed_at=observed_at or datetime.now(timezone.utc),
        rssi=advertisement_data.rssi,
    )


class SwitchBotBLEScanner:
    """
    Passive BLE listener built on bleak's detection callback.

    Every advertisement with a payload becomes a RawAdvertisement and is
    passed to each registered callback in turn. A failing callback is logged
    and does not affect the others.
    """

    def __init__(self, config: Config, logger: Union[ProductionLogger, logging.Logger],
                 performance_monitor: PerformanceMonitor):
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.adapter = config.ble_adapter

        self._bleak: Optional[BleakScanner] = None
        self._listening = False
        self._listen_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[RawAdvertisement], None]] = []

        self._received = 0
        self._skipped = 0
        self._errors = 0
        self._last_seen: Optional[datetime] = None

    def add_callback(self, callback: Callable[[RawAdvertisement], None]):
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[RawAdvertisement], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, advertisement: RawAdvertisement):
        for callback in list(self._callbacks):
            try:
                callback(advertisement)
            except Exception as e:
                self._errors += 1
                name = getattr(callback, '__name__', repr(callback))
                self.logger.error(f"Callback {name} failed for {advertisement.address}: {e}")
                self.logger.debug(traceback.format_exc())

    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData):
        try:
            advertisement = to_raw_advertisement(device, advertisement_data)
        except Exception as e:
            self._errors += 1
            self.performance_monitor.record_metric("ble_scan_errors", 1)
            self.logger.error(f"Unreadable advertisement from {getattr(device, 'address', '?')}: {e}")
            return
        self.handle_advertisement(advertisement)

    def handle_advertisement(self, advertisement: RawAdvertisement):
        """Dispatch a snapshot to callbacks, skipping advertisements with no payload."""
        if advertisement.is_empty:
            self._skipped += 1
            self.logger.debug(f"Advertisement from {advertisement.address} has no payload, skipping")
            return

        self._received += 1
        self._last_seen = advertisement.observed_at
        self.performance_monitor.record_metric("advertisements_received", 1)
        self._notify_callbacks(advertisement)

    def _create_scanner(self) -> BleakScanner:
        kwargs = {"detection_callback": self._detection_callback}
        if self.adapter and self.adapter != "auto":
            kwargs["adapter"] = self.adapter
        return BleakScanner(**kwargs)

    async def _start_bleak(self):
        self._bleak = self._create_scanner()
        await self._bleak.start()
        self._listening = True

    async def _stop_bleak(self):
        if self._bleak is not None and self._listening:
            try:
                await self._bleak.stop()
            except Exception as e:
                self.logger.warning(f"Error stopping BLE scanner: {e}")
        self._listening = False

    async def scan_once(self, duration: float):
        """
        Listen for ``duration`` seconds, then stop.

        Raises:
            ScannerOperationError: If the adapter fails
        """
        self.logger.info(f"Listening for advertisements for {duration}s (adapter: {self.adapter})")
        with self.performance_monitor.measure_time("ble_scan"):
            try:
                await self._start_bleak()
                await asyncio.sleep(duration)
            except Exception as e:
                self._errors += 1
                self.performance_monitor.record_metric("ble_scan_errors", 1)
                self.logger.error(f"BLE scan failed: {e}")
                raise ScannerOperationError(f"BLE scan failed: {e}") from e
            finally:
                await self._stop_bleak()
        self.logger.info(f"BLE scan finished, {self._received} advertisements received")

    async def start_continuous_scan(self):
        """
        Start listening until ``stop_continuous_scan()``.

        Raises:
            ScannerInitError: If the adapter cannot be started
        """
        if self._listen_task is not None and not self._listen_task.done():
            self.logger.warning("Continuous scan already running")
            return

        try:
            await self._start_bleak()
        except Exception as e:
            self._bleak = None
            self._listening = False
            raise ScannerInitError(f"Failed to start BLE scanner: {e}") from e

        self._stop_event = asyncio.Event()
        self._listen_task = asyncio.create_task(self._listen_until_stopped(self._stop_event))
        self.logger.info(f"Continuous BLE listening started (adapter: {self.adapter})")

    async def _listen_until_stopped(self, stop_event: asyncio.Event, report_every: float = 30.0):
        # Advertisements arrive through the detection callback; this task only reports liveness
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=report_every)
            except asyncio.TimeoutError:
                self.logger.debug(f"Listening: {self._received} received, {self._skipped} skipped")

    async def stop_continuous_scan(self):
        if self._stop_event is not None:
            self._stop_event.set()
        if self._listen_task is not None:
            await self._listen_task
            self._listen_task = None
            self.logger.info("Continuous BLE listening stopped")
        await self._stop_bleak()

    def is_scanning(self) -> bool:
        return self._listening

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "advertisement_count": self._received,
            "skipped_count": self._skipped,
            "error_count": self._errors,
            "last_advertisement_time": self._last_seen,
            "is_scanning": self._listening,
            "callbacks_registered": len(self._callbacks),
        }

    async def cleanup(self):
        await self.stop_continuous_scan()
        self._bleak = None
        self._callbacks.clear()
        self.logger.debug("BLE scanner released")
