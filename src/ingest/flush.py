"""
Periodic flush of final dedup buckets to the persistent sink.
"""

import asyncio
import traceback
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .dedup import BucketedReading, BufferLockError, DedupBuffer
from ..influxdb.client import Measurement
from ..utils.logging import ProductionLogger, PerformanceMonitor


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlushScheduler:
    """
    Drains final buckets every ``interval`` seconds and writes them to the sink.

    Readings from a failed write are handed back to the buffer and retried
    on the next tick. If the buffer lock cannot be taken for that, the
    scheduler holds them itself and sends them first on the next tick.
    """

    def __init__(self, buffer: DedupBuffer, sink, interval: float,
                 logger: ProductionLogger, performance_monitor: PerformanceMonitor,
                 clock: Callable[[], datetime] = _utcnow):
        self.buffer = buffer
        self.sink = sink
        self.interval = interval
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        # Failed readings the buffer could not take back; sent first next tick
        self._retained: Dict[str, List[BucketedReading]] = {}
        self.consecutive_failures = 0
        self.rows_written = 0

    def retained_count(self) -> int:
        return sum(len(readings) for readings in self._retained.values())

    async def flush_once(self, now: Optional[datetime] = None) -> int:
        """
        Run a single flush tick.

        Args:
            now: Reference time (defaults to the scheduler clock)

        Returns:
            int: Number of rows written
        """
        now = now or self.clock()

        try:
            drained = self.buffer.drain_final(now)
        except BufferLockError as e:
            if not self._retained:
                self.logger.warning(f"Skipping flush tick: {e}")
                return 0
            self.logger.warning(f"Buffer locked, sending {self.retained_count()} retained readings only: {e}")
            drained = {}

        drained = _merge(self._retained, drained)
        self._retained = {}
        if not drained:
            return 0

        rows = _to_measurements(drained)

        try:
            with self.performance_monitor.measure_time("flush"):
                success = await self.sink.write_measurements(rows)
        except Exception as e:
            self.logger.error(f"Flush write raised: {e}")
            self.logger.debug(traceback.format_exc())
            success = False

        if success:
            self.consecutive_failures = 0
            self.rows_written += len(rows)
            self.logger.info(f"Flushed {len(rows)} measurements for {len(drained)} devices")
            return len(rows)

        self.consecutive_failures += 1
        self._restore(drained)
        self.logger.error(
            f"Flush failed ({self.consecutive_failures} consecutive), "
            f"{len(rows)} measurements retained for retry"
        )
        return 0

    def _restore(self, drained: Dict[str, List[BucketedReading]]):
        try:
            self.buffer.restore(drained)
        except BufferLockError as e:
            self._retained = drained
            self.logger.warning(f"Holding {self.retained_count()} readings for the next tick: {e}")

    async def run(self):
        """Flush every interval until ``stop()`` is called."""
        self.logger.info(f"Flush loop started (interval: {self.interval}s)")
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.flush_once()
            except Exception as e:
                self.logger.error(f"Error in flush loop: {e}")
                self.logger.debug(traceback.format_exc())
        self.logger.info("Flush loop stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self._stop_event.set()
        if self._task and not self._task.done():
            await self._task


def _to_measurements(drained: Dict[str, List[BucketedReading]]) -> List[Measurement]:
    return [
        Measurement.from_bucketed(device_id, reading)
        for device_id, readings in drained.items()
        for reading in readings
    ]


def _merge(retained: Dict[str, List[BucketedReading]],
           drained: Dict[str, List[BucketedReading]]) -> Dict[str, List[BucketedReading]]:
    """Combine held-back and freshly drained readings; held-back ones win ties."""
    merged: Dict[str, Dict[datetime, BucketedReading]] = {}
    for source in (retained, drained):
        for device_id, readings in source.items():
            buckets = merged.setdefault(device_id, {})
            for reading in readings:
                current = buckets.get(reading.bucket)
                if current is None or reading.offset_seconds < current.offset_seconds:
                    buckets[reading.bucket] = reading
    return {
        device_id: [buckets[bucket] for bucket in sorted(buckets)]
        for device_id, buckets in merged.items()
    }
