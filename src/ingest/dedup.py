"""
Minute-bucketed deduplication buffer.

Sensors advertise every few seconds; only one reading per device per minute
is persisted. Each observation is assigned to its nearest minute boundary and
the observation closest to that boundary wins.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from ..ble.codecs import DecodedMeasurement


DEFAULT_TOLERANCE_SECONDS = 20.0
DEFAULT_LOCK_TIMEOUT = 5.0


class BufferLockError(Exception):
    """Raised when the buffer lock cannot be acquired within the timeout."""
    pass


def round_to_nearest_minute(instant: datetime) -> datetime:
    """
    Round to the nearest minute boundary. Exactly half a minute rounds up.

    Args:
        instant: Timezone-aware datetime

    Returns:
        datetime: Minute boundary in the same timezone
    """
    floor = instant.replace(second=0, microsecond=0)
    if instant - floor >= timedelta(seconds=30):
        return floor + timedelta(minutes=1)
    return floor


@dataclass(frozen=True)
class BucketedReading:
    """The best candidate seen so far for one (device, minute)."""
    bucket: datetime
    observed_at: datetime
    measurement: DecodedMeasurement

    @property
    def offset_seconds(self) -> float:
        return abs((self.observed_at - self.bucket).total_seconds())


class DedupBuffer:
    """
    Per-device map from minute boundary to the reading closest to it.

    All access goes through ``offer``, ``drain_final`` and ``restore``; each
    runs under a single lock acquired with a timeout.
    """

    def __init__(self, tolerance_seconds: float = DEFAULT_TOLERANCE_SECONDS,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        if not 0 < tolerance_seconds < 30:
            raise ValueError("tolerance_seconds must be between 0 and 30 (exclusive)")
        self.tolerance = timedelta(seconds=tolerance_seconds)
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._buckets: Dict[str, Dict[datetime, BucketedReading]] = {}

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise BufferLockError(f"Could not acquire dedup buffer lock within {self.lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def offer(self, device_id: str, observed_at: datetime, measurement: DecodedMeasurement) -> bool:
        """
        Offer an observation for its minute bucket.

        Args:
            device_id: Device address
            observed_at: Observation time (timezone-aware)
            measurement: Decoded reading

        Returns:
            bool: True if the observation is now the bucket's reading

        Raises:
            BufferLockError: If the lock times out
        """
        bucket = round_to_nearest_minute(observed_at)
        candidate = BucketedReading(bucket=bucket, observed_at=observed_at, measurement=measurement)
        if candidate.offset_seconds > self.tolerance.total_seconds():
            return False

        with self._locked():
            device_buckets = self._buckets.setdefault(device_id, {})
            existing = device_buckets.get(bucket)
            # Ties keep the first arrival
            if existing is not None and candidate.offset_seconds >= existing.offset_seconds:
                return False
            device_buckets[bucket] = candidate
            return True

    def drain_final(self, now: datetime) -> Dict[str, List[BucketedReading]]:
        """
        Remove and return every bucket that can no longer receive candidates.

        A bucket is final once ``bucket < now - tolerance``.

        Args:
            now: Current time (timezone-aware)

        Returns:
            Dict[str, List[BucketedReading]]: Final readings per device, oldest first

        Raises:
            BufferLockError: If the lock times out
        """
        cutoff = now - self.tolerance
        drained: Dict[str, List[BucketedReading]] = {}

        with self._locked():
            for device_id in list(self._buckets):
                device_buckets = self._buckets[device_id]
                final = sorted(bucket for bucket in device_buckets if bucket < cutoff)
                if not final:
                    continue
                drained[device_id] = [device_buckets.pop(bucket) for bucket in final]
                if not device_buckets:
                    del self._buckets[device_id]

        return drained

    def restore(self, readings: Dict[str, Iterable[BucketedReading]]) -> int:
        """
        Hand back readings whose persistence failed.

        A restored reading replaces a live entry only when its offset is
        equal or smaller, since it arrived first.

        Args:
            readings: Readings per device, as returned by ``drain_final``

        Returns:
            int: Number of readings reinserted

        Raises:
            BufferLockError: If the lock times out
        """
        restored = 0
        with self._locked():
            for device_id, device_readings in readings.items():
                device_buckets = self._buckets.setdefault(device_id, {})
                for reading in device_readings:
                    existing = device_buckets.get(reading.bucket)
                    if existing is not None and existing.offset_seconds < reading.offset_seconds:
                        continue
                    device_buckets[reading.bucket] = reading
                    restored += 1
                if not device_buckets:
                    del self._buckets[device_id]
        return restored

    def get(self, device_id: str, bucket: datetime) -> Optional[BucketedReading]:
        with self._locked():
            return self._buckets.get(device_id, {}).get(bucket)

    def pending_count(self) -> int:
        with self._locked():
            return sum(len(device_buckets) for device_buckets in self._buckets.values())

    def __len__(self) -> int:
        return self.pending_count()
