"""
Historical import of SwitchBot app CSV exports.

The export layout is detected from the header line:
- a ``Co2`` column means temperature, humidity and CO2 (column 3)
- a ``Light_Value`` column means temperature, humidity and light level (column 6)
- anything else is temperature and humidity only

Column 0 is a local ``%Y-%m-%d %H:%M`` timestamp in the configured timezone.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Union

import pandas as pd
import pytz

from ..ble.codecs import HUMIDITY_MAX, LIGHT_LEVEL_MAX
from ..influxdb.client import Measurement
from ..devices.schema import normalize_mac_address


MEASURED_AT_INDEX = 0
TEMPERATURE_CELSIUS_INDEX = 1
HUMIDITY_PERCENT_INDEX = 2
CO2_PPM_INDEX = 3
LIGHT_LEVEL_INDEX = 6

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"
DEFAULT_BATCH_SIZE = 1000


class CsvFormat(Enum):
    TEMPERATURE_HUMIDITY = "temperature_humidity"
    TEMPERATURE_HUMIDITY_CO2 = "temperature_humidity_co2"
    TEMPERATURE_HUMIDITY_LIGHT_LEVEL = "temperature_humidity_light_level"


class CsvImportError(Exception):
    """Raised when a CSV file cannot be read or a row cannot be parsed."""

    def __init__(self, message: str, row_number: Optional[int] = None):
        if row_number is not None:
            message = f"row {row_number}: {message}"
        super().__init__(message)
        self.row_number = row_number


def detect_format(header: str) -> CsvFormat:
    if "Co2" in header:
        return CsvFormat.TEMPERATURE_HUMIDITY_CO2
    if "Light_Value" in header:
        return CsvFormat.TEMPERATURE_HUMIDITY_LIGHT_LEVEL
    return CsvFormat.TEMPERATURE_HUMIDITY


def localize_timestamp(value: str, tz: pytz.BaseTzInfo) -> datetime:
    """
    Parse a local timestamp and convert it to UTC.

    Ambiguous local times (DST fall-back) resolve to the earlier instant.
    Non-existent local times (DST spring-forward) are rejected.

    Raises:
        ValueError: If the value cannot be parsed or does not exist locally
    """
    naive = datetime.strptime(value.strip(), TIMESTAMP_FORMAT)
    try:
        local = tz.localize(naive, is_dst=None)
    except pytz.exceptions.AmbiguousTimeError:
        # The DST reading of a repeated hour is the earlier one
        local = tz.localize(naive, is_dst=True)
    except pytz.exceptions.NonExistentTimeError:
        raise ValueError(f"invalid timestamp: {value} does not exist in {tz.zone}")
    return local.astimezone(timezone.utc)


def _field(row: List[str], index: int, name: str) -> str:
    try:
        value = row[index]
    except IndexError:
        raise ValueError(f"missing {name} column")
    if value is None or pd.isna(value):
        raise ValueError(f"missing {name} value")
    return str(value).strip()


def _check_range(name: str, value: int, upper: int):
    if not 0 <= value <= upper:
        raise ValueError(f"{name} {value} out of range [0, {upper}]")


def parse_row(row: List[str], csv_format: CsvFormat, device_id: str,
              tz: pytz.BaseTzInfo) -> Measurement:
    """
    Parse one CSV row into a Measurement.

    Raises:
        ValueError: If any required field is missing, malformed or out of range
    """
    raw_timestamp = _field(row, MEASURED_AT_INDEX, "timestamp")
    try:
        measured_at = localize_timestamp(raw_timestamp, tz)
    except ValueError as e:
        raise ValueError(f"failed to parse timestamp {raw_timestamp!r}: {e}")

    raw_temperature = _field(row, TEMPERATURE_CELSIUS_INDEX, "temperature")
    try:
        temperature_celsius = float(raw_temperature)
    except ValueError:
        raise ValueError(f"failed to parse temperature: {raw_temperature!r}")

    raw_humidity = _field(row, HUMIDITY_PERCENT_INDEX, "humidity")
    try:
        humidity_percent = int(raw_humidity)
    except ValueError:
        raise ValueError(f"failed to parse humidity: {raw_humidity!r}")
    _check_range("humidity", humidity_percent, HUMIDITY_MAX)

    co2_ppm = None
    light_level = None

    if csv_format is CsvFormat.TEMPERATURE_HUMIDITY_CO2:
        raw_co2 = _field(row, CO2_PPM_INDEX, "CO2")
        try:
            co2_ppm = int(raw_co2)
        except ValueError:
            raise ValueError(f"failed to parse CO2: {raw_co2!r}")
    elif csv_format is CsvFormat.TEMPERATURE_HUMIDITY_LIGHT_LEVEL:
        raw_light = _field(row, LIGHT_LEVEL_INDEX, "light level")
        try:
            light_level = int(raw_light)
        except ValueError:
            raise ValueError(f"failed to parse light level: {raw_light!r}")
        _check_range("light level", light_level, LIGHT_LEVEL_MAX)

    return Measurement(
        device_id=device_id,
        measured_at=measured_at,
        temperature_celsius=temperature_celsius,
        humidity_percent=humidity_percent,
        co2_ppm=co2_ppm,
        light_level=light_level,
    )


def read_header(path: Union[str, Path]) -> str:
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            return f.readline()
    except OSError as e:
        raise CsvImportError(f"failed to read CSV header from {path}: {e}")


def iter_csv_measurements(path: Union[str, Path], device_id: str, tz: pytz.BaseTzInfo,
                          batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[List[Measurement]]:
    """
    Yield measurements from a CSV export in batches.

    Args:
        path: CSV file
        device_id: Device address the rows belong to
        tz: Timezone of the timestamp column
        batch_size: Rows per batch

    Yields:
        List[Measurement]: Up to ``batch_size`` rows

    Raises:
        CsvImportError: If the file cannot be read or any row is malformed
    """
    try:
        device_id = normalize_mac_address(device_id)
    except ValueError as e:
        raise CsvImportError(str(e))

    csv_format = detect_format(read_header(path))

    try:
        chunks = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            chunksize=batch_size,
            encoding="utf-8-sig",
        )
        # Data rows start on line 2, after the header
        row_number = 2
        for chunk in chunks:
            batch = []
            for row in chunk.itertuples(index=False, name=None):
                try:
                    batch.append(parse_row(list(row), csv_format, device_id, tz))
                except ValueError as e:
                    raise CsvImportError(str(e), row_number)
                row_number += 1
            if batch:
                yield batch
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise CsvImportError(f"failed to read CSV file {path}: {e}")


async def import_csv(path: Union[str, Path], device_id: str, tz: pytz.BaseTzInfo, sink,
                     batch_size: int = DEFAULT_BATCH_SIZE, logger=None) -> int:
    """
    Import a CSV export through the sink's insert-only batch write.

    Args:
        path: CSV file
        device_id: Device address the rows belong to
        tz: Timezone of the timestamp column
        sink: Object with an async ``write_measurements(rows) -> bool``
        batch_size: Rows per write
        logger: Optional logger for progress

    Returns:
        int: Number of rows written

    Raises:
        CsvImportError: If parsing fails or a batch cannot be written
    """
    total = 0
    for batch in iter_csv_measurements(path, device_id, tz, batch_size):
        if not await sink.write_measurements(batch):
            raise CsvImportError(f"failed to write batch after {total} rows")
        total += len(batch)
        if logger:
            logger.debug(f"Imported {total} rows from {path}")

    if logger:
        logger.info(f"Inserted {total} records from {path}")
    return total
