"""
Unit tests for the SwitchBot app CSV importer.
"""

import pytest
import pytz

from src.importer.csv_importer import (
    CsvFormat,
    CsvImportError,
    detect_format,
    import_csv,
    iter_csv_measurements,
    localize_timestamp,
    parse_row,
)
from src.influxdb.client import Measurement
from tests.fixtures.advertisement_data import utc
from tests.mocks.mock_influxdb import FakeInfluxDBSink


DEVICE = "AA:BB:CC:DD:EE:01"
TOKYO = pytz.timezone("Asia/Tokyo")
NEW_YORK = pytz.timezone("America/New_York")

BASIC_HEADER = "Date,Temperature_Celsius(°C),Relative_Humidity(%)"
CO2_HEADER = "Date,Temperature_Celsius(°C),Relative_Humidity(%),Co2(ppm)"
LIGHT_HEADER = "Date,Temperature_Celsius(°C),Relative_Humidity(%),Abs_Humidity(g/m³),DPT(°C),VPD(kPa),Light_Value"


def write_csv(directory, name, header, rows, bom=False):
    path = directory / name
    text = "\n".join([header] + rows) + "\n"
    path.write_text(("\ufeff" if bom else "") + text, encoding="utf-8")
    return path


class TestFormatDetection:

    @pytest.mark.parametrize("header,expected", [
        (BASIC_HEADER, CsvFormat.TEMPERATURE_HUMIDITY),
        (CO2_HEADER, CsvFormat.TEMPERATURE_HUMIDITY_CO2),
        (LIGHT_HEADER, CsvFormat.TEMPERATURE_HUMIDITY_LIGHT_LEVEL),
    ])
    def test_detect_format(self, header, expected):
        assert detect_format(header) is expected


class TestLocalizeTimestamp:
    """Test suite for local timestamp conversion."""

    def test_converts_to_utc(self):
        assert localize_timestamp("2025-01-01 21:00", TOKYO) == utc(2025, 1, 1, 12, 0)

    def test_ambiguous_time_uses_earlier_instant(self):
        # 01:30 happens twice on 2024-11-03; the first is EDT (UTC-4)
        assert localize_timestamp("2024-11-03 01:30", NEW_YORK) == utc(2024, 11, 3, 5, 30)

    def test_nonexistent_time_is_rejected(self):
        with pytest.raises(ValueError):
            localize_timestamp("2024-03-10 02:30", NEW_YORK)

    def test_malformed_timestamp(self):
        with pytest.raises(ValueError):
            localize_timestamp("01/01/2025 12:00", TOKYO)


class TestIterCsvMeasurements:
    """Test suite for parsing the three export layouts."""

    def test_basic_format(self, temp_test_dir):
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, [
            "2025-01-01 21:00,21.4,45",
            "2025-01-01 21:01,21.5,46",
        ])

        (batch,) = list(iter_csv_measurements(path, DEVICE, TOKYO))

        assert [row.measured_at for row in batch] == [utc(2025, 1, 1, 12, 0), utc(2025, 1, 1, 12, 1)]
        assert batch[0].temperature_celsius == 21.4
        assert batch[0].humidity_percent == 45
        assert batch[0].co2_ppm is None
        assert batch[0].light_level is None

    def test_co2_format(self, temp_test_dir):
        path = write_csv(temp_test_dir, "co2.csv", CO2_HEADER, ["2025-01-01 21:00,24.8,40,812"])

        (batch,) = list(iter_csv_measurements(path, DEVICE, TOKYO))

        assert batch[0].co2_ppm == 812
        assert batch[0].light_level is None

    def test_light_format(self, temp_test_dir):
        path = write_csv(temp_test_dir, "light.csv", LIGHT_HEADER, ["2025-01-01 21:00,22.5,45,8.9,10.2,1.5,12"])

        (batch,) = list(iter_csv_measurements(path, DEVICE, TOKYO))

        assert batch[0].light_level == 12
        assert batch[0].co2_ppm is None

    def test_byte_order_mark_is_ignored(self, temp_test_dir):
        path = write_csv(temp_test_dir, "bom.csv", CO2_HEADER, ["2025-01-01 21:00,24.8,40,812"], bom=True)

        (batch,) = list(iter_csv_measurements(path, DEVICE, TOKYO))
        assert batch[0].co2_ppm == 812

    def test_device_id_is_normalized(self, temp_test_dir):
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, ["2025-01-01 21:00,21.4,45"])

        (batch,) = list(iter_csv_measurements(path, "aa-bb-cc-dd-ee-01", TOKYO))
        assert batch[0].device_id == DEVICE

    def test_invalid_device_id(self, temp_test_dir):
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, ["2025-01-01 21:00,21.4,45"])

        with pytest.raises(CsvImportError):
            list(iter_csv_measurements(path, "kitchen", TOKYO))

    def test_batching(self, temp_test_dir):
        rows = [f"2025-01-01 21:{minute:02d},21.0,45" for minute in range(5)]
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, rows)

        batches = list(iter_csv_measurements(path, DEVICE, TOKYO, batch_size=2))

        assert [len(batch) for batch in batches] == [2, 2, 1]

    @pytest.mark.parametrize("bad_row,message", [
        ("2025-01-01 21:01,warm,45", "temperature"),
        ("2025-01-01 21:01,21.0,45.5", "humidity"),
        ("yesterday,21.0,45", "timestamp"),
        ("2025-01-01 21:01,21.0,", "humidity"),
    ])
    def test_bad_row_reports_row_number(self, temp_test_dir, bad_row, message):
        path = write_csv(temp_test_dir, "bad.csv", BASIC_HEADER, ["2025-01-01 21:00,21.0,45", bad_row])

        with pytest.raises(CsvImportError) as exc_info:
            list(iter_csv_measurements(path, DEVICE, TOKYO))

        assert exc_info.value.row_number == 3
        assert message in str(exc_info.value)

    def test_missing_co2_value(self, temp_test_dir):
        path = write_csv(temp_test_dir, "co2.csv", CO2_HEADER, ["2025-01-01 21:00,24.8,40,"])

        with pytest.raises(CsvImportError) as exc_info:
            list(iter_csv_measurements(path, DEVICE, TOKYO))
        assert exc_info.value.row_number == 2

    def test_missing_file(self, temp_test_dir):
        with pytest.raises(CsvImportError):
            list(iter_csv_measurements(temp_test_dir / "missing.csv", DEVICE, TOKYO))


class TestParseRow:
    """Test suite for single-row range checks."""

    LIGHT_ROW = ["2025-01-01 21:00", "21.5", "45", "8.9", "10.2", "1.5", "12"]

    def test_boundaries_are_accepted(self):
        row = ["2025-01-01 21:00", "21.5", "100", "8.9", "10.2", "1.5", "20"]

        parsed = parse_row(row, CsvFormat.TEMPERATURE_HUMIDITY_LIGHT_LEVEL, DEVICE, TOKYO)

        assert parsed.humidity_percent == 100
        assert parsed.light_level == 20

    @pytest.mark.parametrize("index,value,message", [
        (2, "101", "humidity"),
        (2, "-1", "humidity"),
        (6, "21", "light level"),
        (6, "-3", "light level"),
    ])
    def test_out_of_range_values_are_rejected(self, index, value, message):
        row = list(self.LIGHT_ROW)
        row[index] = value

        with pytest.raises(ValueError, match=message):
            parse_row(row, CsvFormat.TEMPERATURE_HUMIDITY_LIGHT_LEVEL, DEVICE, TOKYO)

    def test_out_of_range_row_reports_row_number(self, temp_test_dir):
        path = write_csv(temp_test_dir, "light.csv", LIGHT_HEADER, [
            "2025-01-01 21:00,22.5,45,8.9,10.2,1.5,12",
            "2025-01-01 21:01,21.5,140,8.9,10.2,1.5,25",
        ])

        with pytest.raises(CsvImportError) as exc_info:
            list(iter_csv_measurements(path, DEVICE, TOKYO))

        assert exc_info.value.row_number == 3
        assert "humidity 140" in str(exc_info.value)


class TestImportCsv:
    """Test suite for importing through the sink."""

    @pytest.mark.asyncio
    async def test_import_writes_all_rows(self, temp_test_dir, mock_logger):
        rows = [f"2025-01-01 21:{minute:02d},21.0,45,{400 + minute}" for minute in range(3)]
        path = write_csv(temp_test_dir, "co2.csv", CO2_HEADER, rows)
        sink = FakeInfluxDBSink()

        total = await import_csv(path, DEVICE, TOKYO, sink, batch_size=2, logger=mock_logger)

        assert total == 3
        assert len(sink.write_calls) == 2
        assert [row.co2_ppm for row in sink.rows_for(DEVICE)] == [400, 401, 402]
        mock_logger.info.assert_called()

    @pytest.mark.asyncio
    async def test_reimport_is_idempotent(self, temp_test_dir):
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, ["2025-01-01 21:00,21.0,45"])
        sink = FakeInfluxDBSink()

        await import_csv(path, DEVICE, TOKYO, sink)
        await import_csv(path, DEVICE, TOKYO, sink)

        assert len(sink.rows_for(DEVICE)) == 1

    @pytest.mark.asyncio
    async def test_import_keeps_rows_ingested_live(self, temp_test_dir):
        sink = FakeInfluxDBSink()
        await sink.write_measurements([Measurement(
            device_id=DEVICE, measured_at=utc(2025, 1, 1, 12, 0),
            temperature_celsius=19.5, humidity_percent=50,
        )])
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, [
            "2025-01-01 21:00,21.0,45",
            "2025-01-01 21:01,21.0,45",
        ])

        await import_csv(path, DEVICE, TOKYO, sink)

        rows = sink.rows_for(DEVICE)
        assert [row.temperature_celsius for row in rows] == [19.5, 21.0]

    @pytest.mark.asyncio
    async def test_write_failure(self, temp_test_dir):
        path = write_csv(temp_test_dir, "basic.csv", BASIC_HEADER, ["2025-01-01 21:00,21.0,45"])
        sink = FakeInfluxDBSink()
        sink.fail_times = 1

        with pytest.raises(CsvImportError):
            await import_csv(path, DEVICE, TOKYO, sink)
