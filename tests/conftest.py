"""
Pytest configuration and shared fixtures for SwitchBot BLE Ingester tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, MagicMock
from typing import Dict, Optional

import pytz

# Import the modules we're testing
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.utils.config import Config
from src.utils.logging import ProductionLogger, PerformanceMonitor
from src.ble.codecs import SWITCHBOT_MANUFACTURER_ID, SWITCHBOT_SERVICE_UUID
from src.ble.scanner import RawAdvertisement
from src.devices.schema import Device, DeviceType
from tests.fixtures.advertisement_data import AdvertisementFixtures
from tests.mocks.mock_influxdb import FakeInfluxDBSink


@pytest.fixture
def mock_config():
    """Create a mock configuration for testing."""
    config = Mock(spec=Config)

    config.timezone_name = "Asia/Tokyo"
    config.timezone = pytz.timezone("Asia/Tokyo")

    # InfluxDB configuration
    config.influxdb_url = "http://localhost:8086"
    config.influxdb_token = "test-token"
    config.influxdb_org = "test-org"
    config.influxdb_bucket = "test-bucket"
    config.influxdb_timeout = 5
    config.influxdb_verify_ssl = False
    config.influxdb_enable_gzip = False
    config.influxdb_retry_attempts = 2
    config.influxdb_retry_delay = 0.0
    config.influxdb_retry_exponential_base = 2.0

    # BLE configuration
    config.ble_adapter = "auto"

    # Ingestion configuration
    config.dedup_tolerance_seconds = 20.0
    config.flush_interval = 0.05
    config.buffer_lock_timeout = 1.0
    config.import_batch_size = 1000

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_dir = Path("./test_logs")
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False  # Disable console logging in tests

    config.validate_configuration = Mock(return_value=True)

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=ProductionLogger)
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    logger.critical = Mock()
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.log_influxdb_write = Mock()
    monitor.measure_time = Mock()
    monitor.get_metrics = Mock(return_value={})

    # Mock the context manager for measure_time
    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time.return_value = mock_context

    return monitor


@pytest.fixture
def hub2_device():
    return Device(address="AA:BB:CC:DD:EE:01", type=DeviceType.HUB_2, name="Living Room", sort_order=1)


@pytest.fixture
def meter_plus_device():
    return Device(address="AA:BB:CC:DD:EE:02", type=DeviceType.METER_PLUS, name="Bedroom", sort_order=2)


@pytest.fixture
def co2_device():
    return Device(address="AA:BB:CC:DD:EE:03", type=DeviceType.METER_PRO_CO2, name="Office", sort_order=0)


@pytest.fixture
def catalog_devices(hub2_device, meter_plus_device, co2_device):
    return [hub2_device, meter_plus_device, co2_device]


@pytest.fixture
def fake_sink(catalog_devices):
    """In-memory InfluxDB stand-in pre-loaded with the test catalog."""
    return FakeInfluxDBSink(devices=catalog_devices)


@pytest.fixture
def make_advertisement():
    """Build RawAdvertisement objects for tests."""
    def _make(address: str,
              manufacturer_data: Optional[bytes] = None,
              service_data: Optional[bytes] = None,
              observed_at: Optional[datetime] = None,
              extra_manufacturer_data: Optional[Dict[int, bytes]] = None,
              rssi: int = -65) -> RawAdvertisement:
        md = dict(extra_manufacturer_data or {})
        if manufacturer_data is not None:
            md[SWITCHBOT_MANUFACTURER_ID] = manufacturer_data
        sd = {}
        if service_data is not None:
            sd[SWITCHBOT_SERVICE_UUID] = service_data
        return RawAdvertisement(
            address=address,
            manufacturer_data=md,
            service_data=sd,
            observed_at=observed_at or datetime(2025, 1, 1, 12, 0, 5, tzinfo=timezone.utc),
            rssi=rssi,
        )

    return _make


@pytest.fixture
def mock_ble_device():
    """Create a mock BLE device for testing."""
    device = Mock()
    device.address = "aa:bb:cc:dd:ee:01"
    device.name = "WoHub2"
    return device


@pytest.fixture
def mock_advertisement_data():
    """Create mock bleak advertisement data for testing."""
    def _create_ad_data(manufacturer_data: Dict[int, bytes],
                        service_data: Optional[Dict[str, bytes]] = None,
                        rssi: int = -65):
        ad_data = Mock()
        ad_data.manufacturer_data = manufacturer_data
        ad_data.service_data = service_data or {}
        ad_data.rssi = rssi
        ad_data.local_name = "WoHub2"
        return ad_data

    return _create_ad_data


@pytest.fixture
def fixtures():
    return AdvertisementFixtures


@pytest.fixture
def temp_test_dir(tmp_path):
    """Create a temporary directory for test files."""
    test_dir = tmp_path / "switchbot_tests"
    test_dir.mkdir()
    return test_dir


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_bluetooth: mark test as requiring Bluetooth hardware"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if "continuous" in item.name or "long" in item.name:
            item.add_marker(pytest.mark.slow)
