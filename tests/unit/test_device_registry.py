"""
Unit tests for the device catalog schema and the read-only registry.
"""

import pytest
from pydantic import ValidationError

from src.devices.registry import DeviceRegistry, RegistryLoadError
from src.devices.schema import Device, DeviceType, normalize_mac_address, validate_mac_address
from tests.mocks.mock_influxdb import FakeInfluxDBSink


class TestDeviceSchema:
    """Test suite for catalog row validation."""

    def test_address_is_normalized(self):
        device = Device(address="aa-bb-cc-dd-ee-0f", type="Hub 2", name="Kitchen", sort_order=3)
        assert device.address == "AA:BB:CC:DD:EE:0F"
        assert device.type is DeviceType.HUB_2

    def test_invalid_address(self):
        with pytest.raises(ValidationError):
            Device(address="not-a-mac", type="Hub 2", name="Kitchen", sort_order=0)

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            Device(address="AA:BB:CC:DD:EE:FF", type="Bot", name="Kitchen", sort_order=0)

    @pytest.mark.parametrize("sort_order", [-1, 256])
    def test_sort_order_bounds(self, sort_order):
        with pytest.raises(ValidationError):
            Device(address="AA:BB:CC:DD:EE:FF", type="Meter", name="Kitchen", sort_order=sort_order)

    def test_blank_name(self):
        with pytest.raises(ValidationError):
            Device(address="AA:BB:CC:DD:EE:FF", type="Meter", name="   ", sort_order=0)

    def test_device_is_frozen(self, hub2_device):
        with pytest.raises(ValidationError):
            hub2_device.name = "Renamed"

    def test_mac_helpers(self):
        assert validate_mac_address("aa:bb:cc:dd:ee:ff")
        assert not validate_mac_address("aa:bb:cc:dd:ee")
        assert normalize_mac_address("aabbccddeeff") == "AA:BB:CC:DD:EE:FF"


class TestDeviceRegistry:
    """Test suite for registry loading and lookup."""

    @pytest.mark.asyncio
    async def test_load_from_sink(self, fake_sink, mock_logger):
        registry = await DeviceRegistry.load(fake_sink, mock_logger)

        assert len(registry) == 3
        assert registry.lookup("AA:BB:CC:DD:EE:01").type is DeviceType.HUB_2
        mock_logger.info.assert_called()

    @pytest.mark.asyncio
    async def test_source_failure_is_fatal(self):
        sink = FakeInfluxDBSink()
        sink.load_error = OSError("connection refused")

        with pytest.raises(RegistryLoadError) as exc_info:
            await DeviceRegistry.load(sink)
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_catalog(self):
        registry = await DeviceRegistry.load(FakeInfluxDBSink())
        assert len(registry) == 0
        assert registry.lookup("AA:BB:CC:DD:EE:01") is None

    def test_malformed_row(self):
        rows = [{"address": "AA:BB:CC:DD:EE:01", "type": "Toaster", "name": "x", "sort_order": 0}]
        with pytest.raises(RegistryLoadError):
            DeviceRegistry.from_rows(rows)

    def test_missing_column(self):
        with pytest.raises(RegistryLoadError):
            DeviceRegistry.from_rows([{"address": "AA:BB:CC:DD:EE:01", "type": "Hub 2"}])

    def test_duplicate_address(self, hub2_device):
        duplicate = Device(address="aa:bb:cc:dd:ee:01", type="Meter", name="Other", sort_order=9)
        with pytest.raises(RegistryLoadError):
            DeviceRegistry([hub2_device, duplicate])

    def test_lookup_normalizes_address(self, catalog_devices):
        registry = DeviceRegistry(catalog_devices)

        assert registry.lookup("aa:bb:cc:dd:ee:02").name == "Bedroom"
        assert registry.lookup("AA-BB-CC-DD-EE-02").name == "Bedroom"
        assert "aa:bb:cc:dd:ee:03" in registry

    def test_unknown_and_invalid_addresses(self, catalog_devices):
        registry = DeviceRegistry(catalog_devices)

        assert registry.lookup("11:22:33:44:55:66") is None
        assert registry.lookup("garbage") is None
        assert "garbage" not in registry
        assert 42 not in registry

    def test_iteration_follows_sort_order(self, catalog_devices):
        registry = DeviceRegistry(catalog_devices)
        assert [device.name for device in registry] == ["Office", "Living Room", "Bedroom"]

    def test_devices_mapping_is_read_only(self, catalog_devices, hub2_device):
        registry = DeviceRegistry(catalog_devices)
        with pytest.raises(TypeError):
            registry.devices["11:22:33:44:55:66"] = hub2_device
