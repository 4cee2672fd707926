"""
Read-only device registry for the SwitchBot BLE Ingester.
Built once at startup from the sink's device catalog and shared by all tasks.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional

from pydantic import ValidationError

from .schema import Device, normalize_mac_address


class RegistryLoadError(Exception):
    """Raised when the device catalog cannot be loaded. Fatal at startup."""
    pass


class DeviceRegistry:
    """
    Immutable mapping from hardware address to Device.

    Lookups for unknown addresses return None; ingestion silently ignores
    them.
    """

    def __init__(self, devices: Iterable[Device]):
        by_address: Dict[str, Device] = {}
        for device in devices:
            if device.address in by_address:
                raise RegistryLoadError(f"Duplicate device address in catalog: {device.address}")
            by_address[device.address] = device

        self._devices: Mapping[str, Device] = MappingProxyType(by_address)
        self._ordered = tuple(sorted(by_address.values(), key=lambda d: (d.sort_order, d.address)))

    @classmethod
    async def load(cls, source, logger=None) -> 'DeviceRegistry':
        """
        Load the registry from a catalog source.

        Args:
            source: Object with an async ``load_devices()`` method returning
                catalog rows as Device instances or dicts
            logger: Optional logger for the load summary

        Returns:
            DeviceRegistry: Populated registry

        Raises:
            RegistryLoadError: If the source fails or a row is malformed
        """
        try:
            rows = await source.load_devices()
        except Exception as e:
            raise RegistryLoadError(f"Failed to load device catalog: {e}") from e

        return cls.from_rows(rows, logger)

    @classmethod
    def from_rows(cls, rows, logger=None) -> 'DeviceRegistry':
        """Build a registry from catalog rows, validating each one."""
        devices = []
        for row in rows:
            if isinstance(row, Device):
                devices.append(row)
                continue
            try:
                devices.append(Device(**row))
            except (ValidationError, TypeError) as e:
                raise RegistryLoadError(f"Malformed device catalog row {row!r}: {e}") from e

        registry = cls(devices)
        if logger:
            logger.info(f"Device registry loaded with {len(registry)} devices")
        return registry

    def lookup(self, address: str) -> Optional[Device]:
        try:
            key = normalize_mac_address(address)
        except ValueError:
            return None
        return self._devices.get(key)

    @property
    def devices(self) -> Mapping[str, Device]:
        return self._devices

    def __contains__(self, address) -> bool:
        return isinstance(address, str) and self.lookup(address) is not None

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        """Iterate devices by sort_order."""
        return iter(self._ordered)
