"""
Pydantic schemas for the SwitchBot device catalog.
Defines the closed set of device models and validation for catalog rows.
"""

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAC_PATTERN = re.compile(r'^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$')


class DeviceType(str, Enum):
    """SwitchBot device models as labelled in the device catalog."""
    HUB = "Hub"
    HUB_PLUS = "Hub Plus"
    HUB_MINI = "Hub Mini"
    HUB_2 = "Hub 2"
    HUB_3 = "Hub 3"
    METER = "Meter"
    METER_PLUS = "MeterPlus"
    WO_IO_SENSOR = "WoIOSensor"
    METER_PRO = "MeterPro"
    METER_PRO_CO2 = "MeterPro(CO2)"


class Device(BaseModel):
    """A single catalog entry. Immutable for the process lifetime."""
    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Hardware address, normalized to AA:BB:CC:DD:EE:FF")
    type: DeviceType = Field(..., description="Declared device model")
    name: str = Field(..., min_length=1, max_length=100, description="Human-readable device name")
    sort_order: int = Field(..., ge=0, le=255, description="Display ordering")

    @field_validator('address')
    @classmethod
    def address_must_be_mac(cls, v):
        """Validate and normalize the hardware address."""
        if not validate_mac_address(v):
            raise ValueError(f'Invalid MAC address format: {v}')
        return normalize_mac_address(v)

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        """Validate that device name is not blank."""
        if not v.strip():
            raise ValueError('Device name cannot be empty')
        return v.strip()


def validate_mac_address(mac_address: str) -> bool:
    """
    Validate MAC address format.

    Args:
        mac_address: MAC address to validate

    Returns:
        bool: True if valid MAC address format
    """
    return bool(MAC_PATTERN.match(mac_address))


def normalize_mac_address(mac_address: str) -> str:
    """
    Normalize MAC address to uppercase with colon separators.

    Args:
        mac_address: MAC address to normalize

    Returns:
        str: Normalized MAC address
    """
    clean_mac = ''.join(c for c in mac_address.upper() if c.isalnum())

    if len(clean_mac) == 12:
        return ':'.join(clean_mac[i:i+2] for i in range(0, 12, 2))
    else:
        raise ValueError(f"Invalid MAC address length: {mac_address}")
