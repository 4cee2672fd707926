"""
Vendor payload codecs for SwitchBot meters and the RATOC Systems power meter.

Every codec is a pure function of the raw advertisement bytes. Failures are
raised as DecodeError subclasses that carry the vendor key and the lengths
involved, so a firmware or protocol change can be diagnosed from the log
line alone.

Layout reference: https://github.com/OpenWonderLabs/SwitchBotAPI-BLE
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..devices.schema import DeviceType


# SwitchBot company identifier for manufacturer data
SWITCHBOT_MANUFACTURER_ID = 0x0969

# SwitchBot service data UUID
SWITCHBOT_SERVICE_UUID = "0000fd3d-0000-1000-8000-00805f9b34fb"

# RATOC Systems company identifier (RS-BTWATTCH2 power meter)
RATOC_MANUFACTURER_ID = 0x0B60

HUMIDITY_MAX = 100
LIGHT_LEVEL_MAX = 20


@dataclass(frozen=True)
class DecodedMeasurement:
    """Environmental reading decoded from a SwitchBot advertisement."""
    temperature_celsius: float
    humidity_percent: int
    co2_ppm: Optional[int] = None
    light_level: Optional[int] = None


@dataclass(frozen=True)
class PowerMeasurement:
    """Power reading decoded from a RATOC Systems advertisement."""
    voltage_v: float
    current_ma: int
    power_w: float


class DecodeError(Exception):
    """Base exception for payload decoding."""

    def __init__(self, message: str, vendor_key=None):
        super().__init__(message)
        self.vendor_key = vendor_key


class NotFoundError(DecodeError):
    """The vendor or service key is absent from the advertisement."""

    def __init__(self, vendor_key):
        super().__init__(f"payload not found for key {format_vendor_key(vendor_key)}", vendor_key)


class TruncatedError(DecodeError):
    """The payload is shorter than the format's minimum length."""

    def __init__(self, what: str, expected: int, actual: int, vendor_key=None):
        super().__init__(
            f"{what} too short: expected at least {expected} bytes, got {actual} "
            f"(key {format_vendor_key(vendor_key)})",
            vendor_key,
        )
        self.expected = expected
        self.actual = actual


class OutOfRangeError(DecodeError):
    """A decoded field falls outside its valid range."""

    def __init__(self, field_name: str, value: int, minimum: int, maximum: int):
        super().__init__(f"{field_name} out of range: expected {minimum}-{maximum}, got {value}")
        self.field_name = field_name
        self.value = value


class UnknownVariantError(DecodeError):
    """The device-model discriminator byte is not recognized."""

    def __init__(self, discriminator: int, vendor_key=None):
        super().__init__(f"unknown SwitchBot device type: 0x{discriminator:02x}", vendor_key)
        self.discriminator = discriminator


class UnsupportedVariantError(DecodeError):
    """The device model is known but its payload layout is not."""

    def __init__(self, device_type: DeviceType):
        super().__init__(
            f"no manufacturer data layout known for {device_type.value}",
            SWITCHBOT_MANUFACTURER_ID,
        )
        self.device_type = device_type


class DecodeChainError(DecodeError):
    """Every candidate codec failed. Carries each attempt's error."""

    def __init__(self, attempts: Sequence[Tuple[str, DecodeError]]):
        detail = "; ".join(f"{name}: {error}" for name, error in attempts)
        super().__init__(f"all decoders failed ({detail})")
        self.attempts = list(attempts)


def format_vendor_key(vendor_key) -> str:
    if isinstance(vendor_key, int):
        return f"0x{vendor_key:04x}"
    return str(vendor_key)


# Field decoders

def decode_temperature(lo: int, hi: int) -> float:
    """
    Decode the two-byte SwitchBot temperature.

    The low nibble of ``lo`` is the tenths digit, the low seven bits of ``hi``
    the integral part, and the top bit of ``hi`` is set for positive values.
    """
    fractional = lo & 0x0F
    integral = hi & 0x7F
    sign = 1 if hi & 0x80 else -1
    return sign * (integral * 10 + fractional) / 10


def decode_humidity(value: int) -> int:
    humidity = value & 0x7F
    if humidity > HUMIDITY_MAX:
        raise OutOfRangeError("humidity", humidity, 0, HUMIDITY_MAX)
    return humidity


def decode_light_level(value: int) -> int:
    light_level = value & 0x7F
    if light_level > LIGHT_LEVEL_MAX:
        raise OutOfRangeError("light level", light_level, 0, LIGHT_LEVEL_MAX)
    return light_level


def decode_co2(hi: int, lo: int) -> int:
    """CO2 concentration in ppm, big-endian, unscaled."""
    return int.from_bytes(bytes([hi, lo]), "big")


def _require_length(what: str, data: bytes, minimum: int, vendor_key) -> None:
    if len(data) < minimum:
        raise TruncatedError(what, minimum, len(data), vendor_key)


# SwitchBot manufacturer data layouts

def decode_hub2(data: bytes) -> DecodedMeasurement:
    _require_length("Hub 2 manufacturer data", data, 17, SWITCHBOT_MANUFACTURER_ID)
    return DecodedMeasurement(
        temperature_celsius=decode_temperature(data[13], data[14]),
        humidity_percent=decode_humidity(data[15]),
        light_level=decode_light_level(data[12]),
    )


def decode_meter_plus(data: bytes) -> DecodedMeasurement:
    _require_length("MeterPlus manufacturer data", data, 11, SWITCHBOT_MANUFACTURER_ID)
    return DecodedMeasurement(
        temperature_celsius=decode_temperature(data[8], data[9]),
        humidity_percent=decode_humidity(data[10]),
    )


def decode_wo_io_sensor(data: bytes) -> DecodedMeasurement:
    _require_length("WoIOSensor manufacturer data", data, 12, SWITCHBOT_MANUFACTURER_ID)
    return DecodedMeasurement(
        temperature_celsius=decode_temperature(data[8], data[9]),
        humidity_percent=decode_humidity(data[10]),
    )


def decode_meter_pro_co2(data: bytes) -> DecodedMeasurement:
    _require_length("MeterPro(CO2) manufacturer data", data, 16, SWITCHBOT_MANUFACTURER_ID)
    return DecodedMeasurement(
        temperature_celsius=decode_temperature(data[8], data[9]),
        humidity_percent=decode_humidity(data[10]),
        co2_ppm=decode_co2(data[13], data[14]),
    )


def _unsupported(device_type: DeviceType) -> Callable[[bytes], DecodedMeasurement]:
    def decoder(data: bytes) -> DecodedMeasurement:
        raise UnsupportedVariantError(device_type)
    return decoder


MANUFACTURER_DECODERS: Dict[DeviceType, Callable[[bytes], DecodedMeasurement]] = {
    DeviceType.HUB: _unsupported(DeviceType.HUB),
    DeviceType.HUB_PLUS: _unsupported(DeviceType.HUB_PLUS),
    DeviceType.HUB_MINI: _unsupported(DeviceType.HUB_MINI),
    DeviceType.HUB_2: decode_hub2,
    DeviceType.HUB_3: _unsupported(DeviceType.HUB_3),
    DeviceType.METER: _unsupported(DeviceType.METER),
    DeviceType.METER_PLUS: decode_meter_plus,
    DeviceType.WO_IO_SENSOR: decode_wo_io_sensor,
    DeviceType.METER_PRO: _unsupported(DeviceType.METER_PRO),
    DeviceType.METER_PRO_CO2: decode_meter_pro_co2,
}

_missing_decoders = set(DeviceType) - set(MANUFACTURER_DECODERS)
if _missing_decoders:
    raise RuntimeError(f"no manufacturer decoder for {sorted(t.value for t in _missing_decoders)}")

# Service data byte 0 -> device model
SERVICE_DATA_DEVICE_TYPES: Dict[int, DeviceType] = {
    0x76: DeviceType.HUB_2,
    0x54: DeviceType.METER,
    0x69: DeviceType.METER_PLUS,
    0x77: DeviceType.WO_IO_SENSOR,
    0x35: DeviceType.METER_PRO_CO2,
}


def decode_manufacturer_data(device_type: DeviceType, data: bytes) -> DecodedMeasurement:
    """Decode SwitchBot manufacturer data with an explicit device model."""
    return MANUFACTURER_DECODERS[device_type](data)


def detect_device_type(service_data: bytes) -> DeviceType:
    """Read the device model from SwitchBot service data."""
    if not service_data:
        raise TruncatedError("SwitchBot service data", 1, 0, SWITCHBOT_SERVICE_UUID)

    discriminator = service_data[0]
    try:
        return SERVICE_DATA_DEVICE_TYPES[discriminator]
    except KeyError:
        raise UnknownVariantError(discriminator, SWITCHBOT_SERVICE_UUID)


def _lookup(payloads: Mapping, key) -> bytes:
    data = payloads.get(key) if payloads else None
    if data is None:
        raise NotFoundError(key)
    return bytes(data)


def decode(vendor_key, raw_bytes: bytes, device_type: Optional[DeviceType] = None):
    """
    Decode a single vendor payload.

    Args:
        vendor_key: Company identifier (int) or service UUID (str)
        raw_bytes: Payload stored under that key
        device_type: Declared model, required for SwitchBot manufacturer data

    Returns:
        DecodedMeasurement or PowerMeasurement

    Raises:
        DecodeError: If the payload cannot be decoded
    """
    if vendor_key == RATOC_MANUFACTURER_ID:
        return decode_power_meter(raw_bytes)
    if vendor_key == SWITCHBOT_MANUFACTURER_ID:
        if device_type is None:
            raise DecodeError("SwitchBot manufacturer data requires a device model", vendor_key)
        return decode_manufacturer_data(device_type, raw_bytes)
    raise DecodeError(f"no codec registered for key {format_vendor_key(vendor_key)}", vendor_key)


# Candidate codecs for a SwitchBot advertisement

def decode_from_service_data(manufacturer_data: Mapping[int, bytes],
                             service_data: Mapping[str, bytes]) -> DecodedMeasurement:
    """Self-describing path: model byte from service data, fields from manufacturer data."""
    device_type = detect_device_type(_lookup(service_data, SWITCHBOT_SERVICE_UUID))
    return decode_manufacturer_data(device_type, _lookup(manufacturer_data, SWITCHBOT_MANUFACTURER_ID))


def decode_with_declared_type(manufacturer_data: Mapping[int, bytes],
                              device_type: DeviceType) -> DecodedMeasurement:
    """Fallback path: fields from manufacturer data using the catalog's declared model."""
    return decode_manufacturer_data(device_type, _lookup(manufacturer_data, SWITCHBOT_MANUFACTURER_ID))


def decode_switchbot_advertisement(manufacturer_data: Mapping[int, bytes],
                                   service_data: Mapping[str, bytes],
                                   declared_type: Optional[DeviceType] = None) -> DecodedMeasurement:
    """
    Decode a SwitchBot advertisement by trying each candidate codec in order.

    Service data is tried first because it names the device model. If that
    fails, manufacturer data is decoded with the declared model from the
    device catalog.

    Raises:
        DecodeChainError: If every candidate fails
    """
    candidates: List[Tuple[str, Callable[[], DecodedMeasurement]]] = [
        ("service data", lambda: decode_from_service_data(manufacturer_data, service_data)),
    ]
    if declared_type is not None:
        candidates.append(
            (f"declared {declared_type.value}",
             lambda: decode_with_declared_type(manufacturer_data, declared_type))
        )

    attempts: List[Tuple[str, DecodeError]] = []
    for name, candidate in candidates:
        try:
            return candidate()
        except DecodeError as e:
            attempts.append((name, e))

    raise DecodeChainError(attempts)


# RATOC Systems power meter

def decode_power_meter(data: bytes) -> PowerMeasurement:
    """
    Decode RS-BTWATTCH2 manufacturer data.

    Byte 0 is the relay state and is ignored. Voltage and current are
    little-endian; power is a 24-bit big-endian quantity in milliwatts.
    """
    _require_length("RATOC Systems manufacturer data", data, 8, RATOC_MANUFACTURER_ID)
    voltage_raw = int.from_bytes(data[1:3], "little")
    current_ma = int.from_bytes(data[3:5], "little")
    power_raw = int.from_bytes(b"\x00" + bytes(data[5:8]), "big")
    return PowerMeasurement(
        voltage_v=voltage_raw / 10,
        current_ma=current_ma,
        power_w=power_raw / 1000,
    )


def decode_power_advertisement(manufacturer_data: Mapping[int, bytes]) -> PowerMeasurement:
    return decode_power_meter(_lookup(manufacturer_data, RATOC_MANUFACTURER_ID))
