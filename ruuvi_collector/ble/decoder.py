"""
Payload decoder for Ruuvi sensor notifications.
Turns the fixed-layout binary payload into typed physical quantities.

The layout is read from a single MSB-first bit cursor: one format tag byte
(skipped), then fields of 16, 16, 16, 16, 16, 16, 11, 5, 8 and 16 bits.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


# Field widths in bit order, after the format tag byte
FORMAT_TAG_BITS = 8
FIELD_WIDTHS = (16, 16, 16, 16, 16, 16, 11, 5, 8, 16)
PAYLOAD_BITS = FORMAT_TAG_BITS + sum(FIELD_WIDTHS)
PAYLOAD_LENGTH = PAYLOAD_BITS // 8


class DecodeError(Exception):
    """Base exception for payload decoding."""
    pass


class TruncatedPayloadError(DecodeError):
    """Raised when a buffer is shorter than the fixed payload layout."""

    def __init__(self, available_bits: int, required_bits: int = PAYLOAD_BITS):
        self.available_bits = available_bits
        self.required_bits = required_bits
        super().__init__(
            f"Payload truncated: {available_bits} bits available, {required_bits} required"
        )


@dataclass(frozen=True)
class DecodedPayload:
    """Physical quantities carried by one payload."""
    temperature: float          # Celsius
    humidity: float             # %RH
    pressure: int               # Pa
    acceleration_x: float       # g
    acceleration_y: float       # g
    acceleration_z: float       # g
    battery_voltage: float      # V
    tx_power: int               # dBm
    movement_counter: int
    measurement_sequence: int


@dataclass(frozen=True)
class SensorReading:
    """One decoded reading, tagged with the device it came from."""
    source_name: str
    source_address: str
    temperature: float
    humidity: float
    pressure: int
    acceleration_x: float
    acceleration_y: float
    acceleration_z: float
    battery_voltage: float
    tx_power: int
    movement_counter: int
    measurement_sequence: int
    collected_at: datetime

    @classmethod
    def from_payload(cls, source_name: str, source_address: str,
                     payload: DecodedPayload,
                     collected_at: Optional[datetime] = None) -> 'SensorReading':
        """Build a reading from a fully decoded payload."""
        return cls(
            source_name=source_name,
            source_address=source_address,
            temperature=payload.temperature,
            humidity=payload.humidity,
            pressure=payload.pressure,
            acceleration_x=payload.acceleration_x,
            acceleration_y=payload.acceleration_y,
            acceleration_z=payload.acceleration_z,
            battery_voltage=payload.battery_voltage,
            tx_power=payload.tx_power,
            movement_counter=payload.movement_counter,
            measurement_sequence=payload.measurement_sequence,
            collected_at=collected_at or datetime.now(timezone.utc)
        )


class BitReader:
    """Sequential MSB-first bit cursor over a byte buffer."""

    def __init__(self, data: bytes):
        self._value = int.from_bytes(data, 'big')
        self._length = len(data) * 8
        self._position = 0

    @property
    def remaining(self) -> int:
        return self._length - self._position

    def skip(self, bits: int):
        self._take(bits)

    def read_unsigned(self, bits: int) -> int:
        return self._take(bits)

    def read_signed(self, bits: int) -> int:
        value = self._take(bits)
        if value & (1 << (bits - 1)):
            value -= 1 << bits
        return value

    def _take(self, bits: int) -> int:
        if bits > self.remaining:
            raise TruncatedPayloadError(self._length)
        shift = self._length - self._position - bits
        self._position += bits
        return (self._value >> shift) & ((1 << bits) - 1)


def decode(raw: bytes) -> DecodedPayload:
    """
    Decode a sensor payload.

    Args:
        raw: Notification payload, format tag byte first

    Returns:
        DecodedPayload: All measurement fields

    Raises:
        TruncatedPayloadError: If raw holds fewer bits than the layout requires
    """
    available_bits = len(raw) * 8
    if available_bits < PAYLOAD_BITS:
        raise TruncatedPayloadError(available_bits)

    reader = BitReader(bytes(raw[:PAYLOAD_LENGTH]))
    reader.skip(FORMAT_TAG_BITS)

    temperature = reader.read_unsigned(16) * 0.005
    humidity = reader.read_unsigned(16) * 0.0025
    pressure = reader.read_unsigned(16) + 50000
    acceleration_x = reader.read_signed(16) / 1000.0
    acceleration_y = reader.read_signed(16) / 1000.0
    acceleration_z = reader.read_signed(16) / 1000.0
    battery_voltage = reader.read_unsigned(11) * 0.001 + 1.6
    tx_power = reader.read_unsigned(5) * 2 - 40
    movement_counter = reader.read_unsigned(8)
    measurement_sequence = reader.read_unsigned(16)

    return DecodedPayload(
        temperature=temperature,
        humidity=humidity,
        pressure=pressure,
        acceleration_x=acceleration_x,
        acceleration_y=acceleration_y,
        acceleration_z=acceleration_z,
        battery_voltage=battery_voltage,
        tx_power=tx_power,
        movement_counter=movement_counter,
        measurement_sequence=measurement_sequence
    )
