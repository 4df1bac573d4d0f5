"""
Parse GATT Heart Rate Measurement characteristic (0x2A37) payloads.

Flags byte: bit 0 = HR 16-bit, bits 1-2 = sensor contact status,
bit 3 = Energy Expended present, bit 4 = RR present.
Field order after flags: HR (UINT8 or UINT16 LE), EE (UINT16 LE), RR pairs (UINT16 LE).
RR intervals: unit 1/1024 s → rr_ms = value * 1000 / 1024.
"""

from dataclasses import dataclass
from enum import IntEnum, IntFlag


class HeartRateFlags(IntFlag):
    NONE = 0
    IS_SHORT = 0x01
    HAS_ENERGY_EXPENDED = 0x08
    HAS_RR_INTERVAL = 0x10


class ContactSensorStatus(IntEnum):
    NOT_SUPPORTED = 0
    NOT_SUPPORTED_2 = 1
    NO_CONTACT = 2
    CONTACT = 3


class DecodeError(ValueError):
    """HRM payload could not be turned into a reading."""


class EmptyPayload(DecodeError):
    """Zero-length notification. Some sensors send these; safe to ignore."""


class TruncatedPayload(DecodeError):
    """Payload shorter than its flags byte says it should be."""


def rr_to_ms(value: int) -> float:
    """RR interval in 1/1024 s units → milliseconds."""
    return value * 1000.0 / 1024.0


@dataclass(frozen=True)
class HeartRateReading:
    flags: HeartRateFlags
    contact_status: ContactSensorStatus
    bpm: int
    energy_expended: int | None = None
    # None when the RR flag is clear; may be empty when it is set
    rr_intervals: tuple[int, ...] | None = None

    @property
    def rr_ms(self) -> list[float]:
        if not self.rr_intervals:
            return []
        return [rr_to_ms(rr) for rr in self.rr_intervals]


def decode_hrm(data: bytes) -> HeartRateReading:
    """
    Decode a Heart Rate Measurement characteristic value.

    Raises EmptyPayload for a zero-length buffer and TruncatedPayload when the
    buffer is shorter than the fields announced by the flags byte. An odd
    trailing byte in the RR section is ignored.
    """
    data = bytes(data)
    if not data:
        raise EmptyPayload("HRM payload is empty")

    raw_flags = data[0]
    flags = HeartRateFlags(raw_flags)
    hr_16bit = bool(flags & HeartRateFlags.IS_SHORT)
    ee_present = bool(flags & HeartRateFlags.HAS_ENERGY_EXPENDED)
    rr_present = bool(flags & HeartRateFlags.HAS_RR_INTERVAL)
    # Taken from bits 1-2 whether or not the sensor claims contact support
    contact = ContactSensorStatus((raw_flags >> 1) & 0x03)

    min_len = 1 + (2 if hr_16bit else 1) + (2 if ee_present else 0)
    if len(data) < min_len:
        raise TruncatedPayload(
            f"HRM payload too short: {len(data)} byte(s), flags 0x{raw_flags:02x} need {min_len}"
        )

    offset = 1

    # Heart rate
    if hr_16bit:
        bpm = int.from_bytes(data[offset : offset + 2], "little")
        offset += 2
    else:
        bpm = data[offset]
        offset += 1

    # Energy expended
    energy_expended = None
    if ee_present:
        energy_expended = int.from_bytes(data[offset : offset + 2], "little")
        offset += 2

    # RR intervals (pairs of UINT16 LE)
    rr_intervals = None
    if rr_present:
        values = []
        while len(data) >= offset + 2:
            values.append(int.from_bytes(data[offset : offset + 2], "little"))
            offset += 2
        rr_intervals = tuple(values)

    return HeartRateReading(
        flags=flags,
        contact_status=contact,
        bpm=bpm,
        energy_expended=energy_expended,
        rr_intervals=rr_intervals,
    )


def _u16(value: int, what: str) -> bytes:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{what} {value} does not fit UINT16")
    return value.to_bytes(2, "little")


def encode_hrm(reading: HeartRateReading) -> bytes:
    """
    Build the characteristic value for a reading, laid out per reading.flags.

    Contact status is written into bits 1-2. Raises ValueError when a flagged
    field is missing or a value does not fit its width.
    """
    flags = int(reading.flags) & ~0x06
    flags |= (int(reading.contact_status) & 0x03) << 1
    out = bytearray([flags])

    if reading.flags & HeartRateFlags.IS_SHORT:
        out += _u16(reading.bpm, "BPM")
    else:
        if not 0 <= reading.bpm <= 0xFF:
            raise ValueError(f"BPM {reading.bpm} does not fit UINT8")
        out.append(reading.bpm)

    if reading.flags & HeartRateFlags.HAS_ENERGY_EXPENDED:
        if reading.energy_expended is None:
            raise ValueError("Energy Expended flagged but missing")
        out += _u16(reading.energy_expended, "Energy Expended")

    if reading.flags & HeartRateFlags.HAS_RR_INTERVAL:
        if reading.rr_intervals is None:
            raise ValueError("RR interval flagged but missing")
        for rr in reading.rr_intervals:
            out += _u16(rr, "RR interval")

    return bytes(out)
