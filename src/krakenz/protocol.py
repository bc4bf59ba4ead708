#!/usr/bin/env python3
"""
Kraken Z3 wire protocol: HID command frames and the bulk asset header.

Everything here is pure (no I/O) so the byte layouts can be tested without
hardware.  Layouts follow liquidctl's kraken3 driver and USB captures of
NZXT CAM talking to a Kraken Z63.

Control channel (HID, 64-byte reports)::

    start bulk   36 01 [bucket]        → 37 01
    end bulk     36 02                 → 37 02
    setup bucket 32 01 [idx] [id] [mem_lo] [mem_hi] [pages_lo] [pages_hi] 01
                                       → 33 01
    delete       32 02 [idx]           → 33 02
    query        30 04 [idx]           → 31 04
    set speed    72 [ch] [duty x 40]   → FF 01
    visual mode  38 01 [mode] [idx]    → 39 01

Bulk channel (interface 0, EP 0x02)::

    12 FA 01 E8 AB CD EF 98 76 54 32 10 [type] 00 00 00 [len_le32]
    followed by exactly len_le32 payload bytes
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple

from .errors import MalformedResponse

# =========================================================================
# Device identity and geometry
# =========================================================================

NZXT_VID = 0x1E71
KRAKEN_Z3_PID = 0x3008  # Z53 / Z63 / Z73

HID_REPORT_LENGTH = 64

LCD_WIDTH = 320
LCD_HEIGHT = 320
BYTES_PER_PIXEL = 4  # RGBA
RASTER_SIZE = LCD_WIDTH * LCD_HEIGHT * BYTES_PER_PIXEL  # 409600

# LCD memory: 16 buckets sharing 24320 one-KiB pages
BUCKET_COUNT = 16
MEMORY_PAGE_SIZE = 1024
LCD_TOTAL_MEMORY_PAGES = 24320

# =========================================================================
# Bulk asset header
# =========================================================================

BULK_MAGIC = bytes([
    0x12, 0xFA, 0x01, 0xE8, 0xAB, 0xCD, 0xEF, 0x98, 0x76, 0x54, 0x32, 0x10,
])
BULK_HEADER_SIZE = 20
_BULK_HEADER = struct.Struct('<12sB3xI')

ASSET_GIF = 0x01
ASSET_STATIC = 0x02

# =========================================================================
# HID opcodes and response prefixes
# =========================================================================

CMD_FIRMWARE_INFO = b'\x10\x01'
CMD_LED_INFO = b'\x20\x03'
CMD_LCD_INFO = b'\x30\x01'
CMD_LCD_CONFIG = b'\x30\x02\x01'
CMD_BUCKET_QUERY = b'\x30\x04'
CMD_INIT_COMPLETE = b'\x70\x01'
CMD_INIT_INTERVAL = b'\x70\x02\x01\xB8\x01'  # 500 ms status broadcast
CMD_HOST_INFO = b'\x73\x01'
CMD_REQUEST_STATUS = b'\x74\x01'
CMD_VISUAL_MODE = b'\x38\x01'

OP_BUCKET = 0x32
SUB_BUCKET_SET = 0x01
SUB_BUCKET_DELETE = 0x02

OP_BULK = 0x36
SUB_BULK_START = 0x01
SUB_BULK_END = 0x02
SUB_BULK_HANDSHAKE = 0x03

OP_SET_SPEED = 0x72

ACK_BULK = 0x37

RESP_FIRMWARE = b'\x11\x01'
RESP_LED_INFO = b'\x21\x03'
RESP_LCD_INFO = b'\x31\x01'
RESP_BUCKET_INFO = b'\x31\x04'
RESP_BUCKET_SET = b'\x33\x01'
RESP_BUCKET_DELETE = b'\x33\x02'
RESP_BULK_START = bytes([ACK_BULK, SUB_BULK_START])
RESP_BULK_END = bytes([ACK_BULK, SUB_BULK_END])
RESP_VISUAL_MODE = b'\x39\x01'
RESP_SPEED_ACK = b'\xFF\x01'
RESP_STATUS = b'\x75\x01'
RESP_STATUS_ALT = b'\x71\x01'

# LCD visual modes (38 01 [mode] [index])
LCD_MODE_CPU = 1
LCD_MODE_LIQUID = 2
LCD_MODE_GPU = 3
LCD_MODE_BUCKET = 4

# Device-side speed curves cover 20..59 °C in 1 °C steps
CURVE_MIN_TEMP = 20
CRITICAL_TEMPERATURE = 59
CURVE_POINTS = CRITICAL_TEMPERATURE - CURVE_MIN_TEMP + 1  # 40

# Status report offsets (75 01 layout)
_OFFSET_TEMP_INT = 15
_OFFSET_TEMP_DEC = 16
_OFFSET_PUMP_RPM = 17
_OFFSET_PUMP_DUTY = 19
_OFFSET_FAN_DUTY = 20
_OFFSET_FAN_RPM = 23
_STATUS_MIN_LENGTH = 25

# Bucket info offsets (31 04 layout)
_OFFSET_BUCKET_START = 17
_OFFSET_BUCKET_SIZE = 19
_BUCKET_INFO_MIN_LENGTH = 21


# =========================================================================
# Data classes
# =========================================================================

@dataclass(frozen=True)
class CommandFrame:
    """One HID command plus the response prefixes that acknowledge it.

    ``expect`` is empty for the handful of commands the firmware never
    answers (init sequence, LCD config, host info).
    """
    name: str
    payload: bytes
    expect: Tuple[bytes, ...] = ()

    @property
    def opcode(self) -> int:
        return self.payload[0]

    @property
    def acknowledged(self) -> bool:
        return bool(self.expect)

    def to_report(self) -> bytes:
        """Zero-pad the payload to a full 64-byte HID report."""
        if len(self.payload) > HID_REPORT_LENGTH:
            raise ValueError(
                f"{self.name}: payload {len(self.payload)} bytes exceeds "
                f"{HID_REPORT_LENGTH}-byte report"
            )
        return self.payload.ljust(HID_REPORT_LENGTH, b'\x00')

    def matches(self, data: bytes) -> bool:
        """Whether *data* starts with one of the accepted prefixes."""
        return any(data[:len(p)] == p for p in self.expect)


class Channel(Enum):
    """Speed-controlled outputs.  Value is the HID channel id."""
    PUMP = 0x01
    FAN = 0x02

    @property
    def min_duty(self) -> int:
        return 20 if self is Channel.PUMP else 0

    @property
    def max_duty(self) -> int:
        return 100

    def validate_duty(self, duty: int) -> int:
        if not self.min_duty <= duty <= self.max_duty:
            raise ValueError(
                f"Invalid duty {duty}% for {self.name.lower()}. "
                f"Valid range: {self.min_duty}%-{self.max_duty}%"
            )
        return duty

    def clamp(self, duty: float) -> int:
        """Round and clamp a duty into this channel's range."""
        return max(self.min_duty, min(self.max_duty, int(round(duty))))

    @classmethod
    def parse(cls, name: str) -> 'Channel':
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown channel '{name}' (use pump or fan)") from None


class BucketState(Enum):
    EMPTY = 'empty'
    OCCUPIED = 'occupied'


@dataclass(frozen=True)
class BucketInfo:
    """Mirror entry for one LCD memory bucket."""
    index: int
    state: BucketState = BucketState.EMPTY
    start_page: int = 0
    size_pages: int = 0

    @property
    def occupied(self) -> bool:
        return self.state is BucketState.OCCUPIED

    @property
    def end_page(self) -> int:
        return self.start_page + self.size_pages


@dataclass(frozen=True)
class DeviceStatus:
    liquid_temp: float
    pump_rpm: int
    pump_duty: int
    fan_rpm: int
    fan_duty: int


@dataclass(frozen=True)
class FirmwareVersion:
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class LcdInfo:
    brightness: int
    orientation: int  # 0..3 (quarter turns)
    raw: bytes = b''


# =========================================================================
# Bulk header
# =========================================================================

def encode_bulk_header(asset_type: int, length: int) -> bytes:
    """Build the 20-byte header that precedes every bulk asset."""
    if not 0 <= asset_type <= 0xFF:
        raise ValueError(f"asset type out of range: {asset_type}")
    if not 0 <= length <= 0xFFFFFFFF:
        raise ValueError(f"payload length out of range: {length}")
    return _BULK_HEADER.pack(BULK_MAGIC, asset_type, length)


def decode_bulk_header(data: bytes) -> Tuple[int, int]:
    """Parse a bulk header back into ``(asset_type, length)``."""
    if len(data) != BULK_HEADER_SIZE:
        raise MalformedResponse(
            f"bulk header must be {BULK_HEADER_SIZE} bytes, got {len(data)}"
        )
    if data[:12] != BULK_MAGIC:
        raise MalformedResponse(f"bad bulk magic: {data[:12].hex()}")
    if data[13:16] != b'\x00\x00\x00':
        raise MalformedResponse(f"non-zero bulk header padding: {data[13:16].hex()}")
    _, asset_type, length = _BULK_HEADER.unpack(data)
    return asset_type, length


# =========================================================================
# Command builders
# =========================================================================

def _check_bucket(index: int) -> int:
    if not 0 <= index < BUCKET_COUNT:
        raise ValueError(f"bucket index {index} outside 0-{BUCKET_COUNT - 1}")
    return index


def encode_bucket_start(bucket_index: int) -> CommandFrame:
    return CommandFrame(
        'bulk-start',
        bytes([OP_BULK, SUB_BULK_START, _check_bucket(bucket_index)]),
        (RESP_BULK_START,),
    )


def encode_bucket_end() -> CommandFrame:
    return CommandFrame('bulk-end', bytes([OP_BULK, SUB_BULK_END]), (RESP_BULK_END,))


def encode_bulk_handshake() -> CommandFrame:
    """36 03, sent before an upload sequence.  Never acknowledged."""
    return CommandFrame('bulk-handshake', bytes([OP_BULK, SUB_BULK_HANDSHAKE]))


def encode_bucket_setup(bucket_index: int, start_page: int, size_pages: int) -> CommandFrame:
    """Reserve *size_pages* of LCD memory at *start_page* for a bucket.

    The bucket id is always index + 1; the trailing 0x01 is the asset count
    (one asset per bucket, a GIF counts as one).
    """
    _check_bucket(bucket_index)
    payload = bytes([OP_BUCKET, SUB_BUCKET_SET, bucket_index, bucket_index + 1]) \
        + struct.pack('<HH', start_page, size_pages) + b'\x01'
    return CommandFrame('bucket-setup', payload, (RESP_BUCKET_SET,))


def encode_bucket_delete(bucket_index: int) -> CommandFrame:
    return CommandFrame(
        'bucket-delete',
        bytes([OP_BUCKET, SUB_BUCKET_DELETE, _check_bucket(bucket_index)]),
        (RESP_BUCKET_DELETE,),
    )


def encode_bucket_query(bucket_index: int) -> CommandFrame:
    return CommandFrame(
        'bucket-query',
        CMD_BUCKET_QUERY + bytes([_check_bucket(bucket_index)]),
        (RESP_BUCKET_INFO,),
    )


def encode_status_request() -> CommandFrame:
    return CommandFrame(
        'status', CMD_REQUEST_STATUS, (RESP_STATUS, RESP_STATUS_ALT, RESP_SPEED_ACK),
    )


def encode_firmware_request() -> CommandFrame:
    return CommandFrame('firmware', CMD_FIRMWARE_INFO, (RESP_FIRMWARE,))


def encode_led_info_request() -> CommandFrame:
    return CommandFrame('led-info', CMD_LED_INFO)


def encode_init_interval() -> CommandFrame:
    return CommandFrame('init-interval', CMD_INIT_INTERVAL)


def encode_init_complete() -> CommandFrame:
    return CommandFrame('init-complete', CMD_INIT_COMPLETE)


def encode_lcd_info_request() -> CommandFrame:
    return CommandFrame('lcd-info', CMD_LCD_INFO, (RESP_LCD_INFO,))


def encode_lcd_config(brightness: int, orientation: int) -> CommandFrame:
    """Brightness 0-100, orientation 0-3 (0°, 90°, 180°, 270°)."""
    if not 0 <= brightness <= 100:
        raise ValueError("Brightness must be between 0 and 100")
    if not 0 <= orientation <= 3:
        raise ValueError("Orientation must be between 0 and 3 (0=0, 1=90, 2=180, 3=270)")
    payload = CMD_LCD_CONFIG + bytes([brightness, 0x00, 0x00, 0x01, orientation])
    return CommandFrame('lcd-config', payload)


def encode_visual_mode(mode: int, index: int = 0) -> CommandFrame:
    if not 0 <= mode <= 0xFF or not 0 <= index <= 0xFF:
        raise ValueError(f"visual mode/index out of range: {mode}/{index}")
    return CommandFrame('visual-mode', CMD_VISUAL_MODE + bytes([mode, index]),
                        (RESP_VISUAL_MODE,))


def encode_host_info(cpu_temp: int, gpu_temp: int) -> CommandFrame:
    cpu = max(0, min(255, int(cpu_temp)))
    gpu = max(0, min(255, int(gpu_temp)))
    return CommandFrame('host-info', CMD_HOST_INFO + bytes([cpu, gpu]))


def encode_speed_profile(channel: Channel, duties: Sequence[int]) -> CommandFrame:
    """Upload a 40-point duty curve (20..59 °C) for *channel*."""
    if len(duties) != CURVE_POINTS:
        raise ValueError(f"speed profile needs {CURVE_POINTS} duties, got {len(duties)}")
    for duty in duties:
        channel.validate_duty(duty)
    payload = bytes([OP_SET_SPEED, channel.value]) + bytes(duties)
    return CommandFrame(f'speed-{channel.name.lower()}', payload, (RESP_SPEED_ACK,))


def encode_fixed_speed(channel: Channel, duty: int) -> CommandFrame:
    """A flat curve: the same duty at every temperature."""
    return encode_speed_profile(channel, [channel.validate_duty(duty)] * CURVE_POINTS)


def interpolate_curve(points: Sequence[Tuple[int, int]]) -> List[int]:
    """Expand sparse (temp, duty) points into the device's 40-point curve.

    Points must lie within 20..59 °C.  Temperatures before the first point
    take its duty, after the last point take the last duty.
    """
    if not points:
        raise ValueError("Profile cannot be empty")
    ordered = sorted((int(t), int(d)) for t, d in points)
    for temp, _ in ordered:
        if not CURVE_MIN_TEMP <= temp <= CRITICAL_TEMPERATURE:
            raise ValueError(
                f"Invalid temperature {temp}°C. Valid range: "
                f"{CURVE_MIN_TEMP}-{CRITICAL_TEMPERATURE}°C"
            )

    duties = []
    for temp in range(CURVE_MIN_TEMP, CRITICAL_TEMPERATURE + 1):
        lower = [p for p in ordered if p[0] <= temp]
        upper = [p for p in ordered if p[0] >= temp]
        if not lower:
            duties.append(upper[0][1])
        elif not upper:
            duties.append(lower[-1][1])
        else:
            (t1, d1), (t2, d2) = lower[-1], upper[0]
            if t1 == t2:
                duties.append(d1)
            else:
                duties.append(int(round(d1 + (temp - t1) * (d2 - d1) / (t2 - t1))))
    return duties


# =========================================================================
# Response decoders
# =========================================================================

def check_response(frame: CommandFrame, data: bytes) -> bytes:
    """Validate that *data* acknowledges *frame*.  Returns *data*."""
    if len(data) < 2:
        raise MalformedResponse(
            f"{frame.name}: truncated response ({len(data)} bytes)"
        )
    if frame.expect and not frame.matches(data):
        raise MalformedResponse(
            f"{frame.name}: unexpected response header {data[:2].hex()} "
            f"(expected {' / '.join(p.hex() for p in frame.expect)})"
        )
    return data


def parse_status(data: bytes) -> DeviceStatus:
    """Decode a status report (75 01, or the 71 01 / FF 01 variants)."""
    if len(data) < _STATUS_MIN_LENGTH:
        raise MalformedResponse(
            f"status report too short: {len(data)} bytes, expected {_STATUS_MIN_LENGTH}"
        )
    head = data[:2]
    if head == RESP_STATUS:
        if data[_OFFSET_TEMP_INT] == 0xFF and data[_OFFSET_TEMP_DEC] == 0xFF:
            raise MalformedResponse(
                "Invalid temperature reading (0xFFFF); possible firmware fault"
            )
        pump_rpm, = struct.unpack_from('<H', data, _OFFSET_PUMP_RPM)
        fan_rpm, = struct.unpack_from('<H', data, _OFFSET_FAN_RPM)
        return DeviceStatus(
            liquid_temp=data[_OFFSET_TEMP_INT] + data[_OFFSET_TEMP_DEC] / 10.0,
            pump_rpm=pump_rpm,
            pump_duty=data[_OFFSET_PUMP_DUTY],
            fan_rpm=fan_rpm,
            fan_duty=data[_OFFSET_FAN_DUTY],
        )
    if head in (RESP_STATUS_ALT, RESP_SPEED_ACK):
        # Older firmware: temp at 2/3, pump rpm 5-6, pump duty 7,
        # fan duty 13, fan rpm 14-15
        pump_rpm, = struct.unpack_from('<H', data, 5)
        fan_rpm, = struct.unpack_from('<H', data, 14)
        return DeviceStatus(
            liquid_temp=data[2] + data[3] / 10.0,
            pump_rpm=pump_rpm,
            pump_duty=data[7],
            fan_rpm=fan_rpm,
            fan_duty=data[13],
        )
    raise MalformedResponse(f"unknown status header: {head.hex()}")


def parse_firmware(data: bytes) -> FirmwareVersion:
    if len(data) < 0x14:
        raise MalformedResponse("firmware response too short")
    if data[:2] != RESP_FIRMWARE:
        raise MalformedResponse(f"invalid firmware response header: {data[:2].hex()}")
    return FirmwareVersion(data[0x11], data[0x12], data[0x13])


def parse_lcd_info(data: bytes) -> LcdInfo:
    if len(data) <= 0x1A:
        raise MalformedResponse("LCD info response too short")
    if data[:2] != RESP_LCD_INFO:
        raise MalformedResponse(f"invalid LCD info header: {data[:2].hex()}")
    return LcdInfo(brightness=data[0x18], orientation=data[0x1A], raw=bytes(data))


def parse_bucket_info(index: int, data: bytes) -> BucketInfo:
    """Decode a 31 04 bucket query reply.  Size 0 pages means empty."""
    if len(data) < _BUCKET_INFO_MIN_LENGTH:
        raise MalformedResponse(
            f"bucket {index} info too short: {len(data)} bytes"
        )
    if data[:2] != RESP_BUCKET_INFO:
        raise MalformedResponse(f"invalid bucket info header: {data[:2].hex()}")
    start, size = struct.unpack_from('<HH', data, _OFFSET_BUCKET_START)
    state = BucketState.OCCUPIED if size > 0 else BucketState.EMPTY
    return BucketInfo(index=index, state=state, start_page=start, size_pages=size)


def pages_for(payload_length: int) -> int:
    """LCD memory pages needed for header + payload (rounded up)."""
    total = BULK_HEADER_SIZE + payload_length
    return -(-total // MEMORY_PAGE_SIZE)
