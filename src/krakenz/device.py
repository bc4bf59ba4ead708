"""Kraken Z3 device facade.

Thin layer over ``KrakenTransport`` that turns codec frames into
named operations (status, speeds, LCD settings, bucket housekeeping).
Bulk uploads live in ``buckets.BucketAllocator``; this class only owns
the one-command-one-ack operations.
"""
from __future__ import annotations

import logging
import time
from typing import Optional, Sequence, Tuple

from . import protocol
from .errors import AckTimeout
from .protocol import (
    Channel,
    DeviceStatus,
    FirmwareVersion,
    LcdInfo,
)
from .transport import KrakenTransport, open_transport

log = logging.getLogger(__name__)

# Settle time between init commands (firmware drops back-to-back writes)
_INIT_SETTLE_S = 0.05


class KrakenZ3:
    """One open Kraken Z53/Z63/Z73."""

    def __init__(self, transport: KrakenTransport) -> None:
        self.transport = transport
        self.firmware: Optional[FirmwareVersion] = None

    @classmethod
    def open(cls, serial: Optional[str] = None) -> 'KrakenZ3':
        """Open the first (or the *serial*-matching) attached cooler."""
        return cls(open_transport(serial=serial))

    def close(self) -> None:
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def closed(self) -> bool:
        return self.transport.closed

    # ── Initialization ───────────────────────────────────────────────

    def initialize(self) -> FirmwareVersion:
        """Run the CAM-style init sequence and return the firmware version.

        Older firmware sometimes never answers the firmware query; the
        version is then reported as 0.0.0 and initialization continues.
        """
        self.transport.drain()
        try:
            reply = self.transport.send_command(protocol.encode_firmware_request())
            firmware = protocol.parse_firmware(reply or b'')
        except AckTimeout:
            log.warning("No firmware response; continuing with unknown version")
            firmware = FirmwareVersion(0, 0, 0)

        time.sleep(_INIT_SETTLE_S)
        self.transport.send_command(protocol.encode_led_info_request())
        time.sleep(_INIT_SETTLE_S)
        self.transport.send_command(protocol.encode_init_interval())
        self.transport.send_command(protocol.encode_init_complete())

        self.firmware = firmware
        log.info("Kraken Z3 initialized, firmware %s", firmware)
        return firmware

    # ── Cooling ──────────────────────────────────────────────────────

    def get_status(self) -> DeviceStatus:
        reply = self.transport.send_command(protocol.encode_status_request())
        return protocol.parse_status(reply or b'')

    def set_fixed_speed(self, channel: Channel, duty: int) -> None:
        self.transport.send_command(protocol.encode_fixed_speed(channel, duty))
        log.debug("%s fixed at %d%%", channel.name.lower(), duty)

    def set_speed_profile(self, channel: Channel,
                          points: Sequence[Tuple[int, int]]) -> None:
        """Upload a device-side curve built from sparse (temp, duty) points."""
        duties = protocol.interpolate_curve(points)
        self.transport.send_command(protocol.encode_speed_profile(channel, duties))
        log.info("%s profile uploaded (%d points)", channel.name.lower(), len(points))

    # ── LCD ──────────────────────────────────────────────────────────

    def get_lcd_info(self) -> LcdInfo:
        self.transport.drain()
        reply = self.transport.send_command(protocol.encode_lcd_info_request())
        return protocol.parse_lcd_info(reply or b'')

    def set_lcd_config(self, brightness: int, orientation: int) -> None:
        self.transport.send_command(protocol.encode_lcd_config(brightness, orientation))

    def set_brightness(self, brightness: int) -> None:
        """Change brightness, keeping the current orientation."""
        current = self.get_lcd_info()
        self.set_lcd_config(brightness, current.orientation)

    def set_orientation(self, orientation: int) -> None:
        """Change orientation (0-3 quarter turns), keeping brightness."""
        current = self.get_lcd_info()
        self.set_lcd_config(current.brightness, orientation)

    def set_visual_mode(self, mode: int, index: int = 0) -> None:
        self.transport.send_command(protocol.encode_visual_mode(mode, index))

    def set_host_info(self, cpu_temp: float, gpu_temp: float) -> None:
        self.transport.send_command(protocol.encode_host_info(int(cpu_temp), int(gpu_temp)))

    # ── Buckets ──────────────────────────────────────────────────────

    def query_bucket(self, index: int) -> protocol.BucketInfo:
        reply = self.transport.send_command(protocol.encode_bucket_query(index))
        return protocol.parse_bucket_info(index, reply or b'')

    def delete_bucket(self, index: int) -> None:
        self.transport.send_command(protocol.encode_bucket_delete(index))
