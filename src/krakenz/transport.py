#!/usr/bin/env python3
"""
USB transport for Kraken Z3 coolers: HID control channel + bulk channel.

The cooler exposes two interfaces:

  • interface 1: HID, 64-byte reports.  Commands and acknowledgments.
  • interface 0: vendor bulk, EP 0x02 OUT.  LCD asset payloads.

The ``UsbChannel`` ABC abstracts the raw I/O so that:
  • Tests can inject fake channels (no real hardware needed).
  • ``HidControlChannel`` talks to the HID interface via hidapi.
  • ``PyUsbBulkChannel`` talks to the bulk interface via pyusb (libusb).

``KrakenTransport`` combines the two and owns the single-writer guard:
every command exchange and bulk write runs under one re-entrant lock, and
callers that need a multi-step sequence (bucket start → header → payload →
end) hold ``exclusive()`` for the whole sequence.

Linux dependencies:
  • pyusb:  ``pip install pyusb``  (needs libusb: ``apt install libusb-1.0-0``)
  • hidapi: ``pip install hidapi``
"""

from __future__ import annotations

import errno
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

import usb.core
import usb.util

from .errors import (
    AccessDenied,
    AckTimeout,
    DeviceClosed,
    DeviceNotFound,
    ShortWrite,
    TransportError,
)
from .protocol import HID_REPORT_LENGTH, KRAKEN_Z3_PID, NZXT_VID, CommandFrame

# hidapi ships as the ``hidapi`` distribution, imported as ``hid``
try:
    import hid as hidapi
    HIDAPI_AVAILABLE = True
except ImportError:
    HIDAPI_AVAILABLE = False

log = logging.getLogger(__name__)


# =========================================================================
# Constants
# =========================================================================

BULK_INTERFACE = 0
BULK_OUT_ENDPOINT = 0x02

# Per-read timeout while waiting for an acknowledgment (ms)
COMMAND_TIMEOUT_MS = 500
# Extra attempts (rewrite + wait) after the first timeout
COMMAND_RETRIES = 2
# Bulk writes carry up to ~400 KB; allow the device time to drain them
BULK_TIMEOUT_MS = 5000
# Drain reads use a tiny timeout so an empty queue returns at once
DRAIN_TIMEOUT_MS = 1
DRAIN_MAX_REPORTS = 64

_ACCESS_ERRNOS = (errno.EACCES, errno.EBUSY, errno.EPERM)
_GONE_ERRNOS = (errno.ENODEV, errno.ENOENT, errno.EIO)


# =========================================================================
# Abstract channel
# =========================================================================

class UsbChannel(ABC):
    """One logical USB pipe to the device, mockable for testing."""

    @abstractmethod
    def open(self) -> None:
        """Open the device and claim the interface."""

    @abstractmethod
    def close(self) -> None:
        """Release the interface."""

    @abstractmethod
    def write(self, data: bytes, timeout: int) -> int:
        """Write *data*.  Returns bytes transferred."""

    @abstractmethod
    def read(self, length: int, timeout: int) -> bytes:
        """Read up to *length* bytes.  Empty bytes on timeout."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel is currently open."""


def _usb_error(exc: 'usb.core.USBError', what: str) -> TransportError:
    """Translate a pyusb error into the krakenz taxonomy."""
    code = getattr(exc, 'errno', None)
    if code in _ACCESS_ERRNOS:
        return AccessDenied(f"{what}: {exc} (interface busy or no permission)")
    if code in _GONE_ERRNOS:
        return DeviceClosed(f"{what}: {exc} (device disconnected)")
    return TransportError(f"{what}: {exc}")


# =========================================================================
# HID control channel (hidapi)
# =========================================================================

class HidControlChannel(UsbChannel):
    """Control channel over the HID interface using hidapi.

    hidapi routes writes to the interrupt OUT endpoint and reads from the
    interrupt IN endpoint; the report-ID byte 0x00 is prepended on write.
    """

    def __init__(self, vid: int = NZXT_VID, pid: int = KRAKEN_Z3_PID,
                 serial: Optional[str] = None):
        if not HIDAPI_AVAILABLE:
            raise ImportError(
                "hidapi is not installed. Install with: pip install hidapi"
            )
        self._vid = vid
        self._pid = pid
        self._serial = serial
        self._device: Any = None

    def open(self) -> None:
        if not hidapi.enumerate(self._vid, self._pid):
            raise DeviceNotFound(
                f"Kraken not found: VID={self._vid:#06x} PID={self._pid:#06x}. "
                "Check USB connection and permissions."
            )
        device = hidapi.device()
        try:
            if self._serial:
                device.open(self._vid, self._pid, self._serial)
            else:
                device.open(self._vid, self._pid)
        except OSError as e:
            # Enumerated but not openable: another process or udev permissions
            raise AccessDenied(f"cannot open HID interface: {e}") from e
        device.set_nonblocking(0)
        self._device = device
        log.info("Opened HID control channel %04x:%04x", self._vid, self._pid)

    def close(self) -> None:
        if self._device is not None:
            try:
                self._device.close()
            except OSError as e:
                log.debug("HID close: %s", e)
            self._device = None

    def write(self, data: bytes, timeout: int = COMMAND_TIMEOUT_MS) -> int:
        if self._device is None:
            raise DeviceClosed("HID channel not open")
        try:
            written = self._device.write(b'\x00' + bytes(data))
        except (OSError, ValueError) as e:
            raise TransportError(f"HID write failed: {e}") from e
        if written < 0:
            raise TransportError("HID write failed (device disconnected?)")
        # hidapi counts the report-ID byte
        return max(0, written - 1)

    def read(self, length: int = HID_REPORT_LENGTH, timeout: int = COMMAND_TIMEOUT_MS) -> bytes:
        if self._device is None:
            raise DeviceClosed("HID channel not open")
        try:
            data = self._device.read(length, timeout)
        except (OSError, ValueError) as e:
            raise TransportError(f"HID read failed: {e}") from e
        return bytes(data) if data else b''

    @property
    def is_open(self) -> bool:
        return self._device is not None


# =========================================================================
# Bulk channel (pyusb)
# =========================================================================

class PyUsbBulkChannel(UsbChannel):
    """Bulk OUT channel on interface 0 via pyusb (libusb backend).

    Only interface 0 is claimed; the HID interface stays with the kernel's
    usbhid driver so hidapi keeps working alongside.
    """

    def __init__(self, vid: int = NZXT_VID, pid: int = KRAKEN_Z3_PID,
                 serial: Optional[str] = None):
        self._vid = vid
        self._pid = pid
        self._serial = serial
        self._device: Any = None
        self._ep_out: Optional[int] = None

    def open(self) -> None:
        kwargs: dict[str, Any] = {'idVendor': self._vid, 'idProduct': self._pid}
        if self._serial:
            kwargs['serial_number'] = self._serial
        device = usb.core.find(**kwargs)  # type: ignore[union-attr]
        if device is None:
            raise DeviceNotFound(
                f"USB device not found: VID={self._vid:#06x} PID={self._pid:#06x}"
            )

        try:
            if device.is_kernel_driver_active(BULK_INTERFACE):  # type: ignore[union-attr]
                device.detach_kernel_driver(BULK_INTERFACE)  # type: ignore[union-attr]
                log.debug("Detached kernel driver from interface %d", BULK_INTERFACE)
        except NotImplementedError:
            pass  # backend without kernel driver support
        except usb.core.USBError as e:
            raise _usb_error(e, "detach kernel driver") from e

        try:
            try:
                device.get_active_configuration()  # type: ignore[union-attr]
            except usb.core.USBError:
                device.set_configuration()  # type: ignore[union-attr]
            usb.util.claim_interface(device, BULK_INTERFACE)
        except usb.core.USBError as e:
            raise _usb_error(e, "claim bulk interface") from e

        self._device = device
        self._detect_endpoint()
        log.info("Opened bulk channel %04x:%04x (EP OUT=0x%02x)",
                 self._vid, self._pid, self._ep_out or BULK_OUT_ENDPOINT)

    def _detect_endpoint(self) -> None:
        """Find the bulk OUT endpoint on interface 0 (fallback 0x02)."""
        try:
            cfg = self._device.get_active_configuration()
            intf = cfg[(BULK_INTERFACE, 0)]
            for ep in intf:
                if usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_OUT:
                    self._ep_out = ep.bEndpointAddress
                    break
        except (usb.core.USBError, KeyError, IndexError) as e:
            log.debug("Endpoint auto-detection failed: %s", e)

    def close(self) -> None:
        if self._device is not None:
            try:
                usb.util.release_interface(self._device, BULK_INTERFACE)
            except usb.core.USBError as e:
                log.debug("release_interface: %s", e)
            usb.util.dispose_resources(self._device)
            self._device = None
            self._ep_out = None

    def write(self, data: bytes, timeout: int = BULK_TIMEOUT_MS) -> int:
        if self._device is None:
            raise DeviceClosed("bulk channel not open")
        ep = self._ep_out if self._ep_out is not None else BULK_OUT_ENDPOINT
        try:
            return self._device.write(ep, data, timeout=timeout)
        except usb.core.USBTimeoutError as e:
            raise ShortWrite(f"bulk write timed out after {timeout} ms") from e
        except usb.core.USBError as e:
            raise _usb_error(e, "bulk write") from e

    def read(self, length: int, timeout: int = BULK_TIMEOUT_MS) -> bytes:
        raise NotImplementedError("the bulk interface is write-only")

    @property
    def is_open(self) -> bool:
        return self._device is not None


# =========================================================================
# Combined transport
# =========================================================================

class KrakenTransport:
    """Command/ack exchange and bulk writes against one device.

    The bulk channel is opened lazily on the first bulk write so status-only
    tools never claim interface 0.
    """

    def __init__(self, control: UsbChannel, bulk: Optional[UsbChannel] = None,
                 command_timeout_ms: int = COMMAND_TIMEOUT_MS,
                 retries: int = COMMAND_RETRIES):
        self._control = control
        self._bulk = bulk
        self._lock = threading.RLock()
        self._closed = False
        self.command_timeout_ms = command_timeout_ms
        self.retries = retries

    # -- Lifecycle -------------------------------------------------------

    def open(self) -> 'KrakenTransport':
        if self._closed:
            raise DeviceClosed("transport already closed")
        if not self._control.is_open:
            self._control.open()
        return self

    def close(self) -> None:
        """Release both channels.  Further operations raise DeviceClosed."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._bulk is not None and self._bulk.is_open:
                self._bulk.close()
            if self._control.is_open:
                self._control.close()
            log.info("Transport closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise DeviceClosed("device handle has been closed")

    # -- Single-writer guard --------------------------------------------

    @contextmanager
    def exclusive(self) -> Iterator['KrakenTransport']:
        """Hold the device for a multi-step sequence.

        Re-entrant: ``send_command`` / ``write_bulk`` called inside the
        block reuse the held lock.
        """
        with self._lock:
            self._ensure_open()
            yield self

    # -- Control channel -------------------------------------------------

    def drain(self) -> int:
        """Discard queued input reports.  Returns how many were dropped."""
        dropped = 0
        with self.exclusive():
            while dropped < DRAIN_MAX_REPORTS:
                if not self._control.read(HID_REPORT_LENGTH, DRAIN_TIMEOUT_MS):
                    break
                dropped += 1
        if dropped:
            log.debug("Drained %d queued report(s)", dropped)
        return dropped

    def send_command(self, frame: CommandFrame) -> Optional[bytes]:
        """Write *frame* and wait for its acknowledgment.

        Reports that do not match (periodic status broadcasts and the like)
        are skipped.  If nothing matches within the timeout the command is
        rewritten, up to ``retries`` extra times, then ``AckTimeout``.

        Returns the matching report, or None for unacknowledged frames.
        """
        report = frame.to_report()
        with self.exclusive():
            for attempt in range(1, self.retries + 2):
                log.debug("→ %s %s", frame.name, frame.payload.hex())
                self._control.write(report, self.command_timeout_ms)
                if not frame.acknowledged:
                    return None
                response = self._await(frame)
                if response is not None:
                    log.debug("← %s %s", frame.name, response[:16].hex())
                    return response
                log.warning("%s: no acknowledgment (attempt %d/%d)",
                            frame.name, attempt, self.retries + 1)
        raise AckTimeout(
            f"{frame.name}: no {'/'.join(p.hex() for p in frame.expect)} "
            f"response after {self.retries + 1} attempt(s)"
        )

    def _await(self, frame: CommandFrame) -> Optional[bytes]:
        deadline = time.monotonic() + self.command_timeout_ms / 1000.0
        while True:
            remaining = int((deadline - time.monotonic()) * 1000)
            if remaining <= 0:
                return None
            data = self._control.read(HID_REPORT_LENGTH, remaining)
            if not data:
                continue
            if frame.matches(data):
                return data
            log.debug("   skipped report %s while waiting for %s",
                      data[:2].hex(), frame.name)

    # -- Bulk channel ----------------------------------------------------

    def write_bulk(self, data: bytes) -> None:
        """One full blocking write.  Partial writes are fatal (ShortWrite)."""
        with self.exclusive():
            if self._bulk is None:
                raise TransportError("no bulk channel configured")
            if not self._bulk.is_open:
                self._bulk.open()
            written = self._bulk.write(data, BULK_TIMEOUT_MS)
            if written != len(data):
                raise ShortWrite(f"bulk write sent {written} of {len(data)} bytes")
            log.debug("Bulk write: %d bytes", written)


# =========================================================================
# Discovery / factory
# =========================================================================

@dataclass
class DetectedDevice:
    vid: int
    pid: int
    serial: str = ""
    bus: int = 0
    address: int = 0


def find_devices(vid: int = NZXT_VID, pid: int = KRAKEN_Z3_PID) -> List[DetectedDevice]:
    """List attached Kraken Z3 coolers."""
    devices = []
    for dev in usb.core.find(find_all=True, idVendor=vid, idProduct=pid) or []:
        serial = ""
        try:
            if dev.iSerialNumber:
                serial = usb.util.get_string(dev, dev.iSerialNumber) or ""
        except (usb.core.USBError, ValueError) as e:
            log.debug("Serial read failed: %s", e)
        devices.append(DetectedDevice(
            vid=vid, pid=pid, serial=serial,
            bus=getattr(dev, 'bus', 0) or 0,
            address=getattr(dev, 'address', 0) or 0,
        ))
    return devices


def open_transport(vid: int = NZXT_VID, pid: int = KRAKEN_Z3_PID,
                   serial: Optional[str] = None) -> KrakenTransport:
    """Open the HID control channel and prepare the (lazy) bulk channel."""
    transport = KrakenTransport(
        HidControlChannel(vid, pid, serial),
        PyUsbBulkChannel(vid, pid, serial),
    )
    return transport.open()
