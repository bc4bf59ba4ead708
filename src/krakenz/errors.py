"""
Exception hierarchy for krakenz.

Transport failures derive from ``TransportError`` so long-running loops can
tell "the USB exchange failed" apart from "the data made no sense".
``DeviceClosed`` is the one error every loop treats as terminal.
"""


class KrakenError(Exception):
    """Base for every error raised by krakenz."""


# -- Transport ---------------------------------------------------------------

class TransportError(KrakenError):
    """USB/HID level failure."""


class DeviceNotFound(TransportError):
    """No matching device is attached."""


class AccessDenied(TransportError):
    """The device exists but could not be claimed.

    Usually another process (CAM, liquidctl, a second krakenz) holds the
    interface, or the udev rules do not grant access.
    """


class AckTimeout(TransportError):
    """No acknowledgment arrived for a command after all retries."""


class ShortWrite(TransportError):
    """A bulk write transferred fewer bytes than requested."""


class DeviceClosed(TransportError):
    """The device handle was released; it cannot be used again."""


# -- Protocol ----------------------------------------------------------------

class MalformedResponse(KrakenError):
    """A response frame was truncated or carried the wrong header."""


class ProtocolViolation(KrakenError):
    """Declared bulk payload length does not match the bytes supplied."""


# -- Assets / buckets / sensors --------------------------------------------

class AssetDecodeError(KrakenError):
    """An image or animation could not be decoded or resized."""


class NoFreeBucket(KrakenError):
    """Every LCD memory bucket is occupied (or protected)."""


class SensorError(KrakenError):
    """A telemetry reading could not be obtained."""
