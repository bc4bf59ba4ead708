"""
krakenz - NZXT Kraken Z3 control for Linux

Drives the Kraken Z53/Z63/Z73 all-in-one cooler without CAM:

Features:
- Pump and fan duty (fixed or temperature curves)
- Closed-loop cooling daemon (liquid or CPU temperature)
- LCD brightness, orientation and built-in visual modes
- Images, GIF animations and live temperature gauges on the 320x320 LCD

Usage:
    # As a library
    from krakenz import KrakenZ3, BucketAllocator
    with KrakenZ3.open() as kraken:
        kraken.initialize()
        print(kraken.get_status())

    # Command line
    krakenz status
    krakenz start
"""

from krakenz.__version__ import __version__

# Core exports
from krakenz.buckets import BucketAllocator
from krakenz.cooling import CoolingLoop, ProfileCurve
from krakenz.device import KrakenZ3
from krakenz.display import FramePresenter
from krakenz.errors import (
    AckTimeout,
    AssetDecodeError,
    DeviceClosed,
    DeviceNotFound,
    KrakenError,
    NoFreeBucket,
    SensorError,
    TransportError,
)
from krakenz.frames import AnimatedSequenceSource, GaugeStreamSource, StaticImageSource
from krakenz.gauge import GaugeStyle, render_gauge
from krakenz.protocol import Channel
from krakenz.scheduler import SharedTelemetry, UnifiedScheduler
from krakenz.telemetry import DeviceTelemetry, TempSource

__all__ = [
    # Version
    "__version__",
    # Device
    "KrakenZ3",
    "Channel",
    "BucketAllocator",
    # Control loops
    "CoolingLoop",
    "ProfileCurve",
    "FramePresenter",
    "UnifiedScheduler",
    "SharedTelemetry",
    # Frames
    "StaticImageSource",
    "AnimatedSequenceSource",
    "GaugeStreamSource",
    "GaugeStyle",
    "render_gauge",
    # Telemetry
    "DeviceTelemetry",
    "TempSource",
    # Errors
    "KrakenError",
    "TransportError",
    "DeviceNotFound",
    "DeviceClosed",
    "AckTimeout",
    "AssetDecodeError",
    "NoFreeBucket",
    "SensorError",
]
