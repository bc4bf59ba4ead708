#!/usr/bin/env python3
"""
Frame sources for the Kraken LCD.

Every source yields ``Frame`` objects: one 320x320 RGBA raster (409600
bytes, alpha forced to 0xFF) plus how long it should stay on screen.

  • StaticImageSource      one frame from any Pillow-readable image
  • AnimatedSequenceSource every frame of a GIF/APNG/WebP, with delays
  • GaugeStreamSource      an endless telemetry gauge, one frame per tick

Animations can also be re-encoded as one looping GIF (``encode_gif``) that
the device plays back by itself.

Decoding happens at construction so a corrupt file raises
``AssetDecodeError`` before anything touches the device.
"""

from __future__ import annotations

import io
import logging
import math
import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

from .errors import AssetDecodeError, SensorError
from .gauge import GaugeStyle, render_gauge
from .protocol import LCD_HEIGHT, LCD_WIDTH, RASTER_SIZE
from .telemetry import TelemetrySource, TempSource

log = logging.getLogger(__name__)

# Cap decompression at 16x the LCD area; guards against decompression bombs
Image.MAX_IMAGE_PIXELS = LCD_WIDTH * LCD_HEIGHT * 16 * 16

FIT_MODES = ('stretch', 'letterbox')
ORIENTATIONS = (0, 90, 180, 270)

# Animation timing
DELAY_QUANTUM_MS = 10
MIN_DELAY_MS = 20
DEFAULT_DELAY_MS = 100
MAX_ANIMATION_FRAMES = 50


@dataclass(frozen=True)
class Frame:
    data: bytes
    duration_ms: int

    def __post_init__(self):
        if len(self.data) != RASTER_SIZE:
            raise ValueError(f"raster must be {RASTER_SIZE} bytes, got {len(self.data)}")


# =========================================================================
# Raster conversion
# =========================================================================

def apply_orientation(image: Image.Image, orientation: int) -> Image.Image:
    """Rotate clockwise by *orientation* degrees (0/90/180/270)."""
    if orientation == 90:
        return image.transpose(Image.Transpose.ROTATE_270)
    elif orientation == 180:
        return image.transpose(Image.Transpose.ROTATE_180)
    elif orientation == 270:
        return image.transpose(Image.Transpose.ROTATE_90)
    return image


def to_raster(image: Image.Image, fit: str = 'stretch', orientation: int = 0,
              background: Tuple[int, int, int] = (0, 0, 0)) -> bytes:
    """Convert any PIL image to the LCD's 409600-byte opaque RGBA raster.

    ``stretch`` resizes straight to 320x320; ``letterbox`` keeps the aspect
    ratio and pads with *background*.  Transparent pixels are flattened
    onto *background*.  Resampling is always LANCZOS.
    """
    if fit not in FIT_MODES:
        raise ValueError(f"Unknown fit mode '{fit}' (use {' or '.join(FIT_MODES)})")
    if orientation not in ORIENTATIONS:
        raise ValueError(f"Orientation must be one of {ORIENTATIONS}, got {orientation}")

    img = apply_orientation(image.convert('RGBA'), orientation)
    size = (LCD_WIDTH, LCD_HEIGHT)
    if fit == 'stretch':
        img = img.resize(size, Image.Resampling.LANCZOS)
    else:
        img = ImageOps.pad(img, size, method=Image.Resampling.LANCZOS,
                           color=background + (0,))

    canvas = Image.new('RGBA', size, background + (255,))
    canvas.alpha_composite(img)

    arr = np.array(canvas, dtype=np.uint8)
    arr[:, :, 3] = 0xFF
    return arr.tobytes()


def rotate_raster(data: bytes, orientation: int) -> bytes:
    """Rotate an LCD raster clockwise by *orientation* degrees."""
    if orientation not in ORIENTATIONS:
        raise ValueError(f"Orientation must be one of {ORIENTATIONS}, got {orientation}")
    if orientation == 0:
        return data
    arr = np.frombuffer(data, dtype=np.uint8).reshape(LCD_HEIGHT, LCD_WIDTH, 4)
    return np.rot90(arr, k=-(orientation // 90)).tobytes()


def encode_gif(frames: List[Frame], orientation: int = 0) -> bytes:
    """Pack *frames* into a GIF that loops forever, keeping their delays."""
    if not frames:
        raise ValueError("no frames to encode")
    images = [
        Image.frombytes('RGBA', (LCD_WIDTH, LCD_HEIGHT), rotate_raster(f.data, orientation))
        .convert('RGB')
        for f in frames
    ]
    buf = io.BytesIO()
    images[0].save(buf, format='GIF', save_all=True, append_images=images[1:],
                   duration=[f.duration_ms for f in frames], loop=0)
    return buf.getvalue()


def quantize_delay(delay_ms: Optional[float]) -> int:
    """Round to 10 ms; missing/zero → 100 ms; never below 20 ms."""
    if not delay_ms or delay_ms <= 0:
        return DEFAULT_DELAY_MS
    quantized = int(round(delay_ms / DELAY_QUANTUM_MS)) * DELAY_QUANTUM_MS
    return max(MIN_DELAY_MS, quantized)


def _open(path) -> Image.Image:
    try:
        image = Image.open(path)
        image.load()
        return image
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise AssetDecodeError(f"cannot decode {path}: {e}") from e


# =========================================================================
# Sources
# =========================================================================

class StaticImageSource:
    """One still image, shown for *duration_ms* (0 = until replaced)."""

    def __init__(self, path, fit: str = 'stretch', orientation: int = 0,
                 duration_ms: int = 0):
        self.path = path
        with _open(path) as image:
            try:
                raster = to_raster(image, fit, orientation)
            except OSError as e:
                raise AssetDecodeError(f"cannot decode {path}: {e}") from e
        self._frame = Frame(raster, duration_ms)

    def reorient(self, orientation: int) -> None:
        """Rotate the decoded frame a further *orientation* degrees."""
        self._frame = Frame(rotate_raster(self._frame.data, orientation), self._frame.duration_ms)

    def frames(self) -> Iterator[Frame]:
        yield self._frame


class AnimatedSequenceSource:
    """Every frame of an animated image, decoded and converted up front.

    Long animations are decimated to ``max_frames``; a dropped frame's delay
    is added to the kept frame before it so total playback time is kept.
    ``frames()`` restarts from frame zero on every call and loops forever
    unless *repeat* gives a finite number of passes.
    """

    def __init__(self, path, fit: str = 'stretch', orientation: int = 0,
                 repeat: Optional[int] = None,
                 max_frames: int = MAX_ANIMATION_FRAMES):
        if repeat is not None and repeat < 1:
            raise ValueError("repeat must be at least 1 (or None to loop forever)")
        self.path = path
        self.repeat = repeat
        self._frames = self._decode(path, fit, orientation, max_frames)
        log.info("Decoded %s: %d frame(s), delays %s ms", path, len(self._frames),
                 [f.duration_ms for f in self._frames])

    @staticmethod
    def _decode(path, fit, orientation, max_frames) -> List[Frame]:
        with _open(path) as image:
            total = getattr(image, 'n_frames', 1)
            step = math.ceil(total / max_frames) if total > max_frames else 1
            rasters: List[bytes] = []
            delays: List[float] = []
            try:
                for i in range(total):
                    image.seek(i)
                    delay = image.info.get('duration') or DEFAULT_DELAY_MS
                    if i % step == 0 and len(rasters) < max_frames:
                        rasters.append(to_raster(image, fit, orientation))
                        delays.append(delay)
                    elif delays:
                        delays[-1] += delay
            except (OSError, EOFError) as e:
                raise AssetDecodeError(f"cannot decode frame of {path}: {e}") from e
        if not rasters:
            raise AssetDecodeError(f"{path} has no frames")
        return [Frame(r, quantize_delay(d)) for r, d in zip(rasters, delays)]

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def delays(self) -> List[int]:
        return [f.duration_ms for f in self._frames]

    def reorient(self, orientation: int) -> None:
        self._frames = [Frame(rotate_raster(f.data, orientation), f.duration_ms)
                        for f in self._frames]

    def to_gif(self, orientation: int = 0) -> bytes:
        """One looping GIF of the decoded frames, for on-device playback."""
        return encode_gif(self._frames, orientation)

    def frames(self) -> Iterator[Frame]:
        passes = 0
        while self.repeat is None or passes < self.repeat:
            yield from self._frames
            passes += 1


class GaugeStreamSource:
    """Endless gauge frames driven by a telemetry source.

    A failed sensor read yields nothing for that tick; the source waits one
    interval (cut short by *stop_event*) and tries again.
    """

    def __init__(self, telemetry: TelemetrySource,
                 source: TempSource = TempSource.LIQUID,
                 style: Optional[GaugeStyle] = None,
                 label: Optional[str] = None,
                 interval: float = 2.0,
                 orientation: int = 0,
                 stop_event: Optional[threading.Event] = None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.telemetry = telemetry
        self.source = source
        self.style = style or GaugeStyle()
        self.label = source.label if label is None else label
        self.interval = interval
        self.orientation = orientation
        self.stop_event = stop_event or threading.Event()

    def render(self, value: float) -> Frame:
        image = render_gauge(value, self.style, self.label)
        raster = to_raster(image, 'stretch', self.orientation, self.style.background_color)
        return Frame(raster, int(self.interval * 1000))

    def frames(self) -> Iterator[Frame]:
        while not self.stop_event.is_set():
            try:
                sample = self.telemetry.read(self.source)
            except SensorError as e:
                log.warning("Gauge: %s; skipping tick", e)
                self.stop_event.wait(self.interval)
                continue
            yield self.render(sample.value)
