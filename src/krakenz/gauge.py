"""Radial telemetry gauge renderer.

Draws a ring-shaped arc gauge for the 320x320 LCD: a dim track covering
the full sweep, a gradient-filled arc proportional to the value, an
indicator dot at the tip and the value text in the middle.  Angles are
measured in degrees clockwise from 12 o'clock.

Pixel work is done with numpy masks (polar coordinates per pixel, with a
one-pixel anti-aliased edge); text goes through PIL.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from functools import lru_cache
from typing import Any, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .protocol import LCD_HEIGHT, LCD_WIDTH

log = logging.getLogger(__name__)

Color = Tuple[int, int, int]

INTERPOLATIONS = ('linear', 'smoothstep', 'step')
STEP_LEVELS = 5

# Fallback search for a scalable font; PIL's bitmap font is the last resort
_FONT_CANDIDATES = (
    '/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf',
    '/usr/share/fonts/TTF/DejaVuSans-Bold.ttf',
    '/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf',
    '/usr/share/fonts/truetype/noto/NotoSans-Bold.ttf',
    '/usr/share/fonts/noto/NotoSans-Bold.ttf',
    '/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf',
)


def parse_color(value: Any) -> Color:
    """Accept '#RRGGBB', 'RRGGBB', '#RGB' or an (r, g, b) sequence."""
    if isinstance(value, str):
        text = value.strip().lstrip('#')
        if len(text) == 3:
            text = ''.join(c * 2 for c in text)
        if len(text) != 6:
            raise ValueError(f"Invalid color '{value}' (expected #RRGGBB)")
        try:
            return (int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16))
        except ValueError:
            raise ValueError(f"Invalid color '{value}' (expected #RRGGBB)") from None
    try:
        r, g, b = (int(c) for c in value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid color {value!r}") from None
    if not all(0 <= c <= 255 for c in (r, g, b)):
        raise ValueError(f"Color components out of range: {value!r}")
    return (r, g, b)


@dataclass
class GaugeStyle:
    """Appearance of the radial gauge.

    Defaults reproduce the CAM-like look: a red → orange arc from -136°
    through +137° on black.
    """
    start_color: Color = (255, 0, 0)
    end_color: Color = (255, 80, 0)
    background_color: Color = (0, 0, 0)
    radius: float = 152.5
    start_angle: float = -136.0
    sweep_angle: float = 273.1
    thickness: float = 22.5
    min_value: float = 0.0
    max_value: float = 100.0
    interpolation: str = 'linear'
    track_color: Color = (40, 40, 40)
    text_color: Color = (255, 255, 255)

    def __post_init__(self):
        for name in ('start_color', 'end_color', 'background_color',
                     'track_color', 'text_color'):
            setattr(self, name, parse_color(getattr(self, name)))
        if self.interpolation not in INTERPOLATIONS:
            raise ValueError(
                f"Unknown interpolation '{self.interpolation}' "
                f"(use {', '.join(INTERPOLATIONS)})"
            )
        if self.max_value <= self.min_value:
            raise ValueError("max_value must be greater than min_value")
        if not 0 < self.thickness <= self.radius:
            raise ValueError("thickness must be positive and not exceed radius")
        if not 0 < abs(self.sweep_angle) <= 360:
            raise ValueError("sweep_angle must be within (0, 360] degrees")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'GaugeStyle':
        """Build from a config mapping; unknown keys are ignored."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        ignored = set(data) - known
        if ignored:
            log.debug("Ignoring unknown gauge keys: %s", sorted(ignored))
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = '#%02x%02x%02x' % value
            out[f.name] = value
        return out

    def normalize(self, value: float) -> float:
        """Map *value* into [0, 1] across min_value..max_value."""
        t = (value - self.min_value) / (self.max_value - self.min_value)
        return min(1.0, max(0.0, t))

    def gradient_color(self, t: float) -> Color:
        """Colour at position *t* (0..1) between start_color and end_color."""
        t = min(1.0, max(0.0, t))
        if self.interpolation == 'smoothstep':
            t = t * t * (3.0 - 2.0 * t)
        elif self.interpolation == 'step':
            t = min(STEP_LEVELS - 1, int(t * STEP_LEVELS)) / (STEP_LEVELS - 1)
        return tuple(
            int(round(a + (b - a) * t))
            for a, b in zip(self.start_color, self.end_color)
        )  # type: ignore[return-value]


@lru_cache(maxsize=8)
def _font(size: int):
    for path in _FONT_CANDIDATES:
        if os.path.isfile(path):
            try:
                return ImageFont.truetype(path, size)
            except OSError:
                continue
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 has no sized default font
        return ImageFont.load_default()


def _polar_grid(width: int, height: int):
    """Per-pixel distance from centre and clockwise angle from 12 o'clock."""
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dx = xs + 0.5 - width / 2.0
    dy = ys + 0.5 - height / 2.0
    dist = np.hypot(dx, dy)
    angle = np.degrees(np.arctan2(dx, -dy))  # 0 at top, +90 at 3 o'clock
    return dist, angle


def render_gauge(value: float, style: Optional[GaugeStyle] = None,
                 label: str = '', unit: str = '°C',
                 size: Tuple[int, int] = (LCD_WIDTH, LCD_HEIGHT)) -> Image.Image:
    """Render one gauge frame as an RGB PIL image."""
    style = style or GaugeStyle()
    width, height = size
    t = style.normalize(value)

    dist, angle = _polar_grid(width, height)
    # Angle relative to the arc start, unwrapped into the sweep direction
    sign = 1.0 if style.sweep_angle >= 0 else -1.0
    sweep = abs(style.sweep_angle)
    rel = np.mod((angle - style.start_angle) * sign, 360.0)

    outer = style.radius
    inner = style.radius - style.thickness
    # 1-px anti-aliased ring edges
    ring = np.clip(outer + 0.5 - dist, 0.0, 1.0) * np.clip(dist - inner + 0.5, 0.0, 1.0)
    in_sweep = rel <= sweep
    filled = in_sweep & (rel <= t * sweep)
    track = in_sweep & ~filled

    img = np.empty((height, width, 3), dtype=np.float32)
    img[:] = style.background_color

    def paint(mask, color, coverage):
        alpha = (coverage * mask)[..., None]
        img[:] = img * (1.0 - alpha) + np.asarray(color, dtype=np.float32) * alpha

    paint(track, style.track_color, ring)

    if t > 0:
        # Gradient follows the position along the arc
        pos = np.clip(rel / sweep, 0.0, 1.0)
        start = np.asarray(style.start_color, dtype=np.float32)
        end = np.asarray(style.end_color, dtype=np.float32)
        if style.interpolation == 'smoothstep':
            pos = pos * pos * (3.0 - 2.0 * pos)
        elif style.interpolation == 'step':
            pos = np.minimum(STEP_LEVELS - 1, np.floor(pos * STEP_LEVELS)) / (STEP_LEVELS - 1)
        colors = start + (end - start) * pos[..., None]
        alpha = (ring * filled)[..., None]
        img[:] = img * (1.0 - alpha) + colors * alpha

    # Indicator dot centred on the ring at the value's angle
    tip = np.radians(style.start_angle + sign * t * sweep)
    mid = (outer + inner) / 2.0
    cx = width / 2.0 + mid * np.sin(tip)
    cy = height / 2.0 - mid * np.cos(tip)
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dot_r = style.thickness / 2.0 + 2.0
    dot = np.clip(dot_r + 0.5 - np.hypot(xs + 0.5 - cx, ys + 0.5 - cy), 0.0, 1.0)
    paint(np.ones_like(dot, dtype=bool), style.gradient_color(t), dot)

    image = Image.fromarray(np.clip(img + 0.5, 0, 255).astype(np.uint8), 'RGB')

    draw = ImageDraw.Draw(image)
    _centered_text(draw, (width / 2, height / 2), f"{value:.0f}{unit}",
                   _font(max(12, int(inner * 0.55))), style.text_color)
    if label:
        _centered_text(draw, (width / 2, height / 2 + inner * 0.45), label,
                       _font(max(10, int(inner * 0.18))), style.text_color)
    return image


def _centered_text(draw, center, text, font, fill) -> None:
    # textbbox works for bitmap and FreeType fonts alike
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = center[0] - (right - left) / 2 - left
    y = center[1] - (bottom - top) / 2 - top
    draw.text((x, y), text, fill=fill, font=font)
