"""Temperature → duty control loop for the pump and fan.

Each tick walks IDLE → SAMPLING → COMPUTING → APPLYING → IDLE: read one
temperature, map it through the pump and fan curves, send both speeds.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .device import KrakenZ3
from .errors import DeviceClosed, KrakenError, SensorError
from .protocol import CRITICAL_TEMPERATURE, CURVE_MIN_TEMP, Channel
from .telemetry import TelemetrySource, TempSource

log = logging.getLogger(__name__)

# Duties used when a channel has no curve configured
DEFAULT_PUMP_DUTY = 70
DEFAULT_FAN_DUTY = 50


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


class ProfileCurve:
    """Piecewise-linear temperature → duty mapping.

    Below the first point the first duty applies, above the last point the
    last duty; results are rounded to whole percent.
    """

    def __init__(self, points: Sequence[Tuple[float, float]]):
        pts = [(float(t), float(d)) for t, d in points]
        if not pts:
            raise ValueError("Profile curve needs at least one point")
        for (t1, _), (t2, _) in zip(pts, pts[1:]):
            if t2 <= t1:
                raise ValueError(
                    f"Profile temperatures must be strictly increasing ({t1:g} then {t2:g})"
                )
        for t, d in pts:
            if not 0 <= d <= 100:
                raise ValueError(f"Invalid duty {d:g}% at {t:g}°C (valid range 0-100)")
        self.points: Tuple[Tuple[float, float], ...] = tuple(pts)

    @classmethod
    def fixed(cls, duty: float) -> 'ProfileCurve':
        return cls([(0, duty)])

    def duty_at(self, temp: float) -> int:
        pts = self.points
        if temp <= pts[0][0]:
            return _round_half_up(pts[0][1])
        if temp >= pts[-1][0]:
            return _round_half_up(pts[-1][1])
        for (t1, d1), (t2, d2) in zip(pts, pts[1:]):
            if t1 <= temp <= t2:
                return _round_half_up(d1 + (temp - t1) * (d2 - d1) / (t2 - t1))
        return _round_half_up(pts[-1][1])  # unreachable for sorted points

    def as_pairs(self) -> List[Tuple[int, int]]:
        return [(int(t), int(d)) for t, d in self.points]

    def __eq__(self, other):
        return isinstance(other, ProfileCurve) and self.points == other.points

    def __repr__(self):
        return f"ProfileCurve({list(self.points)!r})"


class CoolingState(Enum):
    IDLE = 'idle'
    SAMPLING = 'sampling'
    COMPUTING = 'computing'
    APPLYING = 'applying'


@dataclass
class CoolingTick:
    """Outcome of one control cycle."""
    temperature: Optional[float] = None
    pump_duty: Optional[int] = None
    fan_duty: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class CoolingLoop:
    """Fixed-cadence closed loop over one device."""

    def __init__(self, device: KrakenZ3, telemetry: TelemetrySource,
                 source: TempSource = TempSource.LIQUID,
                 pump_curve: Optional[ProfileCurve] = None,
                 fan_curve: Optional[ProfileCurve] = None,
                 interval: float = 2.0,
                 stop_event: Optional[threading.Event] = None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.device = device
        self.telemetry = telemetry
        self.source = source
        self.pump_curve = pump_curve or ProfileCurve.fixed(DEFAULT_PUMP_DUTY)
        self.fan_curve = fan_curve or ProfileCurve.fixed(DEFAULT_FAN_DUTY)
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.state = CoolingState.IDLE
        self.ticks = 0
        self.last: Optional[CoolingTick] = None

    def compute(self, temp: float) -> Tuple[int, int]:
        """Duties for *temp*, clamped to 0-100 and then to channel limits."""
        pump = max(0, min(100, self.pump_curve.duty_at(temp)))
        fan = max(0, min(100, self.fan_curve.duty_at(temp)))
        return Channel.PUMP.clamp(pump), Channel.FAN.clamp(fan)

    def _apply(self, channel: Channel, duty: int, result: CoolingTick) -> None:
        for attempt in (1, 2):
            try:
                self.device.set_fixed_speed(channel, duty)
                return
            except DeviceClosed:
                raise
            except KrakenError as e:
                if attempt == 1:
                    log.debug("set %s failed (%s); retrying", channel.name.lower(), e)
                    continue
                log.warning("Could not set %s to %d%%: %s", channel.name.lower(), duty, e)
                result.errors.append(f"{channel.name.lower()}: {e}")

    def tick(self) -> CoolingTick:
        """One sample/compute/apply cycle.  Only DeviceClosed escapes."""
        result = CoolingTick()
        try:
            self.state = CoolingState.SAMPLING
            try:
                sample = self.telemetry.read(self.source)
            except SensorError as e:
                log.warning("Cooling: %s; keeping previous duties", e)
                result.errors.append(f"sensor: {e}")
                return result
            result.temperature = sample.value

            self.state = CoolingState.COMPUTING
            pump, fan = self.compute(sample.value)
            result.pump_duty, result.fan_duty = pump, fan

            self.state = CoolingState.APPLYING
            self._apply(Channel.PUMP, pump, result)
            self._apply(Channel.FAN, fan, result)
            log.info("%s %.1f°C → pump %d%%, fan %d%%",
                     self.source.label, sample.value, pump, fan)
            return result
        finally:
            self.state = CoolingState.IDLE
            self.ticks += 1
            self.last = result

    def run(self, stop_event: Optional[threading.Event] = None,
            max_ticks: Optional[int] = None) -> int:
        """Tick every ``interval`` seconds until stopped.

        The interval runs from the start of each tick; a slow tick pushes
        the next one back instead of skipping it.  Returns ticks completed.
        """
        stop = stop_event or self.stop_event
        done = 0
        log.info("Cooling loop started (%s, every %gs)", self.source.label, self.interval)
        while not stop.is_set():
            started = time.monotonic()
            self.tick()
            done += 1
            if max_ticks is not None and done >= max_ticks:
                break
            remaining = self.interval - (time.monotonic() - started)
            if remaining > 0 and stop.wait(remaining):
                break
        log.info("Cooling loop stopped after %d tick(s)", done)
        return done


def apply_profile(device: KrakenZ3, channel: Channel, curve: ProfileCurve) -> None:
    """Store *curve* on the device so it runs without the host loop.

    The device curve is sampled at every degree of 20-59 °C, clamped to
    the channel's duty range.
    """
    if len(curve.points) == 1:
        device.set_fixed_speed(channel, channel.clamp(curve.points[0][1]))
        return
    points = [(t, channel.clamp(curve.duty_at(t)))
              for t in range(CURVE_MIN_TEMP, CRITICAL_TEMPERATURE + 1)]
    device.set_speed_profile(channel, points)
