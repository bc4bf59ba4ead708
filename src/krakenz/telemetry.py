"""Temperature telemetry: coolant (from the device) and host CPU/GPU.

Host readings come from psutil's hwmon view
(``psutil.sensors_temperatures()``); coolant temperature comes from the
Kraken's own status report.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

import psutil

from .errors import DeviceClosed, KrakenError, SensorError

if TYPE_CHECKING:
    from .device import KrakenZ3

log = logging.getLogger(__name__)

# hwmon driver names that report the CPU package temperature
CPU_SENSOR_DRIVERS = ('k10temp', 'coretemp', 'zenpower', 'cpu_thermal', 'cpu-thermal')
# Preferred labels within those drivers
CPU_SENSOR_LABELS = ('Tctl', 'Tdie', 'Package id 0', 'Package')
GPU_SENSOR_DRIVERS = ('amdgpu', 'nouveau', 'radeon', 'i915')
# Label fragments used when no known driver matches
_CPU_FRAGMENTS = ('cpu', 'package', 'core', 'tdie', 'tctl')
_GPU_FRAGMENTS = ('gpu', 'edge', 'junction')


class TempSource(Enum):
    LIQUID = 'liquid'
    CPU = 'cpu'

    @classmethod
    def parse(cls, name: Optional[str]) -> 'TempSource':
        """Anything unrecognized falls back to the liquid sensor."""
        if name and name.strip().lower() == 'cpu':
            return cls.CPU
        return cls.LIQUID

    @property
    def label(self) -> str:
        return 'Liquid' if self is TempSource.LIQUID else 'CPU'


@dataclass(frozen=True)
class TelemetrySample:
    value: float
    source: TempSource


@dataclass(frozen=True)
class HostSensor:
    driver: str
    label: str
    current: float
    critical: Optional[float] = None


class TelemetrySource(ABC):
    """Anything that can produce a temperature for a TempSource."""

    @abstractmethod
    def read(self, source: TempSource) -> TelemetrySample:
        """Return one sample or raise SensorError."""


# =========================================================================
# Host sensors (psutil)
# =========================================================================

def list_host_sensors() -> List[HostSensor]:
    """Every temperature sensor psutil can see, in driver order."""
    if not hasattr(psutil, 'sensors_temperatures'):
        return []
    try:
        readings = psutil.sensors_temperatures()
    except (OSError, RuntimeError) as e:
        log.debug("sensors_temperatures failed: %s", e)
        return []
    sensors = []
    for driver, entries in readings.items():
        for entry in entries:
            sensors.append(HostSensor(
                driver=driver,
                label=entry.label or driver,
                current=float(entry.current),
                critical=float(entry.critical) if entry.critical else None,
            ))
    return sensors


def _pick(sensors: List[HostSensor], drivers, labels, fragments) -> Optional[HostSensor]:
    candidates = [s for s in sensors if s.driver in drivers]
    for wanted in labels:
        for s in candidates:
            if s.label == wanted:
                return s
    if candidates:
        return candidates[0]
    for s in sensors:
        name = s.label.lower()
        if any(f in name for f in fragments):
            return s
    return None


def read_cpu_temperature() -> float:
    sensor = _pick(list_host_sensors(), CPU_SENSOR_DRIVERS, CPU_SENSOR_LABELS, _CPU_FRAGMENTS)
    if sensor is None:
        raise SensorError("no CPU temperature sensor found (is k10temp/coretemp loaded?)")
    return sensor.current


def read_gpu_temperature() -> Optional[float]:
    """GPU edge temperature, or None when no GPU sensor is exposed."""
    sensor = _pick(list_host_sensors(), GPU_SENSOR_DRIVERS, ('edge',), _GPU_FRAGMENTS)
    return sensor.current if sensor else None


# =========================================================================
# Device-backed source
# =========================================================================

class DeviceTelemetry(TelemetrySource):
    """Liquid temperature from the cooler, CPU temperature from the host."""

    def __init__(self, device: 'KrakenZ3'):
        self.device = device

    def read(self, source: TempSource) -> TelemetrySample:
        if source is TempSource.CPU:
            return TelemetrySample(read_cpu_temperature(), source)
        try:
            status = self.device.get_status()
        except DeviceClosed:
            raise
        except KrakenError as e:
            raise SensorError(f"liquid temperature unavailable: {e}") from e
        return TelemetrySample(status.liquid_temp, source)
