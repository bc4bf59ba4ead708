"""Settings, presets and config persistence for krakenz.

Config is stored at ~/.config/krakenz/config.json (XDG-compliant) and read
once at process start.  Layout::

    {
      "startup":  {"display_mode": "gauge", "cooling_profile": "silent", ...},
      "profiles": {"quiet": {"pump": [[20, 60], [59, 100]],
                             "fan":  [[20, 0], [45, 40], [59, 100]]}},
      "lcd_profiles": {"dim": {"brightness": 20, "mode": 4, "bucket": 0}},
      "gauge": {"start_color": "#00aaff", "end_color": "#ff0000"},
      "fixed": {"pump": 70, "fan": 50},
      "active_lcd_profile": "day"
    }

User profiles override built-ins of the same name.

Usage:
    from krakenz.conf import AppConfig

    config = AppConfig.load()
    profile = config.cooling_profile('silent')
    profile.pump.duty_at(35)
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

from .cooling import ProfileCurve
from .gauge import GaugeStyle
from .protocol import LCD_MODE_BUCKET, LCD_MODE_LIQUID
from .telemetry import TempSource

log = logging.getLogger(__name__)

# =========================================================================
# Config file location (XDG-compliant)
# =========================================================================

_XDG_CONFIG = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
CONFIG_DIR = os.path.join(_XDG_CONFIG, 'krakenz')
CONFIG_PATH = os.path.join(CONFIG_DIR, 'config.json')


# =========================================================================
# Low-level config persistence
# =========================================================================

def load_config(path: Optional[str] = None) -> dict:
    """Load user config from disk. Returns empty dict on missing/corrupt file."""
    try:
        with open(path or CONFIG_PATH, 'r') as f:
            data = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring config %s: top level is not an object", path or CONFIG_PATH)
        return {}
    return data


def save_config(config: dict, path: Optional[str] = None):
    """Save user config to disk."""
    path = path or CONFIG_PATH
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)


# =========================================================================
# Built-in presets
# =========================================================================

FAN_SILENT = [(20, 25), (30, 25), (40, 25), (45, 25), (50, 55), (55, 75), (58, 90), (59, 100)]
FAN_PERFORMANCE = [(20, 50), (30, 55), (40, 65), (50, 80), (55, 90), (59, 100)]
PUMP_SILENT = [(20, 70), (35, 70), (45, 80), (55, 95), (59, 100)]
PUMP_PERFORMANCE = [(20, 80), (40, 85), (50, 95), (59, 100)]


@dataclass(frozen=True)
class CoolingProfile:
    name: str
    pump: ProfileCurve
    fan: ProfileCurve


@dataclass(frozen=True)
class LcdProfile:
    """Brightness plus the visual mode / bucket to show.

    *gauge* holds per-profile gauge style overrides (same keys as the
    top-level ``gauge`` section).
    """
    name: str
    brightness: int
    mode: int
    bucket: int = 0
    gauge: Dict[str, Any] = field(default_factory=dict, compare=False)


BUILTIN_PROFILES: Dict[str, CoolingProfile] = {
    'silent': CoolingProfile('silent', ProfileCurve(PUMP_SILENT), ProfileCurve(FAN_SILENT)),
    'performance': CoolingProfile('performance', ProfileCurve(PUMP_PERFORMANCE),
                                  ProfileCurve(FAN_PERFORMANCE)),
}

BUILTIN_LCD_PROFILES: Dict[str, LcdProfile] = {
    'off': LcdProfile('off', 0, 0, 0),
    'night': LcdProfile('night', 10, LCD_MODE_LIQUID, 0),
    'day': LcdProfile('day', 75, LCD_MODE_BUCKET, 0),
    'max': LcdProfile('max', 100, LCD_MODE_LIQUID, 0),
}


def _curve(raw: Any, what: str) -> ProfileCurve:
    try:
        return ProfileCurve([(p[0], p[1]) for p in raw])
    except (TypeError, IndexError, KeyError) as e:
        raise ValueError(f"{what}: expected [[temp, duty], ...], got {raw!r}") from e


def parse_fixed(name: str) -> Optional[int]:
    """'fixed:NN' → NN, anything else → None."""
    key = name.strip().lower()
    if not key.startswith('fixed:'):
        return None
    try:
        duty = int(key.split(':', 1)[1])
    except ValueError:
        raise ValueError(f"Invalid fixed profile '{name}' (use fixed:0-100)") from None
    if not 0 <= duty <= 100:
        raise ValueError(f"Invalid fixed duty {duty}% (valid range 0-100)")
    return duty


# =========================================================================
# Typed views
# =========================================================================

DISPLAY_MODES = ('gauge', 'image', 'animation')
_DISPLAY_ALIASES = {'radial': 'gauge', 'gif': 'animation', 'static': 'image'}


@dataclass
class StartupConfig:
    """What ``krakenz start`` runs when given no arguments."""
    display_mode: str = 'gauge'
    image_path: Optional[str] = None
    animation_path: Optional[str] = None
    cooling_profile: str = 'silent'
    temperature_source: str = 'liquid'
    interval: float = 2.0
    brightness: int = 100
    orientation: int = 0
    fit: str = 'stretch'
    share_telemetry: bool = True
    animation_repeat: Optional[int] = None

    def __post_init__(self):
        mode = str(self.display_mode).strip().lower()
        mode = _DISPLAY_ALIASES.get(mode, mode)
        if mode not in DISPLAY_MODES:
            raise ValueError(
                f"Unknown display mode '{self.display_mode}' (use {', '.join(DISPLAY_MODES)})"
            )
        self.display_mode = mode
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if not 0 <= self.brightness <= 100:
            raise ValueError("Brightness must be between 0 and 100")
        if self.orientation not in (0, 90, 180, 270):
            raise ValueError("Orientation must be 0, 90, 180 or 270")

    @property
    def source(self) -> TempSource:
        return TempSource.parse(self.temperature_source)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StartupConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class AppConfig:
    startup: StartupConfig = field(default_factory=StartupConfig)
    profiles: Dict[str, dict] = field(default_factory=dict)
    lcd_profiles: Dict[str, dict] = field(default_factory=dict)
    gauge: Dict[str, Any] = field(default_factory=dict)
    active_lcd_profile: Optional[str] = None
    # Duties last set with set-pump / set-fan, used by the "fixed" profile
    fixed: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'AppConfig':
        data = data or {}
        return cls(
            startup=StartupConfig.from_dict(data.get('startup')),
            profiles=dict(data.get('profiles') or {}),
            lcd_profiles=dict(data.get('lcd_profiles') or {}),
            gauge=dict(data.get('gauge') or {}),
            active_lcd_profile=data.get('active_lcd_profile'),
            fixed=dict(data.get('fixed') or {}),
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'AppConfig':
        return cls.from_dict(load_config(path))

    def to_dict(self) -> dict:
        return {
            'startup': asdict(self.startup),
            'profiles': self.profiles,
            'lcd_profiles': self.lcd_profiles,
            'gauge': self.gauge,
            'active_lcd_profile': self.active_lcd_profile,
            'fixed': self.fixed,
        }

    def save(self, path: Optional[str] = None) -> None:
        save_config(self.to_dict(), path)

    # ── Lookups ──────────────────────────────────────────────────────

    def gauge_style(self) -> GaugeStyle:
        """Gauge settings, with the active LCD profile's overrides on top."""
        active = self.active_profile()
        if active is None or not active.gauge:
            return GaugeStyle.from_dict(self.gauge)
        return GaugeStyle.from_dict({**self.gauge, **active.gauge})

    def active_profile(self) -> Optional[LcdProfile]:
        if not self.active_lcd_profile:
            return None
        return self.lcd_profile(self.active_lcd_profile)

    def update_fixed(self, channel: str, duty: int) -> None:
        """Remember *duty* for *channel* ('pump' or 'fan')."""
        self.fixed[channel.strip().lower()] = int(duty)

    def cooling_profile(self, name: str) -> CoolingProfile:
        """Resolve 'silent', 'performance', 'fixed', 'fixed:NN' or a user profile.

        Bare 'fixed' uses the duties last set with set-pump / set-fan.
        """
        duty = parse_fixed(name)
        if duty is not None:
            return CoolingProfile(name, ProfileCurve.fixed(max(20, duty)),
                                  ProfileCurve.fixed(duty))
        key = name.strip().lower()
        user = {k.lower(): v for k, v in self.profiles.items()}
        if key in user:
            raw = user[key]
            if not isinstance(raw, dict):
                raise ValueError(f"Profile '{name}' must be an object with pump/fan curves")
            base = BUILTIN_PROFILES.get(key)
            pump = _curve(raw['pump'], f"{name}.pump") if 'pump' in raw else None
            fan = _curve(raw['fan'], f"{name}.fan") if 'fan' in raw else None
            return CoolingProfile(
                key,
                pump or (base.pump if base else ProfileCurve.fixed(70)),
                fan or (base.fan if base else ProfileCurve.fixed(50)),
            )
        if key in BUILTIN_PROFILES:
            return BUILTIN_PROFILES[key]
        if key == 'fixed':
            return CoolingProfile(
                'fixed',
                ProfileCurve.fixed(max(20, int(self.fixed.get('pump', 70)))),
                ProfileCurve.fixed(int(self.fixed.get('fan', 50))),
            )
        raise ValueError(
            f"Unknown profile '{name}' "
            f"(available: {', '.join(sorted(set(BUILTIN_PROFILES) | set(user)))}, fixed, fixed:NN)"
        )

    def lcd_profile(self, name: str) -> LcdProfile:
        key = name.strip().lower()
        user = {k.lower(): v for k, v in self.lcd_profiles.items()}
        if key in user:
            raw = user[key]
            try:
                return LcdProfile(key, int(raw['brightness']), int(raw.get('mode', LCD_MODE_BUCKET)),
                                  int(raw.get('bucket', 0)), dict(raw.get('gauge') or {}))
            except (TypeError, KeyError, ValueError) as e:
                raise ValueError(f"LCD profile '{name}' is invalid: {e}") from e
        if key in BUILTIN_LCD_PROFILES:
            return BUILTIN_LCD_PROFILES[key]
        raise ValueError(
            f"Unknown LCD profile '{name}' "
            f"(available: {', '.join(sorted(set(BUILTIN_LCD_PROFILES) | set(user)))})"
        )
