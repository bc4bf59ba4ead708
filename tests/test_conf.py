"""
Tests for conf -- config persistence, startup settings and profile lookup.

Tests cover:
- load_config() / save_config() round trip, missing and corrupt files
- StartupConfig defaults, aliases and validation
- cooling_profile(): built-ins, fixed:NN, stored fixed duties, user overrides, unknown names
- lcd_profile(): built-ins, user profiles, the active profile
- gauge_style() from the config mapping and active profile overrides
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from krakenz.conf import (
    BUILTIN_PROFILES,
    AppConfig,
    StartupConfig,
    load_config,
    parse_fixed,
    save_config,
)
from krakenz.cooling import ProfileCurve
from krakenz.telemetry import TempSource


class TestConfigPersistence(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)
        self.path = os.path.join(self.tmp, 'sub', 'config.json')

    def test_missing_file(self):
        self.assertEqual(load_config(self.path), {})

    def test_corrupt_file(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('{not json')
        self.assertEqual(load_config(self.path), {})

    def test_non_object(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            json.dump([1, 2], f)
        self.assertEqual(load_config(self.path), {})

    def test_round_trip(self):
        save_config({'startup': {'brightness': 40}}, self.path)
        self.assertEqual(load_config(self.path), {'startup': {'brightness': 40}})

    def test_app_config_save_load(self):
        config = AppConfig(startup=StartupConfig(display_mode='image', image_path='/tmp/a.png'))
        config.save(self.path)
        loaded = AppConfig.load(self.path)
        self.assertEqual(loaded.startup.display_mode, 'image')
        self.assertEqual(loaded.startup.image_path, '/tmp/a.png')


class TestStartupConfig(unittest.TestCase):

    def test_defaults(self):
        startup = StartupConfig()
        self.assertEqual(startup.display_mode, 'gauge')
        self.assertEqual(startup.cooling_profile, 'silent')
        self.assertIs(startup.source, TempSource.LIQUID)

    def test_aliases(self):
        self.assertEqual(StartupConfig(display_mode='radial').display_mode, 'gauge')
        self.assertEqual(StartupConfig(display_mode='GIF').display_mode, 'animation')

    def test_unknown_keys_ignored(self):
        startup = StartupConfig.from_dict({'interval': 5, 'theme': 'dark'})
        self.assertEqual(startup.interval, 5)

    def test_validation(self):
        with self.assertRaises(ValueError):
            StartupConfig(display_mode='video')
        with self.assertRaises(ValueError):
            StartupConfig(interval=0)
        with self.assertRaises(ValueError):
            StartupConfig(brightness=101)
        with self.assertRaises(ValueError):
            StartupConfig(orientation=45)


class TestParseFixed(unittest.TestCase):

    def test_values(self):
        self.assertEqual(parse_fixed('fixed:60'), 60)
        self.assertEqual(parse_fixed(' FIXED:0 '), 0)
        self.assertIsNone(parse_fixed('silent'))

    def test_invalid(self):
        with self.assertRaises(ValueError):
            parse_fixed('fixed:abc')
        with self.assertRaises(ValueError):
            parse_fixed('fixed:120')


class TestCoolingProfiles(unittest.TestCase):

    def test_builtin(self):
        profile = AppConfig().cooling_profile('Performance')
        self.assertIs(profile, BUILTIN_PROFILES['performance'])

    def test_fixed_pump_floor(self):
        profile = AppConfig().cooling_profile('fixed:10')
        self.assertEqual(profile.pump.duty_at(40), 20)
        self.assertEqual(profile.fan.duty_at(40), 10)

    def test_user_profile(self):
        config = AppConfig(profiles={'Quiet': {'pump': [[20, 60], [59, 100]],
                                               'fan': [[20, 0], [59, 80]]}})
        profile = config.cooling_profile('quiet')
        self.assertEqual(profile.pump, ProfileCurve([(20, 60), (59, 100)]))
        self.assertEqual(profile.fan.duty_at(10), 0)

    def test_user_overrides_builtin_partially(self):
        config = AppConfig(profiles={'silent': {'fan': [[20, 5], [59, 50]]}})
        profile = config.cooling_profile('silent')
        self.assertEqual(profile.fan, ProfileCurve([(20, 5), (59, 50)]))
        self.assertEqual(profile.pump, BUILTIN_PROFILES['silent'].pump)

    def test_user_profile_without_curves(self):
        profile = AppConfig(profiles={'bare': {}}).cooling_profile('bare')
        self.assertEqual(profile.pump.duty_at(30), 70)
        self.assertEqual(profile.fan.duty_at(30), 50)

    def test_bad_curve(self):
        config = AppConfig(profiles={'bad': {'pump': [[20]]}})
        with self.assertRaises(ValueError):
            config.cooling_profile('bad')

    def test_stored_fixed_duties(self):
        config = AppConfig()
        config.update_fixed('Pump', 65)
        profile = config.cooling_profile('fixed')
        self.assertEqual(profile.pump.duty_at(40), 65)
        self.assertEqual(profile.fan.duty_at(40), 50)

    def test_stored_fixed_saved(self):
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp)
        path = os.path.join(tmp, 'config.json')
        config = AppConfig()
        config.update_fixed('fan', 35)
        config.save(path)
        self.assertEqual(AppConfig.load(path).fixed, {'fan': 35})

    def test_unknown(self):
        with self.assertRaises(ValueError) as ctx:
            AppConfig().cooling_profile('turbo')
        self.assertIn('silent', str(ctx.exception))


class TestLcdProfiles(unittest.TestCase):

    def test_builtins(self):
        config = AppConfig()
        off = config.lcd_profile('off')
        self.assertEqual((off.brightness, off.mode, off.bucket), (0, 0, 0))
        night = config.lcd_profile('night')
        self.assertEqual((night.brightness, night.mode), (10, 2))
        self.assertEqual(config.lcd_profile('DAY').mode, 4)
        self.assertEqual(config.lcd_profile('max').brightness, 100)

    def test_user(self):
        config = AppConfig(lcd_profiles={'dim': {'brightness': 20, 'bucket': 3}})
        dim = config.lcd_profile('dim')
        self.assertEqual((dim.brightness, dim.mode, dim.bucket), (20, 4, 3))

    def test_invalid_user(self):
        config = AppConfig(lcd_profiles={'dim': {'mode': 4}})
        with self.assertRaises(ValueError):
            config.lcd_profile('dim')

    def test_unknown(self):
        with self.assertRaises(ValueError):
            AppConfig().lcd_profile('disco')

    def test_active_profile(self):
        self.assertIsNone(AppConfig().active_profile())
        config = AppConfig(active_lcd_profile='Night')
        self.assertEqual(config.active_profile().brightness, 10)

    def test_active_profile_unknown(self):
        with self.assertRaises(ValueError):
            AppConfig(active_lcd_profile='disco').active_profile()


class TestGaugeStyle(unittest.TestCase):

    def test_from_config(self):
        config = AppConfig.from_dict({'gauge': {'start_color': '#00aaff', 'max_value': 60}})
        style = config.gauge_style()
        self.assertEqual(style.start_color, (0, 170, 255))
        self.assertEqual(style.max_value, 60)

    def test_active_profile_overrides(self):
        config = AppConfig.from_dict({
            'gauge': {'start_color': '#00aaff', 'max_value': 60},
            'lcd_profiles': {'desk': {'brightness': 40, 'gauge': {'max_value': 80}}},
            'active_lcd_profile': 'desk',
        })
        style = config.gauge_style()
        self.assertEqual(style.start_color, (0, 170, 255))
        self.assertEqual(style.max_value, 80)


if __name__ == '__main__':
    unittest.main()
