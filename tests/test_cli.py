"""
Tests for cli -- argument parsing and command dispatch.

Tests cover:
- main() with no args (prints help, returns 0) and --version
- Cooling commands: set-pump/set-fan validation and saved duty, profile, cooling-daemon
- LCD commands: brightness, orientation, mode, lcd-profile, upload in the LCD's orientation
- Bucket commands: list-buckets, delete-buckets, upload-image (still, GIF, native GIF)
- start in image and gauge modes, decode before device I/O, gauge fallback
- Active LCD profile applied by start and lcd-monitor
- Diagnostics: list, info, debug, debug-lcd, sensors, discover-presets
- Errors surface as "Error: ..." with exit code 1
"""

import io
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from kraken_sim import SimulatedKraken, make_device
from PIL import Image

from krakenz.cli import build_parser, main, start
from krakenz.conf import AppConfig, load_config
from krakenz.errors import DeviceNotFound
from krakenz.protocol import ASSET_GIF, RASTER_SIZE, decode_bulk_header
from krakenz.telemetry import HostSensor
from krakenz.transport import DetectedDevice


class CliTestCase(unittest.TestCase):
    """Runs commands against a simulated cooler with an empty config."""

    sim_kwargs = {}

    def setUp(self):
        self.device, self.sim, self.bulk = make_device(SimulatedKraken(**self.sim_kwargs))
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)
        self.config_path = os.path.join(self.tmp, 'config.json')
        patches = [
            patch('krakenz.conf.CONFIG_PATH', self.config_path),
            patch('krakenz.cli._open_device', return_value=self.device),
            patch('krakenz.cli._load_config', return_value=AppConfig()),
            patch('krakenz.scheduler.install_signal_handlers'),
            patch('krakenz.device.time.sleep'),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def run_cli(self, *argv):
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            code = main(list(argv))
        return code, out.getvalue()


class TestMain(unittest.TestCase):

    def test_no_args_prints_help(self):
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            self.assertEqual(main([]), 0)
        self.assertIn('usage', out.getvalue().lower())

    def test_version(self):
        with patch('sys.stdout', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main(['--version'])
        self.assertEqual(ctx.exception.code, 0)

    def test_every_command_registered(self):
        parser = build_parser()
        sub = next(a for a in parser._actions if a.dest == 'command')
        self.assertEqual(set(sub.choices), {
            'status', 'monitor', 'start', 'set-pump', 'set-fan', 'cooling-daemon',
            'set-brightness', 'set-orientation', 'set-lcd-mode', 'upload-image',
            'lcd-monitor', 'list-buckets', 'delete-buckets', 'profile', 'lcd-profile',
            'list', 'info', 'debug', 'debug-lcd', 'sensors', 'discover-presets',
        })

    @patch('krakenz.cli._open_device', side_effect=DeviceNotFound('Kraken not found'))
    def test_device_error_exit_code(self, _open):
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            self.assertEqual(main(['status']), 1)
        self.assertIn('Error: Kraken not found', out.getvalue())


class TestStatusCommands(CliTestCase):

    sim_kwargs = {'liquid': 31.5}

    def test_status(self):
        code, out = self.run_cli('status')
        self.assertEqual(code, 0)
        self.assertIn('31.5 °C', out)
        self.assertTrue(self.device.closed)

    @patch('krakenz.cli.time.sleep')
    @patch('krakenz.telemetry.read_gpu_temperature', return_value=None)
    @patch('krakenz.telemetry.read_cpu_temperature', return_value=48.0)
    def test_monitor_pushes_host_info(self, _cpu, _gpu, _sleep):
        code, out = self.run_cli('monitor', '-n', '2')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.commands(b'\x73\x01'), [b'\x73\x01\x30'] * 2)
        self.assertEqual(out.count('Liquid temperature'), 2)


class TestCoolingCommands(CliTestCase):

    def test_set_pump(self):
        code, out = self.run_cli('set-pump', '65')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.pump_duty, 65)

    def test_set_pump_saves_fixed_duty(self):
        self.run_cli('set-pump', '65')
        self.run_cli('set-fan', '30')
        self.assertEqual(load_config(self.config_path)['fixed'], {'pump': 65, 'fan': 30})

    def test_set_pump_below_floor(self):
        code, out = self.run_cli('set-pump', '10')
        self.assertEqual(code, 1)
        self.assertIn('Error:', out)
        self.assertEqual(self.sim.commands(b'\x72'), [])
        self.assertFalse(os.path.exists(self.config_path))

    def test_set_fan_zero(self):
        code, _ = self.run_cli('set-fan', '0')
        self.assertEqual(code, 0)
        self.assertEqual(len(self.sim.commands(b'\x72\x02')), 1)

    def test_profile(self):
        code, _ = self.run_cli('profile', 'performance', '-c', 'pump')
        self.assertEqual(code, 0)
        payload = self.sim.commands(b'\x72\x01')[-1]
        self.assertEqual(payload[2], 80)
        self.assertEqual(payload[-1], 100)

    def test_profile_unknown(self):
        code, out = self.run_cli('profile', 'turbo')
        self.assertEqual(code, 1)
        self.assertIn('Unknown profile', out)

    def test_cooling_daemon(self):
        code, out = self.run_cli('cooling-daemon', '-p', 'fixed:40', '-i', '0.01', '-n', '2')
        self.assertEqual(code, 0)
        self.assertEqual((self.sim.pump_duty, self.sim.fan_duty), (40, 40))
        self.assertIn('2 cycle(s)', out)


class TestLcdCommands(CliTestCase):

    sim_kwargs = {'brightness': 50, 'orientation': 1}

    def test_brightness(self):
        code, _ = self.run_cli('set-brightness', '80')
        self.assertEqual(code, 0)
        self.assertEqual((self.sim.brightness, self.sim.orientation), (80, 1))

    def test_brightness_range(self):
        code, _ = self.run_cli('set-brightness', '150')
        self.assertEqual(code, 1)

    def test_orientation(self):
        code, out = self.run_cli('set-orientation', '2')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.orientation, 2)
        self.assertIn('180°', out)

    def test_lcd_mode(self):
        code, _ = self.run_cli('set-lcd-mode', '4', '3')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.visual_mode, (4, 3))

    def test_lcd_profile(self):
        code, _ = self.run_cli('lcd-profile', 'night')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.brightness, 10)
        self.assertEqual(self.sim.visual_mode, (2, 0))

    def _half_red_image(self):
        path = os.path.join(self.tmp, 'half.png')
        image = Image.new('RGB', (100, 100), (0, 0, 255))
        image.paste((255, 0, 0), (0, 0, 50, 100))
        image.save(path)
        return path

    def test_upload_follows_lcd_orientation(self):
        code, _ = self.run_cli('upload-image', self._half_red_image())
        self.assertEqual(code, 0)
        raster = self.bulk.writes[-1]
        # Left half turned a quarter clockwise ends up on top
        top_right = 319 * 4
        self.assertEqual(raster[top_right:top_right + 3], bytes((255, 0, 0)))
        bottom_left = 319 * 320 * 4
        self.assertEqual(raster[bottom_left:bottom_left + 3], bytes((0, 0, 255)))

    def test_upload_explicit_orientation(self):
        code, _ = self.run_cli('upload-image', self._half_red_image(), '-o', '0')
        self.assertEqual(code, 0)
        raster = self.bulk.writes[-1]
        top_right = 319 * 4
        self.assertEqual(raster[top_right:top_right + 3], bytes((0, 0, 255)))

    def test_lcd_monitor_applies_active_profile(self):
        with patch('krakenz.cli._load_config',
                   return_value=AppConfig(active_lcd_profile='night')):
            code, _ = self.run_cli('lcd-monitor', '-i', '0.01', '-n', '1')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.brightness, 10)


class TestBucketCommands(CliTestCase):

    sim_kwargs = {'buckets': {0: (0, 401), 3: (401, 401)}}

    def test_list_buckets(self):
        code, out = self.run_cli('list-buckets')
        self.assertEqual(code, 0)
        self.assertIn('occupied', out)
        self.assertIn('2 occupied, 802 KiB used', out)

    def test_delete_buckets(self):
        code, _ = self.run_cli('delete-buckets')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.buckets, {})

    def test_upload_still_image(self):
        path = os.path.join(self.tmp, 'a.png')
        Image.new('RGB', (100, 100), (0, 255, 0)).save(path)
        code, out = self.run_cli('upload-image', path)
        self.assertEqual(code, 0)
        self.assertIn('bucket 1', out)
        self.assertEqual(self.sim.visual_mode, (4, 1))
        self.assertEqual(len(self.bulk.writes[-1]), 409600)

    def test_upload_with_bucket_hint(self):
        path = os.path.join(self.tmp, 'a.png')
        Image.new('RGB', (100, 100)).save(path)
        code, _ = self.run_cli('upload-image', path, '-b', '7')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.visual_mode, (4, 7))

    def test_upload_animation(self):
        path = os.path.join(self.tmp, 'a.gif')
        frames = [Image.new('RGB', (32, 32), c) for c in ((255, 0, 0), (0, 0, 255))]
        frames[0].save(path, save_all=True, append_images=frames[1:], duration=[20, 20], loop=0)
        code, _ = self.run_cli('upload-image', path, '-r', '1')
        self.assertEqual(code, 0)
        self.assertEqual(len(self.sim.commands(b'\x36\x02')), 2)
        self.assertEqual(self.sim.visual_mode, (4, 2))

    def test_upload_native_animation(self):
        path = os.path.join(self.tmp, 'a.gif')
        frames = [Image.new('RGB', (32, 32), c) for c in ((255, 0, 0), (0, 0, 255))]
        frames[0].save(path, save_all=True, append_images=frames[1:], duration=[40, 40], loop=0)
        code, out = self.run_cli('upload-image', path, '--native')
        self.assertEqual(code, 0)
        self.assertIn('2 frames', out)
        asset_type, length = decode_bulk_header(self.bulk.writes[-2])
        self.assertEqual(asset_type, ASSET_GIF)
        payload = self.bulk.writes[-1]
        self.assertEqual(len(payload), length)
        with Image.open(io.BytesIO(payload)) as gif:
            self.assertEqual(gif.n_frames, 2)
            self.assertEqual(gif.size, (320, 320))
            self.assertEqual(gif.info.get('loop'), 0)
        self.assertEqual(self.sim.visual_mode, (4, 1))

    def test_upload_missing_file(self):
        code, out = self.run_cli('upload-image', os.path.join(self.tmp, 'none.png'))
        self.assertEqual(code, 1)
        self.assertIn('File not found', out)

    def test_lcd_monitor(self):
        code, _ = self.run_cli('lcd-monitor', '-i', '0.01', '-n', '2')
        self.assertEqual(code, 0)
        self.assertEqual(len(self.sim.commands(b'\x36\x02')), 2)
        self.assertEqual(sorted(self.sim.buckets), [0, 1])


class TestStart(CliTestCase):

    def test_image_mode(self):
        path = os.path.join(self.tmp, 'a.png')
        Image.new('RGB', (320, 320), (10, 10, 10)).save(path)
        with patch('sys.stdout', new_callable=io.StringIO):
            code = start(mode='image', path=path, interval=0.01, max_ticks=2)
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.brightness, 100)
        self.assertEqual(self.sim.visual_mode, (4, 0))
        self.assertGreaterEqual(len(self.sim.commands(b'\x72')), 4)

    def test_gauge_mode(self):
        with patch('sys.stdout', new_callable=io.StringIO):
            code = start(profile='fixed:55', interval=0.01, max_ticks=2, max_frames=2)
        self.assertEqual(code, 0)
        self.assertEqual(len(self.sim.commands(b'\x36\x02')), 2)
        self.assertEqual(self.sim.fan_duty, 55)

    def test_image_mode_needs_path(self):
        with patch('sys.stdout', new_callable=io.StringIO):
            with self.assertRaises(ValueError):
                start(mode='image', interval=0.01, max_ticks=1)

    def test_corrupt_image_fails_before_device_io(self):
        path = os.path.join(self.tmp, 'broken.png')
        with open(path, 'wb') as f:
            f.write(b'not an image at all')
        before = list(self.sim.events)
        with patch('krakenz.cli._open_device') as open_device:
            code, out = self.run_cli('start', '--mode', 'image', '--path', path)
        self.assertEqual(code, 1)
        self.assertIn('Error:', out)
        open_device.assert_not_called()
        self.assertEqual(self.sim.events, before)

    def test_image_upload_failure_falls_back_to_gauge(self):
        path = os.path.join(self.tmp, 'a.png')
        Image.new('RGB', (320, 320), (10, 10, 10)).save(path)
        # Both transport attempts, each retried once, so only the image upload fails
        self.sim.mute(b'\x36\x02', times=4)
        with patch('sys.stdout', new_callable=io.StringIO):
            code = start(mode='image', path=path, interval=0.01, max_ticks=2, max_frames=2)
        self.assertEqual(code, 0)
        payloads = [w for w in self.bulk.writes if len(w) == RASTER_SIZE]
        self.assertEqual(len(payloads), 3)
        self.assertEqual(payloads[0][:3], bytes((10, 10, 10)))
        self.assertNotEqual(payloads[-1], payloads[0])
        self.assertEqual(self.sim.visual_mode[0], 4)

    def test_active_lcd_profile_brightness(self):
        path = os.path.join(self.tmp, 'a.png')
        Image.new('RGB', (320, 320)).save(path)
        config = AppConfig(active_lcd_profile='night')
        with patch('krakenz.cli._load_config', return_value=config):
            with patch('sys.stdout', new_callable=io.StringIO):
                start(mode='image', path=path, interval=0.01, max_ticks=1)
        self.assertEqual(self.sim.brightness, 10)

    def test_fixed_profile_uses_saved_duty(self):
        self.run_cli('set-fan', '35')
        self.sim.fan_duty = 0
        with patch('krakenz.cli._load_config', return_value=AppConfig.load(self.config_path)):
            with patch('sys.stdout', new_callable=io.StringIO):
                start(profile='fixed', interval=0.01, max_ticks=1, max_frames=1)
        self.assertEqual(self.sim.fan_duty, 35)


class TestDiagnostics(CliTestCase):

    @patch('krakenz.transport.find_devices',
           return_value=[DetectedDevice(0x1E71, 0x3008, 'ABC123', 3, 7)])
    def test_list(self, _find):
        code, out = self.run_cli('list')
        self.assertEqual(code, 0)
        self.assertIn('1e71:3008', out)
        self.assertIn('ABC123', out)

    @patch('krakenz.transport.find_devices', return_value=[])
    def test_list_none(self, _find):
        code, out = self.run_cli('list')
        self.assertEqual(code, 1)

    def test_info(self):
        code, out = self.run_cli('info')
        self.assertEqual(code, 0)
        self.assertIn('Firmware: 1.2.3', out)

    @patch('krakenz.cli.time.sleep')
    def test_debug(self, _sleep):
        code, out = self.run_cli('debug', '-c', '2')
        self.assertEqual(code, 0)
        self.assertEqual(out.count('--- read'), 2)
        self.assertIn('75 01', out)

    def test_debug_lcd(self):
        code, out = self.run_cli('debug-lcd')
        self.assertEqual(code, 0)
        self.assertIn('31 01', out)

    @patch('krakenz.telemetry.list_host_sensors',
           return_value=[HostSensor('k10temp', 'Tctl', 52.0, None)])
    def test_sensors(self, _sensors):
        code, out = self.run_cli('sensors')
        self.assertEqual(code, 0)
        self.assertIn('Tctl', out)

    @patch('krakenz.cli.time.sleep')
    def test_discover_presets(self, _sleep):
        code, out = self.run_cli('discover-presets', '2', '-m', '3')
        self.assertEqual(code, 0)
        self.assertEqual(self.sim.visual_mode, (2, 3))
        self.assertEqual(len(self.sim.commands(b'\x38\x01')), 4)


if __name__ == '__main__':
    unittest.main()
