#!/usr/bin/env python3
"""
krakenz - Command Line Interface

Entry point for the krakenz-linux package.
"""

import argparse
import logging
import os
import sys
import threading
import time

from krakenz.__version__ import __version__
from krakenz.errors import DeviceClosed, KrakenError

log = logging.getLogger(__name__)


def _setup_logging(verbose=0):
    """Configure logging from the -v count (filter out noisy PIL)."""
    if verbose >= 2:
        logging.basicConfig(level=logging.DEBUG, format='[%(levelname)s] %(name)s: %(message)s')
        logging.getLogger('PIL').setLevel(logging.WARNING)
    elif verbose == 1:
        logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="krakenz",
        description="NZXT Kraken Z3 control for Linux (pump, fan, LCD)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    krakenz status                 Show liquid temperature, pump and fan
    krakenz set-pump 60            Fixed pump duty
    krakenz profile silent -c fan  Store a speed curve on the device
    krakenz upload-image cat.png   Show an image on the LCD
    krakenz start                  LCD gauge + cooling loop from config
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)"
    )
    parser.add_argument("--serial", help="Serial number of the cooler to use")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    sub.add_parser("status", help="Show current device status")

    p = sub.add_parser("monitor", help="Continuously monitor device status")
    p.add_argument("--interval", "-i", type=float, default=1.0, help="Update interval in seconds")
    p.add_argument("--count", "-n", type=int, help="Stop after N updates")

    p = sub.add_parser("start", help="Run the LCD display and cooling loop together")
    p.add_argument("--profile", "-p", help="Cooling profile (silent, performance, fixed, fixed:NN, ...)")
    p.add_argument("--source", "-s", help="Temperature source: liquid or cpu")
    p.add_argument("--interval", "-n", type=float, help="Update interval in seconds")
    p.add_argument("--mode", "-m", help="Display mode: gauge, image or animation")
    p.add_argument("--path", help="Image or animation file for image/animation modes")
    p.add_argument("--fit", choices=("stretch", "letterbox"), help="How images fill the LCD")
    p.add_argument("--no-share", action="store_true",
                   help="Poll telemetry separately for display and cooling")

    p = sub.add_parser("set-pump", help="Set fixed pump speed")
    p.add_argument("duty", type=int, help="Duty cycle percentage (20-100)")

    p = sub.add_parser("set-fan", help="Set fixed fan speed")
    p.add_argument("duty", type=int, help="Duty cycle percentage (0-100)")

    p = sub.add_parser("cooling-daemon", help="Temperature-based pump/fan control loop")
    p.add_argument("--profile", "-p", default="silent", help="Cooling profile (default: silent)")
    p.add_argument("--source", "-s", default="liquid", help="Temperature source: liquid or cpu")
    p.add_argument("--interval", "-i", type=float, default=2.0, help="Update interval in seconds")
    p.add_argument("--count", "-n", type=int, help="Stop after N ticks")

    p = sub.add_parser("set-brightness", help="Set LCD brightness")
    p.add_argument("brightness", type=int, help="Brightness percentage (0-100)")

    p = sub.add_parser("set-orientation", help="Set LCD orientation")
    p.add_argument("orientation", type=int, help="0=0°, 1=90°, 2=180°, 3=270°")

    p = sub.add_parser("set-lcd-mode", help="Set LCD visual mode")
    p.add_argument("mode", type=int, help="1=CPU, 2=Liquid, 3=GPU, 4=Bucket")
    p.add_argument("index", type=int, nargs="?", default=0, help="Bucket index (default 0)")

    p = sub.add_parser("upload-image", help="Show an image or animation on the LCD")
    p.add_argument("path", help="Image file (png, jpg, gif, ...)")
    p.add_argument("--bucket", "-b", type=int, help="Preferred bucket index")
    p.add_argument("--fit", choices=("stretch", "letterbox"), default="stretch")
    p.add_argument("--orientation", "-o", type=int, choices=(0, 90, 180, 270),
                   help="Rotate clockwise (default: the LCD's current orientation)")
    p.add_argument("--repeat", "-r", type=int, help="Animation passes (default: loop forever)")
    p.add_argument("--native", action="store_true",
                   help="Upload an animation as one GIF the device loops by itself")

    p = sub.add_parser("lcd-monitor", help="Continuously show a temperature gauge")
    p.add_argument("--interval", "-i", type=float, default=5.0, help="Update interval in seconds")
    p.add_argument("--source", "-s", default="liquid", help="Temperature source: liquid or cpu")
    p.add_argument("--count", "-n", type=int, help="Stop after N frames")

    sub.add_parser("list-buckets", help="List LCD memory buckets")
    sub.add_parser("delete-buckets", help="Delete all LCD memory buckets")

    p = sub.add_parser("profile", help="Store a speed profile on the device")
    p.add_argument("name", help="silent, performance, fixed, fixed:NN or a config profile")
    p.add_argument("--channel", "-c", default="fan", help="fan or pump (default: fan)")

    p = sub.add_parser("lcd-profile", help="Apply an LCD profile")
    p.add_argument("name", help="off, night, day, max or a config profile")

    sub.add_parser("list", help="List connected Kraken devices")
    sub.add_parser("info", help="Show firmware version")

    p = sub.add_parser("debug", help="Dump raw status reports")
    p.add_argument("--count", "-c", type=int, default=5, help="Number of reads")

    sub.add_parser("debug-lcd", help="Dump the raw LCD info report")
    sub.add_parser("sensors", help="List host temperature sensors")

    p = sub.add_parser("discover-presets", help="Sweep visual mode indices")
    p.add_argument("mode", type=int, nargs="?", default=4, help="Mode id (default 4)")
    p.add_argument("--max", "-m", type=int, default=20, help="Highest index to try")
    p.add_argument("--delay", "-d", type=float, default=2.0, help="Seconds per index")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _setup_logging(args.verbose)
    serial = args.serial

    try:
        if args.command == "status":
            return show_status(serial)
        elif args.command == "monitor":
            return monitor(args.interval, count=args.count, serial=serial)
        elif args.command == "start":
            return start(profile=args.profile, source=args.source, interval=args.interval,
                         mode=args.mode, path=args.path, fit=args.fit,
                         share=False if args.no_share else None, serial=serial)
        elif args.command == "set-pump":
            return set_speed("pump", args.duty, serial)
        elif args.command == "set-fan":
            return set_speed("fan", args.duty, serial)
        elif args.command == "cooling-daemon":
            return cooling_daemon(args.profile, args.source, args.interval,
                                  count=args.count, serial=serial)
        elif args.command == "set-brightness":
            return set_brightness(args.brightness, serial)
        elif args.command == "set-orientation":
            return set_orientation(args.orientation, serial)
        elif args.command == "set-lcd-mode":
            return set_lcd_mode(args.mode, args.index, serial)
        elif args.command == "upload-image":
            return upload_image(args.path, bucket=args.bucket, fit=args.fit,
                                orientation=args.orientation, repeat=args.repeat,
                                native=args.native, serial=serial)
        elif args.command == "lcd-monitor":
            return lcd_monitor(args.interval, args.source, count=args.count, serial=serial)
        elif args.command == "list-buckets":
            return list_buckets(serial)
        elif args.command == "delete-buckets":
            return delete_buckets(serial)
        elif args.command == "profile":
            return apply_speed_profile(args.name, args.channel, serial)
        elif args.command == "lcd-profile":
            return apply_lcd_profile(args.name, serial)
        elif args.command == "list":
            return list_devices()
        elif args.command == "info":
            return show_info(serial)
        elif args.command == "debug":
            return debug_status(args.count, serial)
        elif args.command == "debug-lcd":
            return debug_lcd(serial)
        elif args.command == "sensors":
            return show_sensors()
        elif args.command == "discover-presets":
            return discover_presets(args.mode, args.max, args.delay, serial)
    except (KrakenError, ValueError) as e:
        print(f"Error: {e}")
        log.debug("Command failed", exc_info=True)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130

    return 0


# =========================================================================
# Helpers
# =========================================================================

def _open_device(serial=None, initialize=True):
    """Open (and by default initialize) the cooler."""
    from krakenz.device import KrakenZ3

    kraken = KrakenZ3.open(serial)
    if initialize:
        try:
            kraken.initialize()
        except KrakenError:
            kraken.close()
            raise
    return kraken


def _load_config():
    from krakenz.conf import AppConfig
    return AppConfig.load()


def _format_status(status):
    return (
        f"Liquid temperature: {status.liquid_temp:.1f} °C\n"
        f"Pump:               {status.pump_rpm} rpm ({status.pump_duty}%)\n"
        f"Fan:                {status.fan_rpm} rpm ({status.fan_duty}%)"
    )


def _hexdump(data, width=16):
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        lines.append(f"{offset:04x}  {chunk.hex(' ')}")
    return "\n".join(lines)


def _content_source(mode, path, fit, orientation, repeat=None):
    """Decoded still or animation source for image/animation display modes."""
    from krakenz.frames import AnimatedSequenceSource, StaticImageSource

    if mode == "image":
        if not path:
            raise ValueError("image mode needs an image path")
        return StaticImageSource(path, fit=fit, orientation=orientation)
    if mode == "animation":
        if not path:
            raise ValueError("animation mode needs an animation path")
        return AnimatedSequenceSource(path, fit=fit, orientation=orientation, repeat=repeat)
    raise ValueError(f"no content source for display mode '{mode}'")


def _is_animated(path):
    from PIL import Image

    from krakenz.errors import AssetDecodeError
    try:
        with Image.open(path) as img:
            return getattr(img, 'n_frames', 1) > 1
    except OSError as e:
        raise AssetDecodeError(f"cannot decode {path}: {e}") from e


# =========================================================================
# Status / monitoring
# =========================================================================

def show_status(serial=None):
    """Print liquid temperature, pump and fan readings."""
    with _open_device(serial) as kraken:
        print(_format_status(kraken.get_status()))
    return 0


def monitor(interval=1.0, count=None, serial=None):
    """Print status every interval; push host CPU/GPU temps for modes 1/3."""
    from krakenz.errors import SensorError
    from krakenz.telemetry import read_cpu_temperature, read_gpu_temperature

    with _open_device(serial) as kraken:
        print(f"Monitoring Kraken Z3 every {interval:g}s (Ctrl+C to stop)...")
        done = 0
        while count is None or done < count:
            try:
                try:
                    cpu = read_cpu_temperature()
                except SensorError:
                    cpu = 0.0
                gpu = read_gpu_temperature() or 0.0
                kraken.set_host_info(cpu, gpu)
                print(f"CPU: {cpu:.0f} °C | GPU: {gpu:.0f} °C")
                print(_format_status(kraken.get_status()))
            except DeviceClosed:
                raise
            except KrakenError as e:
                print(f"Read error: {e}")
            done += 1
            if count is None or done < count:
                time.sleep(interval)
    return 0


# =========================================================================
# Cooling
# =========================================================================

def set_speed(channel_name, duty, serial=None):
    """Set a fixed duty on one channel."""
    from krakenz.protocol import Channel

    channel = Channel.parse(channel_name)
    channel.validate_duty(duty)
    with _open_device(serial) as kraken:
        kraken.set_fixed_speed(channel, duty)
    print(f"{channel.name.capitalize()} set to {duty}%")
    _remember_fixed(channel.name.lower(), duty)
    return 0


def _remember_fixed(channel, duty):
    """Store the duty as the default of the 'fixed' cooling profile."""
    from krakenz.conf import CONFIG_PATH

    config = _load_config()
    config.update_fixed(channel, duty)
    try:
        config.save()
    except OSError as e:
        print(f"Warning: could not update {CONFIG_PATH}: {e}")


def apply_speed_profile(name, channel_name="fan", serial=None):
    """Store a profile's curve for one channel on the device."""
    from krakenz.cooling import apply_profile
    from krakenz.protocol import Channel

    channel = Channel.parse(channel_name)
    profile = _load_config().cooling_profile(name)
    curve = profile.pump if channel is Channel.PUMP else profile.fan
    with _open_device(serial) as kraken:
        apply_profile(kraken, channel, curve)
    print(f"Applied profile '{name}' to {channel.name.lower()}")
    return 0


def cooling_daemon(profile_name="silent", source_name="liquid", interval=2.0,
                   count=None, serial=None):
    """Closed-loop pump/fan control until Ctrl+C."""
    from krakenz.cooling import CoolingLoop
    from krakenz.scheduler import UnifiedScheduler, install_signal_handlers
    from krakenz.telemetry import DeviceTelemetry, TempSource

    profile = _load_config().cooling_profile(profile_name)
    source = TempSource.parse(source_name)
    with _open_device(serial) as kraken:
        loop = CoolingLoop(kraken, DeviceTelemetry(kraken), source,
                           profile.pump, profile.fan, interval)
        print(f"Cooling daemon: profile {profile.name}, source {source.label}, "
              f"every {interval:g}s (Ctrl+C to stop)")
        scheduler = UnifiedScheduler(cooling=loop)
        if threading.current_thread() is threading.main_thread():
            install_signal_handlers(scheduler)
        scheduler.run(max_ticks=count)
        print(f"Cooling daemon stopped after {loop.ticks} cycle(s).")
    return 0


# =========================================================================
# LCD
# =========================================================================

def set_brightness(brightness, serial=None):
    if not 0 <= brightness <= 100:
        raise ValueError("Brightness must be between 0 and 100")
    with _open_device(serial) as kraken:
        kraken.set_brightness(brightness)
    print(f"Brightness set to {brightness}%")
    return 0


def set_orientation(orientation, serial=None):
    if not 0 <= orientation <= 3:
        raise ValueError("Orientation must be between 0 and 3 (0=0, 1=90, 2=180, 3=270)")
    with _open_device(serial) as kraken:
        kraken.set_orientation(orientation)
    print(f"Orientation set to {orientation * 90}°")
    return 0


def set_lcd_mode(mode, index=0, serial=None):
    with _open_device(serial) as kraken:
        kraken.set_visual_mode(mode, index)
    print(f"LCD mode {mode} (index {index})")
    return 0


def apply_lcd_profile(name, serial=None):
    """Brightness plus visual mode from a named LCD profile."""
    profile = _load_config().lcd_profile(name)
    with _open_device(serial) as kraken:
        kraken.set_brightness(profile.brightness)
        kraken.set_visual_mode(profile.mode, profile.bucket)
    print(f"LCD profile '{profile.name}': {profile.brightness}%, "
          f"mode {profile.mode} (bucket {profile.bucket})")
    return 0


def upload_image(path, bucket=None, fit="stretch", orientation=None, repeat=None,
                 native=False, serial=None):
    """Show a still image, or play an animation until it ends or Ctrl+C.

    Without *orientation* the LCD's current orientation is used.  With
    *native* an animation is uploaded once as a GIF asset and looped by
    the device itself.
    """
    from krakenz.buckets import BucketAllocator
    from krakenz.display import FramePresenter
    from krakenz.frames import AnimatedSequenceSource, StaticImageSource
    from krakenz.protocol import ASSET_GIF, ASSET_STATIC, LCD_MODE_BUCKET, encode_bulk_header
    from krakenz.scheduler import UnifiedScheduler, install_signal_handlers

    if not os.path.exists(path):
        print(f"Error: File not found: {path}")
        return 1

    # Decode before opening the device; device orientation is applied afterwards
    animated = _is_animated(path)
    if animated:
        source = AnimatedSequenceSource(path, fit=fit, orientation=orientation or 0,
                                        repeat=repeat)
    else:
        source = StaticImageSource(path, fit=fit, orientation=orientation or 0)

    with _open_device(serial) as kraken:
        extra = 0
        if orientation is None:
            extra = kraken.get_lcd_info().orientation * 90
            log.info("Using LCD orientation %d°", extra)
        allocator = BucketAllocator.from_device(kraken)

        if animated and native:
            data = source.to_gif(extra)
            index = allocator.select_target(bucket)
            allocator.upload(index, encode_bulk_header(ASSET_GIF, len(data)), data)
            kraken.set_visual_mode(LCD_MODE_BUCKET, index)
            print(f"Uploaded {path} ({len(source)} frames, {len(data)} bytes) to bucket {index}")
            return 0

        source.reorient(extra)
        if animated:
            presenter = FramePresenter(kraken, allocator)
            scheduler = UnifiedScheduler(presenter=presenter, frames=source)
            if threading.current_thread() is threading.main_thread():
                install_signal_handlers(scheduler)
            print(f"Playing {path}: {len(source)} frame(s) (Ctrl+C to stop)")
            scheduler.run()
            return 0

        frame = next(source.frames())
        index = allocator.select_target(bucket)
        allocator.upload(index, encode_bulk_header(ASSET_STATIC, len(frame.data)), frame.data)
        kraken.set_visual_mode(LCD_MODE_BUCKET, index)
    print(f"Uploaded {path} to bucket {index}")
    return 0


def lcd_monitor(interval=5.0, source_name="liquid", count=None, serial=None):
    """Regenerate a temperature gauge every interval."""
    from krakenz.buckets import BucketAllocator
    from krakenz.display import FramePresenter
    from krakenz.frames import GaugeStreamSource
    from krakenz.scheduler import UnifiedScheduler, install_signal_handlers
    from krakenz.telemetry import DeviceTelemetry, TempSource

    config = _load_config()
    active = config.active_profile()
    source = TempSource.parse(source_name)
    with _open_device(serial) as kraken:
        if active is not None:
            kraken.set_brightness(active.brightness)
        allocator = BucketAllocator(kraken)
        allocator.clear_all()
        frames = GaugeStreamSource(DeviceTelemetry(kraken), source,
                                   style=config.gauge_style(), interval=interval)
        presenter = FramePresenter(kraken, allocator, rotate=True)
        scheduler = UnifiedScheduler(presenter=presenter, frames=frames)
        if threading.current_thread() is threading.main_thread():
            install_signal_handlers(scheduler)
        print(f"LCD monitor: {source.label} every {interval:g}s (Ctrl+C to stop)")
        scheduler.run(max_frames=count)
    return 0


def list_buckets(serial=None):
    from krakenz.buckets import BucketAllocator

    with _open_device(serial) as kraken:
        buckets = BucketAllocator(kraken).list()
    print(f"{'Bucket':<8}{'State':<10}{'Start':>8}{'Pages':>8}")
    for b in buckets:
        print(f"{b.index:<8}{b.state.value:<10}{b.start_page:>8}{b.size_pages:>8}")
    used = sum(b.size_pages for b in buckets if b.occupied)
    print(f"\n{sum(1 for b in buckets if b.occupied)} occupied, {used} KiB used")
    return 0


def delete_buckets(serial=None):
    from krakenz.buckets import BucketAllocator

    with _open_device(serial) as kraken:
        BucketAllocator(kraken).clear_all()
    print("All LCD buckets deleted")
    return 0


# =========================================================================
# Unified start
# =========================================================================

def start(profile=None, source=None, interval=None, mode=None, path=None, fit=None,
          share=None, serial=None, max_ticks=None, max_frames=None):
    """LCD frames + cooling loop against one device until Ctrl+C.

    Arguments override the ``startup`` section of the config file.
    An active LCD profile sets the brightness and gauge style.  Image and
    animation modes fall back to the gauge when their first upload fails.
    """
    from krakenz.buckets import BucketAllocator
    from krakenz.conf import StartupConfig
    from krakenz.cooling import CoolingLoop
    from krakenz.display import FramePresenter, with_fallback
    from krakenz.frames import GaugeStreamSource
    from krakenz.scheduler import SharedTelemetry, UnifiedScheduler, install_signal_handlers
    from krakenz.telemetry import DeviceTelemetry, TempSource

    config = _load_config()
    startup = config.startup
    mode = StartupConfig(display_mode=mode).display_mode if mode else startup.display_mode
    interval = interval or startup.interval
    fit = fit or startup.fit
    source_tag = TempSource.parse(source) if source else startup.source
    cooling_profile = config.cooling_profile(profile or startup.cooling_profile)
    if path is None:
        path = startup.animation_path if mode == "animation" else startup.image_path
    active = config.active_profile()
    brightness = active.brightness if active is not None else startup.brightness
    style = config.gauge_style()

    # Decode before any device I/O; only the gauge needs live telemetry
    content = None
    if mode != "gauge":
        content = _content_source(mode, path, fit, startup.orientation,
                                  repeat=startup.animation_repeat)

    stop = threading.Event()
    with _open_device(serial) as kraken:
        kraken.set_lcd_config(brightness, startup.orientation // 90)

        telemetry = DeviceTelemetry(kraken)
        if startup.share_telemetry if share is None else share:
            telemetry = SharedTelemetry(telemetry, max_age=interval / 2)

        gauge = GaugeStreamSource(telemetry, source_tag, style=style, interval=interval,
                                  orientation=startup.orientation, stop_event=stop)
        if content is None:
            # Gauge frames rotate through buckets; start from a clean slate
            allocator = BucketAllocator(kraken)
            allocator.clear_all()
            presenter = FramePresenter(kraken, allocator, rotate=True)
            frames = gauge
        else:
            allocator = BucketAllocator.from_device(kraken)
            presenter = FramePresenter(kraken, allocator)
            frames = with_fallback(presenter, content.frames(), gauge.frames)

        cooling = CoolingLoop(kraken, telemetry, source_tag,
                              cooling_profile.pump, cooling_profile.fan, interval)
        scheduler = UnifiedScheduler(cooling, presenter, frames, stop_event=stop)
        if threading.current_thread() is threading.main_thread():
            install_signal_handlers(scheduler)

        print(f"Started: {mode} display, profile {cooling_profile.name}, "
              f"source {source_tag.label}, every {interval:g}s (Ctrl+C to stop)")
        scheduler.run(max_ticks=max_ticks, max_frames=max_frames)
    return 0


# =========================================================================
# Discovery / diagnostics
# =========================================================================

def list_devices():
    from krakenz.transport import find_devices

    devices = find_devices()
    if not devices:
        print("No Kraken Z3 devices found.")
        return 1
    for i, dev in enumerate(devices, 1):
        serial = dev.serial or "unknown serial"
        print(f"[{i}] Kraken Z3 [{dev.vid:04x}:{dev.pid:04x}] bus {dev.bus} "
              f"addr {dev.address} ({serial})")
    return 0


def show_info(serial=None):
    with _open_device(serial, initialize=False) as kraken:
        firmware = kraken.initialize()
    print(f"Firmware: {firmware}")
    return 0


def debug_status(count=5, serial=None):
    """Dump raw status reports to locate field offsets."""
    from krakenz.protocol import encode_status_request

    with _open_device(serial) as kraken:
        for i in range(count):
            reply = kraken.transport.send_command(encode_status_request()) or b''
            print(f"--- read {i + 1}/{count} ({len(reply)} bytes)")
            print(_hexdump(reply))
            time.sleep(0.5)
    return 0


def debug_lcd(serial=None):
    with _open_device(serial) as kraken:
        info = kraken.get_lcd_info()
    print(f"Brightness: {info.brightness}%  Orientation: {info.orientation * 90}°")
    print(_hexdump(info.raw))
    return 0


def show_sensors():
    from krakenz.telemetry import list_host_sensors

    sensors = list_host_sensors()
    if not sensors:
        print("No temperature sensors found.")
        return 1
    for s in sensors:
        crit = f" (crit {s.critical:.0f} °C)" if s.critical else ""
        print(f"{s.driver:<14}{s.label:<20}{s.current:6.1f} °C{crit}")
    return 0


def discover_presets(mode=4, max_index=20, delay=2.0, serial=None):
    """Step through visual mode indices so the LCD shows what each one is."""
    with _open_device(serial) as kraken:
        for index in range(max_index + 1):
            print(f"Mode {mode}, index {index}")
            try:
                kraken.set_visual_mode(mode, index)
            except DeviceClosed:
                raise
            except KrakenError as e:
                print(f"  rejected: {e}")
            time.sleep(delay)
    return 0


if __name__ == "__main__":
    sys.exit(main())
