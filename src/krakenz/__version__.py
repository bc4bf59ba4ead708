"""krakenz version information."""

__version__ = "0.4.1"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history:
# 0.1.0 - Status readout, fixed pump/fan speeds, firmware query
# 0.2.0 - LCD brightness/orientation, bucket listing and delete, static
#         image upload over the bulk endpoint
# 0.2.1 - Memory offset planning (reuse own region, append, wrap to 0),
#         pre-upload delete so stale buckets never block a write
# 0.3.0 - Speed profiles, cooling daemon, LCD profiles, config file
# 0.3.1 - Host-driven GIF playback with front/back buckets, delay
#         quantization, 50-frame decimation
# 0.4.0 - `start`: gauge/image/animation display plus cooling loop on one
#         device, shared telemetry, SIGINT/SIGTERM shutdown
# 0.4.1 - FIFO bucket eviction at the high-water mark, REST API
