"""FastAPI REST API for headless/remote control.

Endpoints:
    GET  /health              - Server status
    GET  /status              - Liquid temperature, pump and fan
    GET  /buckets             - LCD bucket table
    POST /speed/{channel}     - Fixed pump or fan duty
    POST /lcd/brightness      - LCD brightness
    POST /lcd/image           - Show an uploaded image on the LCD

Security:
    - Localhost-only by default (uvicorn krakenz.api:app --host 127.0.0.1)
    - Optional token auth (X-API-Token header)
    - 10 MB upload limit with PIL format validation

Run with ``uvicorn krakenz.api:app``.
"""
from __future__ import annotations

import io
import logging
import threading

from fastapi import FastAPI, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from PIL import Image
from pydantic import BaseModel, Field

from krakenz.__version__ import __version__
from krakenz.buckets import BucketAllocator
from krakenz.device import KrakenZ3
from krakenz.errors import DeviceNotFound, KrakenError, NoFreeBucket
from krakenz.frames import to_raster
from krakenz.protocol import ASSET_STATIC, LCD_MODE_BUCKET, Channel, encode_bulk_header

log = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MB

app = FastAPI(title="krakenz", version=__version__)

# ── Shared device (opened on first use) ───────────────────────────────

_device: KrakenZ3 | None = None
_device_lock = threading.Lock()


def configure_device(device: KrakenZ3 | None) -> None:
    """Use *device* for every request (None = open lazily)."""
    global _device  # noqa: PLW0603
    _device = device


def _get_device() -> KrakenZ3:
    global _device  # noqa: PLW0603
    with _device_lock:
        if _device is None or _device.closed:
            try:
                device = KrakenZ3.open()
                device.initialize()
            except DeviceNotFound as e:
                raise HTTPException(status_code=404, detail=str(e))
            except KrakenError as e:
                raise HTTPException(status_code=503, detail=str(e))
            _device = device
        return _device


# ── Token auth middleware (optional) ──────────────────────────────────

_api_token: str | None = None


def configure_auth(token: str | None) -> None:
    """Set the API token (None disables auth)."""
    global _api_token  # noqa: PLW0603
    _api_token = token


@app.middleware("http")
async def check_token(request: Request, call_next):
    """Reject requests without valid token (if token is configured)."""
    if _api_token and request.url.path != "/health":
        if request.headers.get("X-API-Token") != _api_token:
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})
    return await call_next(request)


@app.exception_handler(KrakenError)
async def kraken_error(request: Request, exc: KrakenError):
    log.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ── Pydantic models ──────────────────────────────────────────────────

class StatusResponse(BaseModel):
    liquid_temp: float
    pump_rpm: int
    pump_duty: int
    fan_rpm: int
    fan_duty: int


class BucketResponse(BaseModel):
    index: int
    state: str
    start_page: int
    size_pages: int


class SpeedRequest(BaseModel):
    duty: int = Field(ge=0, le=100)


class BrightnessRequest(BaseModel):
    brightness: int = Field(ge=0, le=100)


# ── Endpoints ────────────────────────────────────────────────────────

@app.get("/health")
def health() -> dict:
    """Health check (always accessible, no auth required)."""
    return {"status": "ok", "version": __version__}


@app.get("/status")
def status() -> StatusResponse:
    s = _get_device().get_status()
    return StatusResponse(liquid_temp=s.liquid_temp, pump_rpm=s.pump_rpm,
                          pump_duty=s.pump_duty, fan_rpm=s.fan_rpm, fan_duty=s.fan_duty)


@app.get("/buckets")
def buckets() -> list[BucketResponse]:
    """Query every bucket on the device."""
    return [
        BucketResponse(index=b.index, state=b.state.value,
                       start_page=b.start_page, size_pages=b.size_pages)
        for b in BucketAllocator(_get_device()).list()
    ]


@app.post("/speed/{channel}")
def set_speed(channel: str, body: SpeedRequest) -> dict:
    """Fixed duty for 'pump' or 'fan'."""
    try:
        ch = Channel.parse(channel)
        ch.validate_duty(body.duty)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _get_device().set_fixed_speed(ch, body.duty)
    return {"channel": ch.name.lower(), "duty": body.duty}


@app.post("/lcd/brightness")
def set_brightness(body: BrightnessRequest) -> dict:
    _get_device().set_brightness(body.brightness)
    return {"brightness": body.brightness}


@app.post("/lcd/image")
async def send_image(image: UploadFile, orientation: int = 0, fit: str = "stretch",
                     bucket: int | None = None) -> dict:
    """Upload a still image to a free bucket and show it.

    Validates size and format before touching the device.
    """
    data = await image.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image exceeds 10 MB limit")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()  # Force decode to catch corrupt files
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid image format")

    try:
        raster = to_raster(img, fit=fit, orientation=orientation)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    device = _get_device()
    allocator = BucketAllocator.from_device(device)
    try:
        index = allocator.select_target(bucket)
    except NoFreeBucket as e:
        raise HTTPException(status_code=409, detail=str(e))
    allocator.upload(index, encode_bulk_header(ASSET_STATIC, len(raster)), raster)
    device.set_visual_mode(LCD_MODE_BUCKET, index)
    return {"sent": True, "bucket": index}
