"""Push frame sequences to the LCD.

Playback is host-driven: each frame becomes one static asset in a bucket,
the LCD is switched to that bucket, and the presenter waits out the frame's
duration before the next upload.  Two buckets are used as front/back
buffers when the device has room; with a single free bucket it is simply
overwritten in place.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional

from .buckets import BucketAllocator
from .device import KrakenZ3
from .errors import DeviceClosed, KrakenError, NoFreeBucket
from .frames import Frame
from .protocol import ASSET_STATIC, LCD_MODE_BUCKET, encode_bulk_header

log = logging.getLogger(__name__)


class UploadState(Enum):
    PENDING = 'pending'
    UPLOADING = 'uploading'
    COMMITTED = 'committed'
    FAILED = 'failed'


@dataclass
class AssetUpload:
    """Lifecycle of one frame's trip to the device."""
    frame_index: int
    state: UploadState = UploadState.PENDING
    bucket: Optional[int] = None
    error: Optional[BaseException] = field(default=None, repr=False)

    def begin(self, bucket: int) -> None:
        if self.state is not UploadState.PENDING:
            raise RuntimeError(f"upload already {self.state.value}")
        self.bucket = bucket
        self.state = UploadState.UPLOADING

    def commit(self) -> None:
        if self.state is not UploadState.UPLOADING:
            raise RuntimeError(f"cannot commit an upload that is {self.state.value}")
        self.state = UploadState.COMMITTED

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.state = UploadState.FAILED


class FramePresenter:
    """Uploads frames through a BucketAllocator and puts them on screen.

    With ``rotate=True`` buckets come from the allocator's rotating
    acquisition instead of the front/back pair.
    """

    def __init__(self, device: KrakenZ3, allocator: BucketAllocator,
                 rotate: bool = False,
                 stop_event: Optional[threading.Event] = None):
        self.device = device
        self.allocator = allocator
        self.rotate = rotate
        self.stop_event = stop_event or threading.Event()
        self.current: Optional[int] = None
        self._back: Optional[int] = None
        self.frames_shown = 0
        self.failures = 0

    def _target(self) -> int:
        if self.rotate:
            return self.allocator.acquire()
        if self._back is not None:
            return self._back
        try:
            return self.allocator.select_target()
        except NoFreeBucket:
            if self.current is not None:
                return self.current
            return self.allocator.acquire()

    def present(self, frame: Frame, index: int = 0) -> AssetUpload:
        """Upload *frame* and switch the LCD to it."""
        upload = AssetUpload(index)
        bucket = self._target()
        upload.begin(bucket)
        log.debug("Frame %d → bucket %d", index, bucket)
        try:
            self.allocator.upload(bucket, encode_bulk_header(ASSET_STATIC, len(frame.data)),
                                  frame.data)
            self.device.set_visual_mode(LCD_MODE_BUCKET, bucket)
        except Exception as e:
            upload.fail(e)
            if bucket == self._back:
                self._back = None
            log.error("Frame %d upload to bucket %d failed: %s", index, bucket, e)
            raise
        upload.commit()

        previous = self.current
        self.allocator.protect(bucket)
        if previous is not None and previous != bucket:
            self.allocator.unprotect(previous)
            self._back = None if self.rotate else previous
        elif previous == bucket:
            self._back = None
        self.current = bucket
        self.frames_shown += 1
        return upload

    def run(self, frames: Iterable[Frame], max_frames: Optional[int] = None) -> int:
        """Present *frames* until exhausted, stopped or *max_frames* reached.

        The stop event is checked between frames only; an upload in
        progress always completes.  A frame whose upload fails is dropped
        and its delay still observed; only ``DeviceClosed`` (or a non-device
        error) ends the run early.  Returns the number of frames shown.
        """
        shown = 0
        for index, frame in enumerate(frames):
            if self.stop_event.is_set():
                break
            started = time.monotonic()
            try:
                self.present(frame, index)
            except DeviceClosed:
                raise
            except KrakenError as e:
                # Only this frame is lost; the last good one stays on screen
                self.failures += 1
                log.warning("Frame %d dropped, continuing: %s", index, e)
            else:
                shown += 1
                if max_frames is not None and shown >= max_frames:
                    break
            if frame.duration_ms > 0:
                remaining = frame.duration_ms / 1000.0 - (time.monotonic() - started)
                if remaining > 0 and self.stop_event.wait(remaining):
                    break
        log.info("Presenter finished after %d frame(s)", shown)
        return shown


def with_fallback(presenter: FramePresenter, primary: Iterable[Frame],
                  fallback: Callable[[], Iterable[Frame]]) -> Iterator[Frame]:
    """Frames from *primary*, or from ``fallback()`` if the first one never
    reaches the LCD.

    The check runs when *presenter* asks for the second frame, i.e. after
    the first upload has either committed or been dropped.
    """
    shown_before = presenter.frames_shown
    for i, frame in enumerate(primary):
        yield frame
        if i == 0 and presenter.frames_shown == shown_before:
            log.warning("First frame was not shown; switching to the fallback source")
            break
    else:
        return
    yield from fallback()
