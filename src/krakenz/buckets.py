#!/usr/bin/env python3
"""
LCD bucket allocator.

The Kraken LCD stores assets in 16 buckets that share 24320 one-KiB
pages of memory.  The allocator keeps a local mirror of bucket occupancy,
picks target buckets, lays them out in memory and runs the bracketed
upload sequence::

    36 03                     handshake (no ack)
    32 02 [idx]          → 33 02   delete
    32 01 [idx] ...      → 33 01   setup (memory offset + page count)
    36 01 [idx]          → 37 01   start bulk
    <20-byte header><payload>      bulk channel
    36 02                → 37 02   end bulk

The mirror is a hint, not ground truth: ``list()`` refreshes it from the
device, and it is only changed after an operation fully succeeds.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Optional, Set

from . import protocol
from .device import KrakenZ3
from .errors import AckTimeout, NoFreeBucket, ProtocolViolation
from .protocol import (
    BUCKET_COUNT,
    LCD_TOTAL_MEMORY_PAGES,
    BucketInfo,
    BucketState,
    CommandFrame,
)

log = logging.getLogger(__name__)


# =========================================================================
# Constants
# =========================================================================

# Rotating acquisition: start evicting once this many buckets are in use
HIGH_WATER_MARK = 12
# ...and free at most this many of the oldest at a time
EVICT_BATCH = 8


# =========================================================================
# Allocator
# =========================================================================

class BucketAllocator:
    """Occupancy mirror + upload sequencing for one device."""

    def __init__(self, device: KrakenZ3, count: int = BUCKET_COUNT,
                 high_water_mark: int = HIGH_WATER_MARK,
                 evict_batch: int = EVICT_BATCH):
        self.device = device
        self.count = count
        self.high_water_mark = high_water_mark
        self.evict_batch = evict_batch
        self._mirror: List[BucketInfo] = [BucketInfo(i) for i in range(count)]
        # Occupied indices, oldest upload first
        self._order: Deque[int] = deque()
        self._protected: Set[int] = set()

    @classmethod
    def from_device(cls, device: KrakenZ3, **kwargs) -> 'BucketAllocator':
        """Allocator whose mirror is synchronized with the device."""
        allocator = cls(device, **kwargs)
        allocator.list()
        return allocator

    @property
    def transport(self):
        return self.device.transport

    # -- Mirror ----------------------------------------------------------

    def list(self) -> List[BucketInfo]:
        """Query every bucket and refresh the mirror from the replies."""
        with self.transport.exclusive():
            self.transport.drain()
            fresh = []
            for index in range(self.count):
                reply = self._command(protocol.encode_bucket_query(index))
                fresh.append(protocol.parse_bucket_info(index, reply or b''))

        # Buckets that survived keep their age; newly seen ones count as oldest
        occupied = {b.index for b in fresh if b.occupied}
        kept = [i for i in self._order if i in occupied]
        unseen = [i for i in sorted(occupied) if i not in kept]
        self._order = deque(unseen + kept)
        self._mirror = fresh
        self._protected &= occupied
        log.debug("Bucket mirror refreshed: %d/%d occupied", len(occupied), self.count)
        return list(fresh)

    def snapshot(self) -> List[BucketInfo]:
        """Current mirror without touching the device."""
        return list(self._mirror)

    @property
    def occupied_count(self) -> int:
        return sum(1 for b in self._mirror if b.occupied)

    # -- Protection ------------------------------------------------------

    def protect(self, index: int) -> None:
        """Keep *index* (the bucket on screen) out of automatic selection."""
        self._check_index(index)
        self._protected.add(index)

    def unprotect(self, index: int) -> None:
        self._protected.discard(index)

    @property
    def protected(self) -> Set[int]:
        return set(self._protected)

    # -- Selection -------------------------------------------------------

    def select_target(self, hint: Optional[int] = None) -> int:
        """Pick a bucket for a new upload.

        The hint wins when it is a valid index and not protected; otherwise
        the lowest-indexed empty bucket.  ``NoFreeBucket`` when neither
        exists (callers may still force an overwrite through ``upload``).
        """
        if hint is not None and 0 <= hint < self.count and hint not in self._protected:
            return hint
        for info in self._mirror:
            if not info.occupied and info.index not in self._protected:
                return info.index
        raise NoFreeBucket(f"all {self.count} buckets are occupied")

    def acquire(self) -> int:
        """Rotating acquisition for continuously regenerated content.

        Below the high-water mark the lowest empty bucket is returned.  At
        the mark the oldest unprotected buckets (up to ``evict_batch``) are
        deleted and the oldest of them is handed back for reuse.
        """
        if self.occupied_count < self.high_water_mark:
            try:
                return self.select_target()
            except NoFreeBucket:
                pass

        victims = [i for i in self._order if i not in self._protected][:self.evict_batch]
        if not victims:
            raise NoFreeBucket("no unprotected bucket available for reuse")
        log.info("Bucket high-water mark reached; evicting %s", victims)
        for index in victims[1:]:
            self.delete(index)
        return victims[0]

    # -- Device operations ----------------------------------------------

    def upload(self, index: int, header: bytes, payload: bytes) -> BucketInfo:
        """Write one asset into bucket *index*.

        The header's declared length must equal ``len(payload)``; a mismatch
        raises ``ProtocolViolation`` before any device I/O.  Any transport
        error aborts the sequence with the mirror untouched.
        """
        self._check_index(index)
        _, declared = protocol.decode_bulk_header(header)
        if declared != len(payload):
            raise ProtocolViolation(
                f"header declares {declared} bytes but payload is {len(payload)}"
            )
        size_pages = protocol.pages_for(len(payload))
        if size_pages > LCD_TOTAL_MEMORY_PAGES:
            raise ProtocolViolation(
                f"asset needs {size_pages} pages, LCD memory holds {LCD_TOTAL_MEMORY_PAGES}"
            )

        with self.transport.exclusive():
            start_page = self._memory_offset(index, size_pages)
            log.debug("Upload bucket %d: %d bytes, %d pages at page %d",
                      index, len(payload), size_pages, start_page)
            self.transport.send_command(protocol.encode_bulk_handshake())
            self._command(protocol.encode_bucket_delete(index))
            self._command(protocol.encode_bucket_setup(index, start_page, size_pages))
            self._command(protocol.encode_bucket_start(index))
            self.transport.write_bulk(header)
            self.transport.write_bulk(payload)
            self._command(protocol.encode_bucket_end())

            info = BucketInfo(index, BucketState.OCCUPIED, start_page, size_pages)
            self._mirror[index] = info
            if index in self._order:
                self._order.remove(index)
            self._order.append(index)

        log.info("Bucket %d committed (%d bytes)", index, len(payload))
        return info

    def delete(self, index: int) -> None:
        self._check_index(index)
        with self.transport.exclusive():
            self._command(protocol.encode_bucket_delete(index))
            self._forget(index)

    def clear_all(self) -> None:
        """Delete every bucket on the device and reset the mirror.

        The mirror is reset even when a delete fails, since the point of
        this call is recovery from an unknown device state.
        """
        try:
            with self.transport.exclusive():
                for index in range(self.count):
                    self._command(protocol.encode_bucket_delete(index))
        finally:
            self._mirror = [BucketInfo(i) for i in range(self.count)]
            self._order.clear()
            self._protected.clear()
            log.info("All buckets cleared")

    # -- Internals -------------------------------------------------------

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.count:
            raise ValueError(f"bucket index {index} outside 0-{self.count - 1}")

    def _forget(self, index: int) -> None:
        self._mirror[index] = BucketInfo(index)
        if index in self._order:
            self._order.remove(index)
        self._protected.discard(index)

    def _command(self, frame: CommandFrame) -> Optional[bytes]:
        """send_command with one extra retry for a transient AckTimeout."""
        try:
            return self.transport.send_command(frame)
        except AckTimeout as e:
            log.warning("%s: %s; retrying once", frame.name, e)
            return self.transport.send_command(frame)

    def _memory_offset(self, index: int, size_pages: int) -> int:
        """Start page for *size_pages* in bucket *index*.

        Reuse the bucket's own region when it is big enough, else append
        after the highest occupied region, else page 0 (logged as
        fragmentation when that overlaps the lowest region).
        """
        current = self._mirror[index]
        if current.occupied and current.size_pages >= size_pages:
            return current.start_page

        others = [b for b in self._mirror if b.occupied and b.index != index]
        max_end = max((b.end_page for b in others), default=0)
        if max_end + size_pages <= LCD_TOTAL_MEMORY_PAGES:
            return max_end
        # Page 0 either way; it only overlaps a live region when the gap is too small
        min_start = min((b.start_page for b in others), default=None)
        if min_start is None or size_pages > min_start:
            log.warning("LCD memory fragmented; placing bucket %d at page 0", index)
        return 0
