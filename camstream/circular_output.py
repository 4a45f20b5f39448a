"""Keep recent frames in a ring buffer and write them out when closing."""

from __future__ import annotations

import logging
import struct
import sys
from typing import BinaryIO

from .config import VideoOptions
from .output import Flag, Output

log = logging.getLogger(__name__)

ALIGN = 16
_HEADER = struct.Struct("<I?3xq")


def _align(length: int) -> int:
    return (length + ALIGN - 1) & ~(ALIGN - 1)


class CircularBuffer:
    """A fixed-size byte ring with one read and one write position."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("circular buffer size must be positive")
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        """Bytes that can still be written."""
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Remove and return the next n bytes."""
        chunk = b""
        if self._rptr + n >= self._size:
            chunk = bytes(self._buf[self._rptr :])
            n -= self._size - self._rptr
            self._rptr = 0
        chunk += self._buf[self._rptr : self._rptr + n]
        self._rptr += n
        return chunk

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data: bytes) -> None:
        view = memoryview(data).cast("B")
        if len(view) >= self._size:
            raise ValueError("data larger than the circular buffer")
        if self._wptr + len(view) >= self._size:
            first = self._size - self._wptr
            self._buf[self._wptr :] = view[:first]
            view = view[first:]
            self._wptr = 0
        self._buf[self._wptr : self._wptr + len(view)] = view
        self._wptr += len(view)


class CircularOutput(Output):
    """Buffers the last options.circular megabytes and saves them from the first keyframe."""

    def __init__(self, options: VideoOptions):
        super().__init__(options)
        self._cb = CircularBuffer(options.circular << 20)
        self._fp: BinaryIO | None = None
        self._owns_fp = False
        if options.output == "-":
            self._fp = sys.stdout.buffer
        elif options.output:
            try:
                self._fp = open(options.output, "wb")
                self._owns_fp = True
            except OSError:
                self._fp = None
        if self._fp is None:
            super().close()
            raise RuntimeError("could not open output file")

    def _output_buffer(self, mem: bytes, timestamp_us: int, flags: Flag) -> None:
        size = len(mem)
        pad = (ALIGN - size) & (ALIGN - 1)
        while size + pad + _HEADER.size > self._cb.available():
            if self._cb.empty():
                raise RuntimeError("circular buffer too small")
            length, _, _ = _HEADER.unpack(self._cb.read(_HEADER.size))
            self._cb.skip(_align(length))
        self._cb.write(_HEADER.pack(size, bool(flags & Flag.KEYFRAME), timestamp_us))
        self._cb.write(mem)
        self._cb.pad(pad)

    def _timestamp_ready(self, timestamp: int) -> None:
        # Timestamps are only written for the frames saved at the end.
        pass

    def close(self) -> None:
        """Write everything from the first buffered keyframe onwards."""
        if self._fp is not None:
            total = frames = 0
            seen_keyframe = False
            while not self._cb.empty():
                length, keyframe, timestamp = _HEADER.unpack(self._cb.read(_HEADER.size))
                seen_keyframe |= keyframe
                if seen_keyframe:
                    self._fp.write(self._cb.read(length))
                    self._cb.skip((ALIGN - length) & (ALIGN - 1))
                    total += length
                    if self._timestamps is not None:
                        super()._timestamp_ready(timestamp)
                    frames += 1
                else:
                    self._cb.skip(_align(length))
            if self._owns_fp:
                self._fp.close()
            else:
                self._fp.flush()
            self._fp = None
            log.info("Wrote %d bytes (%d frames)", total, frames)
        super().close()