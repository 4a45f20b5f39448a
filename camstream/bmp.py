"""Save RGB frames as uncompressed 24-bit BMP files."""

from __future__ import annotations

import contextlib
import logging
import struct
import sys
from typing import BinaryIO, Iterator, Sequence

from .config import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

_FILE_HEADER = struct.Struct("<2sIHHI")
_IMAGE_HEADER = struct.Struct("<IIiHHIIIIII")
_PIXELS_PER_METRE = 100000


@contextlib.contextmanager
def _open_target(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
        return
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError(f"failed to open file {filename}") from exc
    with fp:
        yield fp


def bmp_save(mem: Sequence[bytes], info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write an RGB888 frame to filename ("-" for stdout) as a top-down BMP."""
    if info.pixel_format != PixelFormat.RGB888:
        raise RuntimeError("pixel format for bmp should be RGB")

    line = info.width * 3
    pitch = (line + 3) & ~3  # rows are padded to multiples of 4 bytes
    padding = bytes(pitch - line)
    data = memoryview(mem[0]).cast("B")
    if info.height and len(data) < (info.height - 1) * info.stride + line:
        raise RuntimeError("buffer too small for BMP image")

    offset = _FILE_HEADER.size + _IMAGE_HEADER.size
    filesize = offset + info.height * pitch
    header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, offset) + _IMAGE_HEADER.pack(
        _IMAGE_HEADER.size,
        info.width,
        -info.height,  # negative height stores the rows top-down
        1,
        24,
        0,
        0,
        _PIXELS_PER_METRE,
        _PIXELS_PER_METRE,
        0,
        0,
    )

    with _open_target(filename) as fp:
        try:
            fp.write(header)
        except OSError as exc:
            raise RuntimeError("failed to write BMP file") from exc
        for row in range(info.height):
            start = row * info.stride
            try:
                fp.write(data[start : start + line])
                if padding:
                    fp.write(padding)
            except OSError as exc:
                raise RuntimeError(f"failed to write BMP file, row {row}") from exc

    log.debug("Wrote %d bytes to BMP file", filesize)