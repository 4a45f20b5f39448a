"""Save RGB frames as PNG files."""

from __future__ import annotations

import contextlib
import io
import logging
import sys
from typing import BinaryIO, Iterator, Sequence

import numpy as np
from PIL import Image

from .config import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)


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


def _rows(data: bytes, info: StreamInfo) -> np.ndarray:
    line = info.width * 3
    flat = np.frombuffer(data, dtype=np.uint8)
    needed = (info.height - 1) * info.stride + line if info.height else 0
    if len(flat) < needed:
        raise RuntimeError("buffer too small for PNG image")
    padded = np.zeros(info.height * info.stride, dtype=np.uint8)
    usable = min(len(flat), len(padded))
    padded[:usable] = flat[:usable]
    return padded.reshape(info.height, info.stride)[:, :line].reshape(info.height, info.width, 3)


def png_save(mem: Sequence[bytes], info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write a BGR888 frame (bytes in R, G, B order) to filename ("-" for stdout)."""
    if info.pixel_format != PixelFormat.BGR888:
        raise RuntimeError("pixel format for png should be BGR")

    with _open_target(filename) as fp:
        image = Image.fromarray(np.ascontiguousarray(_rows(mem[0], info)))
        buffer = io.BytesIO()
        # Low compression gets most of the size reduction for much less time.
        image.save(buffer, format="PNG", compress_level=1)
        encoded = buffer.getvalue()
        try:
            fp.write(encoded)
        except OSError as exc:
            raise RuntimeError(f"failed to write file {filename}") from exc

    log.debug("Wrote PNG file of %d bytes", len(encoded))