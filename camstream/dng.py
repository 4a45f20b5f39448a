"""Save raw Bayer frames as DNG files with a small greyscale preview."""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Mapping, Sequence

import numpy as np

from .config import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

_RGGB = (0, 1, 1, 2)
_GRBG = (1, 0, 2, 1)
_BGGR = (2, 1, 1, 0)
_GBRG = (1, 2, 0, 1)


@dataclass(frozen=True)
class _BayerFormat:
    name: str
    bits: int
    order: tuple[int, int, int, int]


_BAYER_FORMATS = {
    PixelFormat.SRGGB10_CSI2P: _BayerFormat("RGGB-10", 10, _RGGB),
    PixelFormat.SGRBG10_CSI2P: _BayerFormat("GRBG-10", 10, _GRBG),
    PixelFormat.SBGGR10_CSI2P: _BayerFormat("BGGR-10", 10, _BGGR),
    PixelFormat.SGBRG10_CSI2P: _BayerFormat("GBRG-10", 10, _GBRG),
    PixelFormat.SRGGB12_CSI2P: _BayerFormat("RGGB-12", 12, _RGGB),
    PixelFormat.SGRBG12_CSI2P: _BayerFormat("GRBG-12", 12, _GRBG),
    PixelFormat.SBGGR12_CSI2P: _BayerFormat("BGGR-12", 12, _BGGR),
    PixelFormat.SGBRG12_CSI2P: _BayerFormat("GBRG-12", 12, _GBRG),
}


def _packed_rows(data: bytes, info: StreamInfo, row_bytes: int) -> np.ndarray:
    flat = np.frombuffer(data, dtype=np.uint8)
    if info.height == 0 or row_bytes == 0:
        return np.zeros((info.height, row_bytes), dtype=np.uint16)
    if len(flat) < (info.height - 1) * info.stride + row_bytes:
        raise RuntimeError("buffer too small for raw image")
    index = np.arange(info.height)[:, None] * info.stride + np.arange(row_bytes)
    return flat[index].astype(np.uint16)


def unpack_10bit(data: bytes, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 10-bit data (4 pixels in 5 bytes) to a height x width uint16 array."""
    groups = (info.width + 3) // 4
    rows = _packed_rows(data, info, groups * 5).reshape(info.height, groups, 5)
    shifts = np.array([0, 2, 4, 6], dtype=np.uint16)
    pixels = (rows[..., :4] << 2) | ((rows[..., 4:5] >> shifts) & 3)
    return np.ascontiguousarray(pixels.reshape(info.height, groups * 4)[:, : info.width])


def unpack_12bit(data: bytes, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 12-bit data (2 pixels in 3 bytes) to a height x width uint16 array."""
    groups = (info.width + 1) // 2
    rows = _packed_rows(data, info, groups * 3).reshape(info.height, groups, 3)
    first = (rows[..., 0] << 4) | (rows[..., 2] & 15)
    second = (rows[..., 1] << 4) | ((rows[..., 2] >> 4) & 15)
    pixels = np.stack([first, second], axis=-1)
    return np.ascontiguousarray(pixels.reshape(info.height, groups * 2)[:, : info.width])


class Matrix:
    """A 3x3 matrix stored row by row."""

    __slots__ = ("m",)

    def __init__(self, *args: float):
        if len(args) == 9:
            self.m = [float(a) for a in args]
        elif len(args) == 3:
            d0, d1, d2 = (float(a) for a in args)
            self.m = [d0, 0.0, 0.0, 0.0, d1, 0.0, 0.0, 0.0, d2]
        elif not args:
            self.m = [0.0] * 9
        else:
            raise TypeError("Matrix takes 0, 3 or 9 values")

    def transpose(self) -> "Matrix":
        m = self.m
        return Matrix(m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8])

    def cofactor(self) -> "Matrix":
        m = self.m
        return Matrix(
            m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
            -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
            m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3],
        )

    def adjugate(self) -> "Matrix":
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.m
        return (
            m[0] * (m[4] * m[8] - m[5] * m[7])
            - m[1] * (m[3] * m[8] - m[5] * m[6])
            + m[2] * (m[3] * m[7] - m[4] * m[6])
        )

    def inverse(self) -> "Matrix":
        det = self.determinant()
        if det == 0:
            raise ValueError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __mul__(self, other: Any) -> "Matrix":
        if isinstance(other, Matrix):
            a, b = self.m, other.m
            return Matrix(
                *(
                    a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
                    for i in range(3)
                    for j in range(3)
                )
            )
        if isinstance(other, (int, float)):
            return Matrix(*(value * other for value in self.m))
        return NotImplemented

    def __repr__(self) -> str:
        return f"Matrix({', '.join(f'{v:g}' for v in self.m)})"


# TIFF field types.
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10
_PACK_CODES = {_BYTE: "B", _SHORT: "H", _LONG: "I", _RATIONAL: "II", _SRATIONAL: "ii"}


def _rational(value: float, signed: bool) -> tuple[int, int]:
    if not signed and value < 0:
        raise ValueError(f"negative value {value} for an unsigned rational")
    limit = 2**31 - 1 if signed else 2**32 - 1
    for max_denominator in (1_000_000, 10_000, 100, 1):
        fraction = Fraction(value).limit_denominator(max_denominator)
        if abs(fraction.numerator) <= limit and fraction.denominator <= limit:
            return fraction.numerator, fraction.denominator
    raise ValueError(f"value {value} cannot be stored as a rational")


@dataclass
class _Entry:
    type: int
    count: int
    data: bytes


class _Directory:
    """One TIFF image file directory."""

    def __init__(self) -> None:
        self.entries: dict[int, _Entry] = {}

    def add(self, tag: int, field_type: int, values: Any) -> None:
        if field_type == _ASCII:
            data = str(values).encode() + b"\x00"
            self.entries[tag] = _Entry(field_type, len(data), data)
            return
        values = list(values)
        code = _PACK_CODES[field_type]
        if field_type in (_RATIONAL, _SRATIONAL):
            signed = field_type == _SRATIONAL
            data = b"".join(struct.pack("<" + code, *_rational(v, signed)) for v in values)
        else:
            data = struct.pack(f"<{len(values)}{code}", *values)
        self.entries[tag] = _Entry(field_type, len(values), data)

    def size(self) -> int:
        extra = sum((len(e.data) + 1) & ~1 for e in self.entries.values() if len(e.data) > 4)
        return 2 + 12 * len(self.entries) + 4 + extra

    def serialise(self, offset: int, next_offset: int = 0) -> bytes:
        data_pos = offset + 2 + 12 * len(self.entries) + 4
        body = bytearray(struct.pack("<H", len(self.entries)))
        extra = bytearray()
        for tag in sorted(self.entries):
            entry = self.entries[tag]
            body += struct.pack("<HHI", tag, entry.type, entry.count)
            if len(entry.data) <= 4:
                body += entry.data.ljust(4, b"\x00")
            else:
                body += struct.pack("<I", data_pos + len(extra))
                extra += entry.data
                if len(entry.data) & 1:
                    extra += b"\x00"
        body += struct.pack("<I", next_offset)
        return bytes(body + extra)


def _black_levels(metadata: Mapping[str, Any], bayer: _BayerFormat) -> list[float]:
    scale = (1 << bayer.bits) / 65536.0
    black = 4096 * scale
    levels = [black] * 4
    sensor_levels = metadata.get("SensorBlackLevels")
    if sensor_levels is None:
        log.warning("WARNING: no black level found, using default")
        return levels
    # The metadata lists R, Gr, Gb, B; place each where it sits in this Bayer order.
    for i in range(4):
        j = bayer.order[i]
        j = 0 if j == 0 else (3 if j == 2 else 1 + bool(bayer.order[i ^ 1]))
        levels[j] = sensor_levels[i] * scale
    return levels


def _thumbnail(buf: np.ndarray, bits: int) -> np.ndarray:
    height, width = buf.shape
    white = (1 << bits) - 1
    ys = np.arange(height >> 4) * 16
    xs = np.arange(width >> 4) * 16
    pixels = buf.astype(np.int64)
    total = (
        pixels[ys][:, xs]
        + pixels[ys][:, xs + 1]
        + pixels[ys + 1][:, xs]
        + pixels[ys + 1][:, xs + 1]
    )
    grey = np.floor(white * np.sqrt(total / white)).astype(np.int64)  # rough "gamma"
    grey = ((grey >> (bits - 6)) & 0xFF).astype(np.uint8)
    return np.repeat(grey[..., None], 3, axis=2)


def dng_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    filename: str,
    cam_name: str,
    options: StillOptions,
) -> None:
    """Write a packed Bayer frame as a DNG with a preview, colour data and EXIF fields."""
    bayer = _BAYER_FORMATS.get(info.pixel_format)
    if bayer is None:
        raise RuntimeError("unsupported Bayer format")
    log.info("Bayer format is %s", bayer.name)

    if bayer.bits == 10:
        buf = unpack_10bit(mem[0], info)
    elif bayer.bits == 12:
        buf = unpack_12bit(mem[0], info)
    else:
        raise RuntimeError(f"unsupported bit depth {bayer.bits}")

    black_levels = _black_levels(metadata, bayer)

    exposure = metadata.get("ExposureTime")
    exp_time = 10000.0
    if exposure is not None:
        exp_time = float(exposure)
    else:
        log.warning("WARNING: default to exposure time of %gus", exp_time)
    exp_time /= 1e6

    analogue_gain = metadata.get("AnalogueGain")
    iso = 100
    if analogue_gain is not None:
        iso = int(analogue_gain * 100.0) & 0xFFFF
    else:
        log.warning("WARNING: default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains is not None:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix(colour_gains[0], 1, colour_gains[1])

    # A plausible default in case the metadata has no colour matrix.
    ccm = Matrix(1.90255, -0.77478, -0.12777, -0.31338, 1.88197, -0.56858, -0.06001, -0.61785, 1.67786)
    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(*ccm_values)
    else:
        log.warning("WARNING: no CCM metadata found")

    rgb2xyz = Matrix(
        0.4124564, 0.3575761, 0.1804375,
        0.2126729, 0.7151522, 0.0721750,
        0.0193339, 0.1191920, 0.9503041,
    )
    cam_xyz = (rgb2xyz * ccm * wb_gains).inverse()
    log.debug(
        "Black levels %s, exposure time %gus, ISO %d", black_levels, exp_time * 1e6, iso
    )
    log.debug("Neutral %s", neutral)
    log.debug("Cam_XYZ: %s", cam_xyz)

    white = (1 << bayer.bits) - 1
    thumb = _thumbnail(buf, bayer.bits)
    thumb_height, thumb_width = thumb.shape[:2]
    thumb_bytes = thumb.tobytes()
    raw_bytes = buf.astype("<u2").tobytes()

    # The preview comes first to help software that only reads the first directory.
    ifd0 = _Directory()
    ifd0.add(254, _LONG, [1])
    ifd0.add(256, _LONG, [thumb_width])
    ifd0.add(257, _LONG, [thumb_height])
    ifd0.add(258, _SHORT, [8, 8, 8])
    ifd0.add(259, _SHORT, [1])
    ifd0.add(262, _SHORT, [2])
    ifd0.add(271, _ASCII, "Raspberry Pi")
    ifd0.add(272, _ASCII, cam_name)
    ifd0.add(273, _LONG, [0])
    ifd0.add(274, _SHORT, [1])
    ifd0.add(277, _SHORT, [3])
    ifd0.add(278, _LONG, [thumb_height])
    ifd0.add(279, _LONG, [len(thumb_bytes)])
    ifd0.add(284, _SHORT, [1])
    ifd0.add(305, _ASCII, "libcamera-still")
    ifd0.add(330, _LONG, [0])
    ifd0.add(34665, _LONG, [0])
    ifd0.add(50706, _BYTE, [1, 1, 0, 0])
    ifd0.add(50707, _BYTE, [1, 0, 0, 0])
    ifd0.add(50708, _ASCII, cam_name)
    ifd0.add(50721, _SRATIONAL, cam_xyz.m)
    ifd0.add(50728, _RATIONAL, neutral)
    ifd0.add(50778, _SHORT, [21])

    raw = _Directory()
    raw.add(254, _LONG, [0])
    raw.add(256, _LONG, [info.width])
    raw.add(257, _LONG, [info.height])
    raw.add(258, _SHORT, [16])
    raw.add(259, _SHORT, [1])
    raw.add(262, _SHORT, [32803])
    raw.add(273, _LONG, [0])
    raw.add(277, _SHORT, [1])
    raw.add(278, _LONG, [info.height])
    raw.add(279, _LONG, [len(raw_bytes)])
    raw.add(284, _SHORT, [1])
    raw.add(33421, _SHORT, [2, 2])
    raw.add(33422, _BYTE, bayer.order)
    raw.add(50713, _SHORT, [2, 2])
    raw.add(50714, _RATIONAL, black_levels)
    raw.add(50717, _LONG, [white])

    exif = _Directory()
    exif.add(33434, _RATIONAL, [exp_time])
    exif.add(34855, _SHORT, [iso])
    exif.add(36867, _ASCII, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime()))

    ifd0_offset = 8
    raw_offset = ifd0_offset + ifd0.size()
    exif_offset = raw_offset + raw.size()
    thumb_offset = exif_offset + exif.size()
    raw_data_offset = (thumb_offset + len(thumb_bytes) + 1) & ~1

    ifd0.add(273, _LONG, [thumb_offset])
    ifd0.add(330, _LONG, [raw_offset])
    ifd0.add(34665, _LONG, [exif_offset])
    raw.add(273, _LONG, [raw_data_offset])

    payload = bytearray(b"II*\x00" + struct.pack("<I", ifd0_offset))
    payload += ifd0.serialise(ifd0_offset)
    payload += raw.serialise(raw_offset)
    payload += exif.serialise(exif_offset)
    payload += thumb_bytes
    payload += bytes(raw_data_offset - len(payload))
    payload += raw_bytes

    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError(f"could not open file {filename}") from exc
    with fp:
        try:
            fp.write(payload)
        except OSError as exc:
            raise RuntimeError("error writing DNG image data") from exc