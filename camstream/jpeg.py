"""Save YUV frames as JPEG files carrying EXIF data and an optional thumbnail."""

from __future__ import annotations

import io
import logging
import re
import struct
import sys
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Mapping, Sequence

import numpy as np
from PIL import Image

from .config import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

EXIF_HEADER = b"\xff\xd8\xff\xe1"
_EXIF_PREFIX = b"Exif\x00\x00"
_THUMB_LIMIT = 60000


class ExifFormat(IntEnum):
    """EXIF value formats, numbered as in the TIFF type field."""

    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10

    @property
    def size(self) -> int:
        return _FORMAT_SIZES[self]


_FORMAT_SIZES = {
    ExifFormat.BYTE: 1,
    ExifFormat.ASCII: 1,
    ExifFormat.SHORT: 2,
    ExifFormat.LONG: 4,
    ExifFormat.RATIONAL: 8,
    ExifFormat.SBYTE: 1,
    ExifFormat.UNDEFINED: 1,
    ExifFormat.SSHORT: 2,
    ExifFormat.SLONG: 4,
    ExifFormat.SRATIONAL: 8,
}


class Ifd(Enum):
    """The image file directories of an EXIF block."""

    IFD0 = "IFD0"
    IFD1 = "IFD1"
    EXIF = "EXIF"
    GPS = "GPS"
    INTEROPERABILITY = "EINT"


_IFD_NAMES = {ifd.value: ifd for ifd in Ifd}

# name: (tag id, format or None when unknown, components; 0 means variable)
_TAGS: dict[str, tuple[int, ExifFormat | None, int]] = {
    "ImageWidth": (0x0100, ExifFormat.LONG, 1),
    "ImageLength": (0x0101, ExifFormat.LONG, 1),
    "Compression": (0x0103, ExifFormat.SHORT, 1),
    "ImageDescription": (0x010E, ExifFormat.ASCII, 0),
    "Make": (0x010F, ExifFormat.ASCII, 0),
    "Model": (0x0110, ExifFormat.ASCII, 0),
    "Orientation": (0x0112, ExifFormat.SHORT, 1),
    "XResolution": (0x011A, ExifFormat.RATIONAL, 1),
    "YResolution": (0x011B, ExifFormat.RATIONAL, 1),
    "ResolutionUnit": (0x0128, ExifFormat.SHORT, 1),
    "Software": (0x0131, ExifFormat.ASCII, 0),
    "DateTime": (0x0132, ExifFormat.ASCII, 0),
    "Artist": (0x013B, ExifFormat.ASCII, 0),
    "JPEGInterchangeFormat": (0x0201, ExifFormat.LONG, 1),
    "JPEGInterchangeFormatLength": (0x0202, ExifFormat.LONG, 1),
    "YCbCrCoefficients": (0x0211, ExifFormat.UNDEFINED, 0),
    "Copyright": (0x8298, ExifFormat.ASCII, 0),
    "ExposureTime": (0x829A, ExifFormat.RATIONAL, 1),
    "FNumber": (0x829D, ExifFormat.RATIONAL, 1),
    "ISOSpeedRatings": (0x8827, ExifFormat.SHORT, 1),
    "DateTimeOriginal": (0x9003, ExifFormat.ASCII, 0),
    "DateTimeDigitized": (0x9004, ExifFormat.ASCII, 0),
    "BrightnessValue": (0x9203, ExifFormat.SRATIONAL, 1),
    "ExposureBiasValue": (0x9204, ExifFormat.SRATIONAL, 1),
    "FocalLength": (0x920A, ExifFormat.RATIONAL, 1),
    "MakerNote": (0x927C, None, 0),
    "UserComment": (0x9286, ExifFormat.UNDEFINED, 0),
    "GPSLatitudeRef": (0x0001, ExifFormat.ASCII, 0),
    "GPSLatitude": (0x0002, ExifFormat.RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, ExifFormat.ASCII, 0),
    "GPSLongitude": (0x0004, ExifFormat.RATIONAL, 3),
    "GPSAltitude": (0x0006, ExifFormat.RATIONAL, 1),
}

# Tags whose format the table leaves undefined but which are known to be something else.
_EXCEPTIONS = {0x0211: (ExifFormat.RATIONAL, 3)}

_POINTERS = {Ifd.EXIF: 0x8769, Ifd.GPS: 0x8825, Ifd.INTEROPERABILITY: 0xA005}

_TAG_PREFIX = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")
_INTEGER = re.compile(r"\s*([+-]?\d+)")
_RATIONAL = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")

_READ_ERRORS = {
    ExifFormat.SHORT: "failed to read EXIF unsigned short",
    ExifFormat.SSHORT: "failed to read EXIF signed short",
    ExifFormat.LONG: "failed to read EXIF unsigned short",
    ExifFormat.SLONG: "failed to read EXIF signed short",
    ExifFormat.RATIONAL: "failed to read EXIF unsigned rational",
    ExifFormat.SRATIONAL: "failed to read EXIF signed rational",
}


def _pack(fmt: ExifFormat, value: Any) -> bytes:
    if fmt in (ExifFormat.SHORT, ExifFormat.SSHORT):
        return struct.pack("<H", int(value) & 0xFFFF)
    if fmt in (ExifFormat.LONG, ExifFormat.SLONG):
        return struct.pack("<I", int(value) & 0xFFFFFFFF)
    if fmt in (ExifFormat.RATIONAL, ExifFormat.SRATIONAL):
        num, den = value
        return struct.pack("<II", int(num) & 0xFFFFFFFF, int(den) & 0xFFFFFFFF)
    if fmt in (ExifFormat.BYTE, ExifFormat.SBYTE, ExifFormat.UNDEFINED):
        return bytes([int(value) & 0xFF])
    raise ValueError(f"cannot pack values of format {fmt.name}")


def _read_value(fmt: ExifFormat, text: str) -> tuple[bytes, int]:
    """Parse one value from the start of text, returning its bytes and the characters used."""
    if fmt not in _READ_ERRORS:
        raise RuntimeError(f"cannot read EXIF values of format {fmt.name}")
    if fmt in (ExifFormat.RATIONAL, ExifFormat.SRATIONAL):
        match = _RATIONAL.match(text)
        if match is None:
            raise RuntimeError(_READ_ERRORS[fmt])
        return _pack(fmt, (int(match.group(1)), int(match.group(2)))), match.end()
    match = _INTEGER.match(text)
    if match is None:
        raise RuntimeError(_READ_ERRORS[fmt])
    return _pack(fmt, int(match.group(1))), match.end()


@dataclass
class _Entry:
    format: ExifFormat | None
    components: int
    data: bytes


class ExifData:
    """EXIF directories and entries, saved in Intel byte order."""

    def __init__(self) -> None:
        self._ifds: dict[Ifd, dict[int, _Entry]] = {ifd: {} for ifd in Ifd}

    def _entry(self, ifd: Ifd, tag: str) -> _Entry:
        try:
            tag_id, fmt, components = _TAGS[tag]
        except KeyError:
            raise ValueError(f"unknown EXIF tag {tag}") from None
        entries = self._ifds[ifd]
        if tag_id not in entries:
            size = fmt.size * components if fmt is not None and fmt != ExifFormat.ASCII else 0
            entries[tag_id] = _Entry(fmt, components, bytes(size))
        return entries[tag_id]

    def set_string(self, ifd: Ifd, tag: str, value: str) -> None:
        """Store an ASCII value."""
        entry = self._entry(ifd, tag)
        data = value.encode()
        entry.format = ExifFormat.ASCII
        entry.components = len(data)
        entry.data = data

    def set_values(self, ifd: Ifd, tag: str, fmt: ExifFormat, values: Sequence[Any]) -> None:
        """Store numeric values; rationals are given as (numerator, denominator) pairs."""
        entry = self._entry(ifd, tag)
        entry.format = fmt
        entry.components = len(values)
        entry.data = b"".join(_pack(fmt, value) for value in values)

    def read_tag(self, text: str) -> None:
        """Apply a setting written as "IFD.Tag=value[,value...]"."""
        match = _TAG_PREFIX.match(text)
        if match is None:
            raise RuntimeError("failed to read EXIF IFD and tag")
        ifd_name, tag_name = match.group(1), match.group(2)
        if ifd_name not in _IFD_NAMES:
            raise RuntimeError(f"bad IFD name {ifd_name}")
        ifd = _IFD_NAMES[ifd_name]
        if tag_name not in _TAGS:
            log.warning("WARNING: no EXIF tag %s found - ignoring", tag_name)
            return

        entry = self._entry(ifd, tag_name)
        if entry.format is None:
            log.warning("WARNING: format for EXIF tag %s unknown - ignoring", tag_name)
            return
        if entry.format == ExifFormat.UNDEFINED:
            tag_id = _TAGS[tag_name][0]
            if tag_id in _EXCEPTIONS:
                entry.format, entry.components = _EXCEPTIONS[tag_id]
                entry.data = b""
            else:
                log.warning("WARNING: libexif format for tag %s undefined - treating as ASCII", tag_name)
                entry.format = ExifFormat.ASCII

        consumed = match.end()
        if entry.format == ExifFormat.ASCII:
            self.set_string(ifd, tag_name, text[consumed:])
            return
        if not entry.data or entry.components == 0:
            if entry.components == 0:
                entry.components = text[consumed:].count(",") + 1
        values = []
        for _ in range(entry.components):
            if consumed >= len(text):
                raise RuntimeError(f"too few parameters for EXIF tag {tag_name}")
            data, used = _read_value(entry.format, text[consumed:])
            values.append(data)
            consumed += used + 1  # allow a comma
        entry.data = b"".join(values)

    def to_bytes(self) -> bytes:
        """Serialise as an APP1 payload: "Exif\\0\\0" followed by a TIFF structure."""
        has_interop = bool(self._ifds[Ifd.INTEROPERABILITY])
        present = [Ifd.IFD0]
        if self._ifds[Ifd.EXIF] or has_interop:
            present.append(Ifd.EXIF)
        if self._ifds[Ifd.GPS]:
            present.append(Ifd.GPS)
        if has_interop:
            present.append(Ifd.INTEROPERABILITY)
        if self._ifds[Ifd.IFD1]:
            present.append(Ifd.IFD1)

        tables: dict[Ifd, dict[int, tuple[int, int, bytes]]] = {}
        for ifd in present:
            table = {
                tag: (int(entry.format or ExifFormat.UNDEFINED), entry.components, entry.data)
                for tag, entry in self._ifds[ifd].items()
            }
            tables[ifd] = table
        for child, parent in ((Ifd.EXIF, Ifd.IFD0), (Ifd.GPS, Ifd.IFD0), (Ifd.INTEROPERABILITY, Ifd.EXIF)):
            if child in tables:
                tables[parent][_POINTERS[child]] = (int(ExifFormat.LONG), 1, bytes(4))

        def ifd_size(table: dict[int, tuple[int, int, bytes]]) -> int:
            extra = sum((len(d) + 1) & ~1 for _, _, d in table.values() if len(d) > 4)
            return 2 + 12 * len(table) + 4 + extra

        offsets: dict[Ifd, int] = {}
        position = 8
        for ifd in present:
            offsets[ifd] = position
            position += ifd_size(tables[ifd])
        for child, parent in ((Ifd.EXIF, Ifd.IFD0), (Ifd.GPS, Ifd.IFD0), (Ifd.INTEROPERABILITY, Ifd.EXIF)):
            if child in tables:
                tables[parent][_POINTERS[child]] = (int(ExifFormat.LONG), 1, struct.pack("<I", offsets[child]))

        out = bytearray(b"II*\x00" + struct.pack("<I", 8))
        for ifd in present:
            table = tables[ifd]
            start = offsets[ifd]
            data_pos = start + 2 + 12 * len(table) + 4
            body = bytearray(struct.pack("<H", len(table)))
            extra = bytearray()
            for tag in sorted(table):
                fmt, count, data = table[tag]
                body += struct.pack("<HHI", tag, fmt, count)
                if len(data) <= 4:
                    body += data.ljust(4, b"\x00")
                else:
                    body += struct.pack("<I", data_pos + len(extra))
                    extra += data
                    if len(data) & 1:
                        extra += b"\x00"
            next_offset = offsets[Ifd.IFD1] if ifd == Ifd.IFD0 and Ifd.IFD1 in offsets else 0
            body += struct.pack("<I", next_offset)
            out += body + extra
        return _EXIF_PREFIX + bytes(out)


def _encode(y: np.ndarray, u: np.ndarray, v: np.ndarray, quality: int, restart: int) -> bytes:
    planes = [Image.fromarray(np.ascontiguousarray(p, dtype=np.uint8), "L") for p in (y, u, v)]
    image = Image.merge("YCbCr", planes)
    params: dict[str, Any] = {"quality": quality, "subsampling": 2}
    if restart:
        params["restart_marker_blocks"] = restart
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", **params)
    return buffer.getvalue()


def _yuyv_planes(data: np.ndarray, info: StreamInfo, ow: int, oh: int):
    cols = (np.arange(ow) * info.width) // ow * 2
    aligned = cols & ~3
    rows = (np.arange(oh) * info.height) // oh * info.stride
    base = rows[:, None]
    return data[base + cols], data[base + aligned + 1], data[base + aligned + 3]


def _yuv420_planes(data: np.ndarray, info: StreamInfo, ow: int, oh: int):
    w, h, stride = info.width, info.height, info.stride
    stride2 = stride // 2
    u_plane = data[stride * h :]
    v_plane = u_plane[stride2 * (h // 2) :]
    if w == ow and h == oh:
        y = data[: stride * h].reshape(h, stride)[:, :w]
        u = u_plane[: stride2 * (h // 2)].reshape(h // 2, stride2)[:, : w // 2]
        v = v_plane[: stride2 * (h // 2)].reshape(h // 2, stride2)[:, : w // 2]
        up = lambda p: np.repeat(np.repeat(p, 2, axis=0), 2, axis=1)[:h, :w]  # noqa: E731
        return y, up(u), up(v)
    cols = (np.arange(ow) * w) // ow
    out_rows = np.arange(oh)
    y_rows = ((out_rows * h) // oh * stride)[:, None]
    uv_rows = (((out_rows // 2) * h) // oh * stride2)[:, None]
    return data[y_rows + cols], u_plane[uv_rows + cols // 2], v_plane[uv_rows + cols // 2]


def yuv_to_jpeg(
    data: bytes, info: StreamInfo, output_width: int, output_height: int, quality: int, restart: int
) -> bytes:
    """Encode a YUYV or YUV420 frame as a complete JPEG, resampling to the output size."""
    array = np.frombuffer(data, dtype=np.uint8)
    if info.pixel_format == PixelFormat.YUYV:
        planes = _yuyv_planes(array, info, output_width, output_height)
    elif info.pixel_format == PixelFormat.YUV420:
        planes = _yuv420_planes(array, info, output_width, output_height)
    else:
        raise RuntimeError("unsupported YUV format in JPEG encode")
    return _encode(*planes, quality, restart)


def create_exif_data(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    cam_name: str,
    options: StillOptions,
) -> tuple[bytes, bytes]:
    """Build the EXIF payload and the thumbnail JPEG (empty when not wanted)."""
    exif = ExifData()
    exif.set_string(Ifd.EXIF, "Make", "Raspberry Pi")
    exif.set_string(Ifd.EXIF, "Model", cam_name)
    exif.set_string(Ifd.EXIF, "Software", "libcamera-apps")
    now = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    for tag in ("DateTime", "DateTimeOriginal", "DateTimeDigitized"):
        exif.set_string(Ifd.EXIF, tag, now)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        log.debug("Exposure time: %s", exposure_time)
        exif.set_values(Ifd.EXIF, "ExposureTime", ExifFormat.RATIONAL, [(int(exposure_time), 1000000)])
    analogue_gain = metadata.get("AnalogueGain")
    if analogue_gain is not None:
        digital_gain = metadata.get("DigitalGain")
        gain = analogue_gain * (digital_gain if digital_gain is not None else 1.0)
        exif.set_values(Ifd.EXIF, "ISOSpeedRatings", ExifFormat.SHORT, [int(100 * gain)])

    for item in options.exif:
        log.debug("Processing EXIF item: %s", item)
        exif.read_tag(item)

    thumb = b""
    if options.thumb_quality:
        exif.set_values(Ifd.IFD1, "ImageWidth", ExifFormat.LONG, [options.thumb_width])
        exif.set_values(Ifd.IFD1, "ImageLength", ExifFormat.LONG, [options.thumb_height])
        exif.set_values(Ifd.IFD1, "Compression", ExifFormat.SHORT, [6])
        exif.set_values(Ifd.IFD1, "JPEGInterchangeFormat", ExifFormat.LONG, [0])
        exif.set_values(Ifd.IFD1, "JPEGInterchangeFormatLength", ExifFormat.LONG, [0])
        exif_len = len(exif.to_bytes())

        quality = options.thumb_quality
        while quality > 0:
            thumb = yuv_to_jpeg(mem[0], info, options.thumb_width, options.thumb_height, quality, 0)
            if len(thumb) < _THUMB_LIMIT:
                break
            quality -= 5
        log.debug("Thumbnail size %d", len(thumb))
        if quality <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")

        # The thumbnail follows the EXIF data; offsets count from the TIFF header.
        exif.set_values(Ifd.IFD1, "JPEGInterchangeFormat", ExifFormat.LONG, [exif_len - len(_EXIF_PREFIX)])
        exif.set_values(Ifd.IFD1, "JPEGInterchangeFormatLength", ExifFormat.LONG, [len(thumb)])

    return exif.to_bytes(), thumb


def _strip_leading_segments(jpeg: bytes) -> bytes:
    """Drop the SOI marker and any JFIF APP0 segment so an APP1 can precede the rest."""
    position = 2
    if jpeg[position : position + 2] == b"\xff\xe0":
        position += 2 + struct.unpack(">H", jpeg[position + 2 : position + 4])[0]
    return jpeg[position:]


def jpeg_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    filename: str,
    cam_name: str,
    options: StillOptions,
) -> None:
    """Encode the frame and write it, with EXIF data and thumbnail, to filename ("-" for stdout)."""
    if info.width & 1 or info.height & 1:
        raise RuntimeError("both width and height must be even")
    if len(mem) != 1:
        raise RuntimeError("only single plane YUV supported")

    exif, thumb = create_exif_data(mem, info, metadata, cam_name, options)
    jpeg = yuv_to_jpeg(mem[0], info, info.width, info.height, options.quality, options.restart)
    log.debug("JPEG size is %d", len(jpeg))

    segment_len = len(exif) + len(thumb) + 2
    if segment_len > 0xFFFF:
        raise RuntimeError("EXIF data too large")
    payload = EXIF_HEADER + struct.pack(">H", segment_len) + exif + thumb + _strip_leading_segments(jpeg)

    try:
        if filename == "-":
            sys.stdout.buffer.write(payload)
            sys.stdout.buffer.flush()
        else:
            with open(filename, "wb") as fp:
                fp.write(payload)
    except OSError as exc:
        raise RuntimeError(f"failed to open file {filename}") from exc