"""Stream descriptions and the option sets used by outputs, encoders and still savers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PixelFormat(Enum):
    """Pixel layouts a camera stream can deliver."""

    RGB888 = "RGB888"
    BGR888 = "BGR888"
    YUV420 = "YUV420"
    YUYV = "YUYV"
    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"

    @classmethod
    def from_name(cls, name: str) -> "PixelFormat":
        """Look a format up by name, ignoring case."""
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"unknown pixel format {name}") from None


@dataclass
class StreamInfo:
    """Geometry and format of the frames in one stream."""

    width: int
    height: int
    stride: int
    pixel_format: PixelFormat
    colour_space: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.pixel_format, str):
            self.pixel_format = PixelFormat.from_name(self.pixel_format)
        for name in ("width", "height", "stride"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")


@dataclass
class VideoOptions:
    """Settings for video recording, encoding and output."""

    output: str = ""
    codec: str = "h264"
    width: int = 0
    height: int = 0
    framerate: float = 30.0
    bitrate: int = 0
    profile: str = ""
    level: str = ""
    intra: int = 0
    inline_headers: bool = False
    quality: int = 50
    circular: int = 0
    segment: int = 0
    split: bool = False
    wrap: int = 0
    flush: bool = False
    listen: bool = False
    pause: bool = False
    save_pts: str = ""
    metadata: str = ""
    metadata_format: str = "json"
    libav_format: str = ""
    libav_audio: bool = False
    audio_device: str = "default"
    audio_codec: str = "aac"
    audio_bitrate: int = 32768
    av_sync: int = 0
    verbose: int = 1


@dataclass
class StillOptions:
    """Settings for saving still images."""

    output: str = ""
    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: list[str] = field(default_factory=list)
    verbose: int = 1