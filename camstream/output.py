"""Base video output: pause handling, timestamp files and per-frame metadata."""

from __future__ import annotations

import logging
import sys
from collections import deque
from enum import Enum, IntFlag
from typing import Any, Mapping, TextIO

from .config import VideoOptions

log = logging.getLogger(__name__)


class Flag(IntFlag):
    """Properties of a buffer handed to an output."""

    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def _trunc_divmod(value: int, divisor: int) -> tuple[int, int]:
    """Division that truncates towards zero, with the matching remainder."""
    quotient = abs(value) // divisor
    if value < 0:
        quotient = -quotient
    return quotient, value - quotient * divisor


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "[ " + ", ".join(_format_value(item) for item in value) + " ]"
    return str(value)


def start_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever opens a metadata stream in the given format."""
    if fmt == "json":
        out.write("[\n")


def write_metadata(out: TextIO, fmt: str, metadata: Mapping[str, Any], first_write: bool) -> None:
    """Write one frame's metadata as "txt" lines or as a JSON object."""
    if fmt == "txt":
        for name, value in metadata.items():
            out.write(f"{name}={_format_value(value)}\n")
        out.write("\n")
        return
    if not first_write:
        out.write(",\n")
    out.write("{")
    first_done = False
    for name, value in metadata.items():
        text = _format_value(value)
        quote = '"' if "/" in text else ""
        out.write(("," if first_done else "") + "\n" + f'    "{name}": {quote}{text}{quote}')
        first_done = True
    out.write("\n}")


def stop_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever closes a metadata stream in the given format."""
    if fmt == "json":
        out.write("\n]\n")


class Output:
    """An output that drops every buffer but keeps timestamps and metadata."""

    def __init__(self, options: VideoOptions):
        self.options = options
        self._timestamps: TextIO | None = None
        self._state = _State.WAITING_KEYFRAME
        self._time_offset = 0
        self._last_timestamp = 0
        self._metadata_out: TextIO = sys.stdout
        self._metadata_file: TextIO | None = None
        self._metadata_started = False
        self._metadata_queue: deque[Mapping[str, Any]] = deque()
        self._closed = False

        if options.save_pts:
            try:
                self._timestamps = open(options.save_pts, "w")
            except OSError as exc:
                raise RuntimeError(f"Failed to open timestamp file {options.save_pts}") from exc
            self._timestamps.write("# timecode format v2\n")
        if options.metadata and options.metadata != "-":
            try:
                self._metadata_file = open(options.metadata, "w")
            except OSError:
                if self._timestamps is not None:
                    self._timestamps.close()
                raise
            self._metadata_out = self._metadata_file
            start_metadata_output(self._metadata_out, options.metadata_format)

        self._enabled = not options.pause

    def signal(self) -> None:
        """Toggle between recording and paused."""
        self._enabled = not self._enabled

    def output_ready(self, mem: bytes, timestamp_us: int, keyframe: bool) -> None:
        """Accept one encoded buffer, waiting for a keyframe after any pause."""
        flags = Flag.KEYFRAME if keyframe else Flag.NONE
        if not self._enabled:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= Flag.RESTART
        if self._state is not _State.RUNNING:
            return

        # Keep timestamps continuous across a pause.
        if flags & Flag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self._output_buffer(mem, self._last_timestamp, flags)

        if self._timestamps is not None:
            self._timestamp_ready(self._last_timestamp)

        if self.options.metadata and self._metadata_queue:
            metadata = self._metadata_queue.popleft()
            write_metadata(
                self._metadata_out, self.options.metadata_format, metadata, not self._metadata_started
            )
            self._metadata_started = True

    def metadata_ready(self, metadata: Mapping[str, Any]) -> None:
        """Queue the metadata belonging to the next buffer."""
        if not self.options.metadata:
            return
        self._metadata_queue.append(metadata)

    def _output_buffer(self, mem: bytes, timestamp_us: int, flags: Flag) -> None:
        """Deliver a buffer; the base output discards it."""

    def _timestamp_ready(self, timestamp: int) -> None:
        seconds, millis = _trunc_divmod(timestamp, 1000)
        self._timestamps.write(f"{seconds}.{millis:03d}\n")
        if self.options.flush:
            self._timestamps.flush()

    def close(self) -> None:
        """Finish the timestamp and metadata files."""
        if self._closed:
            return
        self._closed = True
        if self._timestamps is not None:
            self._timestamps.close()
            self._timestamps = None
        if self.options.metadata:
            stop_metadata_output(self._metadata_out, self.options.metadata_format)
            if self._metadata_file is not None:
                self._metadata_file.close()
                self._metadata_file = None
            else:
                self._metadata_out.flush()

    def __enter__(self) -> "Output":
        return self

    def __exit__(self, *args) -> None:
        self.close()