"""Write encoded video to a file, optionally split into numbered segments."""

from __future__ import annotations

import logging
import sys
from typing import BinaryIO

from .config import VideoOptions
from .output import Flag, Output, _trunc_divmod

log = logging.getLogger(__name__)

_MAX_FILENAME = 255


class FileOutput(Output):
    """Writes buffers to options.output, which may hold a printf-style counter."""

    def __init__(self, options: VideoOptions):
        super().__init__(options)
        self._fp: BinaryIO | None = None
        self._count = 0
        self._file_start_time_ms = 0

    def _output_buffer(self, mem: bytes, timestamp_us: int, flags: Flag) -> None:
        options = self.options
        time_ms = _trunc_divmod(timestamp_us, 1000)[0]
        if (
            self._fp is None
            or (options.segment and flags & Flag.KEYFRAME and time_ms - self._file_start_time_ms > options.segment)
            or (options.split and flags & Flag.RESTART)
        ):
            self._close_file()
            self._open_file(timestamp_us)

        log.debug("FileOutput: output buffer size %d", len(mem))
        if self._fp is not None and len(mem):
            try:
                self._fp.write(mem)
            except OSError as exc:
                raise RuntimeError("failed to write output bytes") from exc
            if options.flush:
                self._fp.flush()

    def _next_filename(self) -> str:
        pattern = self.options.output
        try:
            try:
                name = pattern % (self._count,)
            except TypeError:
                name = pattern % ()
        except (TypeError, ValueError) as exc:
            raise RuntimeError("failed to generate filename") from exc
        return name[:_MAX_FILENAME]

    def _open_file(self, timestamp_us: int) -> None:
        output = self.options.output
        if output == "-":
            self._fp = sys.stdout.buffer
        elif output:
            filename = self._next_filename()
            self._count += 1
            if self.options.wrap:
                self._count %= self.options.wrap
            try:
                self._fp = open(filename, "wb")
            except OSError as exc:
                raise RuntimeError(f"failed to open output file {filename}") from exc
            log.debug("FileOutput: opened output file %s", filename)
            self._file_start_time_ms = _trunc_divmod(timestamp_us, 1000)[0]

    def _close_file(self) -> None:
        if self._fp is not None:
            if self._fp is sys.stdout.buffer:
                self._fp.flush()
            else:
                self._fp.close()
        self._fp = None

    def close(self) -> None:
        """Close the current file and finish the base output."""
        self._close_file()
        super().close()