"""Base class for video encoders that deliver their results through callbacks."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .config import StreamInfo, VideoOptions

# How long worker threads wait for work before checking whether to stop.
POLL_INTERVAL = 0.2

InputDoneCallback = Callable[[], None]
OutputReadyCallback = Callable[[bytes, int, bool], None]


class Encoder(ABC):
    """Turns frames into encoded buffers.

    Set ``input_done_callback`` to learn when an input buffer may be reused, and
    ``output_ready_callback`` to receive each encoded buffer as
    ``(data, timestamp_us, keyframe)``. Reading either attribute gives a callable
    that forwards to the one set, or does nothing when none is set. Errors raised
    in worker threads are re-raised by :meth:`close`.
    """

    def __init__(self, options: VideoOptions):
        self.options = options
        self._input_done: Optional[InputDoneCallback] = None
        self._output_ready: Optional[OutputReadyCallback] = None
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()

    @property
    def input_done_callback(self) -> InputDoneCallback:
        return self._notify_input_done

    @input_done_callback.setter
    def input_done_callback(self, callback: Optional[InputDoneCallback]) -> None:
        self._input_done = callback

    @property
    def output_ready_callback(self) -> OutputReadyCallback:
        return self._notify_output_ready

    @output_ready_callback.setter
    def output_ready_callback(self, callback: Optional[OutputReadyCallback]) -> None:
        self._output_ready = callback

    def _notify_input_done(self) -> None:
        if self._input_done is not None:
            self._input_done()

    def _notify_output_ready(self, mem: bytes, timestamp_us: int, keyframe: bool) -> None:
        if self._output_ready is not None:
            self._output_ready(mem, timestamp_us, keyframe)

    @abstractmethod
    def encode_buffer(self, mem: bytes, info: StreamInfo, timestamp_us: int) -> None:
        """Queue one frame for encoding."""

    def _worker_failed(self, exc: BaseException) -> None:
        with self._errors_lock:
            self._errors.append(exc)

    def close(self) -> None:
        """Release the encoder, raising the first error any worker met."""
        with self._errors_lock:
            errors, self._errors = self._errors, []
        if errors:
            raise errors[0]

    def __enter__(self) -> "Encoder":
        return self

    def __exit__(self, *args) -> None:
        self.close()