"""Motion-JPEG encoder: several threads encode frames, one thread delivers them in order."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass

from .config import StreamInfo, VideoOptions
from .encoder import POLL_INTERVAL, Encoder
from .jpeg import yuv_to_jpeg

log = logging.getLogger(__name__)

NUM_ENC_THREADS = 4


@dataclass(frozen=True)
class _EncodeItem:
    mem: bytes
    info: StreamInfo
    timestamp_us: int
    index: int


@dataclass(frozen=True)
class _OutputItem:
    data: bytes
    timestamp_us: int


class MjpegEncoder(Encoder):
    """Encodes each frame as a JPEG at options.quality; every output is a keyframe."""

    def __init__(self, options: VideoOptions):
        super().__init__(options)
        self._encode_queue: queue.Queue[_EncodeItem] = queue.Queue()
        self._index_lock = threading.Lock()
        self._index = 0
        self._abort_encode = threading.Event()
        self._abort_output = threading.Event()
        # Finished frames by index; None marks a frame whose encoding failed.
        self._finished: dict[int, _OutputItem | None] = {}
        self._output_cond = threading.Condition()
        self._closed = False

        self._output_thread = threading.Thread(target=self._output_loop, name="mjpeg-output", daemon=True)
        self._output_thread.start()
        self._encode_threads = [
            threading.Thread(target=self._encode_loop, args=(num,), name=f"mjpeg-encode-{num}", daemon=True)
            for num in range(NUM_ENC_THREADS)
        ]
        for thread in self._encode_threads:
            thread.start()
        log.debug("Opened MjpegEncoder")

    def encode_buffer(self, mem: bytes, info: StreamInfo, timestamp_us: int) -> None:
        """Queue a YUV frame for encoding."""
        with self._index_lock:
            self._encode_queue.put(_EncodeItem(mem, info, timestamp_us, self._index))
            self._index += 1

    def _encode_loop(self, num: int) -> None:
        frames = 0
        encode_time = 0.0
        while True:
            try:
                item = self._encode_queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._abort_encode.is_set():
                    if frames:
                        log.debug(
                            "Encode %d frames, average time %fms", frames, encode_time * 1000 / frames
                        )
                    return
                continue

            start = time.perf_counter()
            result: _OutputItem | None
            try:
                data = yuv_to_jpeg(
                    item.mem, item.info, item.info.width, item.info.height, self.options.quality, 0
                )
                result = _OutputItem(data, item.timestamp_us)
            except Exception as exc:
                self._worker_failed(exc)
                result = None
            encode_time += time.perf_counter() - start
            frames += 1

            with self._output_cond:
                self._finished[item.index] = result
                self._output_cond.notify_all()

    def _output_loop(self) -> None:
        index = 0
        while True:
            with self._output_cond:
                while index not in self._finished:
                    if self._abort_output.is_set() and not self._finished:
                        return
                    self._output_cond.wait(POLL_INTERVAL)
                item = self._finished.pop(index)
            index += 1
            try:
                self.input_done_callback()
                if item is not None:
                    self.output_ready_callback(item.data, item.timestamp_us, True)
            except Exception as exc:
                self._worker_failed(exc)
                return

    def close(self) -> None:
        """Finish encoding and delivering every queued frame, then stop."""
        if not self._closed:
            self._closed = True
            self._abort_encode.set()
            for thread in self._encode_threads:
                thread.join()
            self._abort_output.set()
            with self._output_cond:
                self._output_cond.notify_all()
            self._output_thread.join()
            log.debug("MjpegEncoder closed")
        super().close()