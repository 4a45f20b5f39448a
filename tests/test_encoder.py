import pytest

from camstream.config import PixelFormat, StreamInfo, VideoOptions
from camstream.encoder import Encoder


class _Echo(Encoder):
    def __init__(self, options):
        super().__init__(options)
        self.closed = 0

    def encode_buffer(self, mem, info, timestamp_us):
        self.output_ready_callback(mem, timestamp_us, True)
        self.input_done_callback()

    def close(self):
        self.closed += 1
        super().close()


INFO = StreamInfo(4, 2, 4, PixelFormat.YUV420)


def test_encoder_is_abstract():
    with pytest.raises(TypeError):
        Encoder(VideoOptions())


def test_callbacks_receive_buffers():
    outputs = []
    done = []
    enc = _Echo(VideoOptions())
    enc.output_ready_callback = lambda mem, ts, key: outputs.append((mem, ts, key))
    enc.input_done_callback = lambda: done.append(True)
    enc.encode_buffer(b"abc", INFO, 42)
    assert outputs == [(b"abc", 42, True)]
    assert done == [True]


def test_default_callbacks_are_silent():
    enc = _Echo(VideoOptions(codec="mjpeg"))
    enc.encode_buffer(b"x", INFO, 1)
    assert enc.options.codec == "mjpeg"


def test_context_manager_closes():
    with _Echo(VideoOptions()) as enc:
        assert enc.closed == 0
    assert enc.closed == 1


def test_worker_error_raised_once_by_close():
    enc = _Echo(VideoOptions())
    enc._worker_failed(RuntimeError("boom"))
    with pytest.raises(RuntimeError, match="boom"):
        enc.close()
    enc.close()
    assert enc.closed == 2