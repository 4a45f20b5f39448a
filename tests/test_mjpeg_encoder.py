import io

import numpy as np
import pytest
from PIL import Image

from camstream.config import PixelFormat, StreamInfo, VideoOptions
from camstream.mjpeg_encoder import MjpegEncoder

WIDTH, HEIGHT = 32, 16
INFO = StreamInfo(WIDTH, HEIGHT, WIDTH, PixelFormat.YUV420)


def _frame(luma):
    y = bytes([luma]) * (WIDTH * HEIGHT)
    uv = bytes([128]) * (WIDTH * HEIGHT // 4)
    return y + uv + uv


def _run(frames):
    outputs, done = [], []
    enc = MjpegEncoder(VideoOptions(codec="mjpeg", quality=90))
    enc.output_ready_callback = lambda mem, ts, key: outputs.append((mem, ts, key))
    enc.input_done_callback = lambda: done.append(1)
    for ts, luma in frames:
        enc.encode_buffer(_frame(luma), INFO, ts)
    enc.close()
    return outputs, done


def test_outputs_are_jpegs_in_order():
    frames = [(ts * 1000, 16 + ts * 20) for ts in range(9)]
    outputs, done = _run(frames)
    assert [ts for _, ts, _ in outputs] == [ts for ts, _ in frames]
    assert all(key for _, _, key in outputs)
    assert len(done) == len(frames)
    for data, _, _ in outputs:
        assert data[:2] == b"\xff\xd8"
        assert data[-2:] == b"\xff\xd9"


def test_decoded_frames_match_input_brightness():
    frames = [(0, 40), (1, 200)]
    outputs, _ = _run(frames)
    for (data, _, _), (_, luma) in zip(outputs, frames):
        image = Image.open(io.BytesIO(data))
        assert image.size == (WIDTH, HEIGHT)
        grey = np.asarray(image.convert("L"), dtype=int)
        assert abs(grey.mean() - luma) <= 3


def test_no_frames_gives_no_output():
    outputs, done = _run([])
    assert outputs == []
    assert done == []


def test_unsupported_format_raises_on_close():
    enc = MjpegEncoder(VideoOptions())
    delivered = []
    enc.output_ready_callback = lambda mem, ts, key: delivered.append(ts)
    rgb = StreamInfo(4, 2, 12, PixelFormat.RGB888)
    enc.encode_buffer(bytes(24), rgb, 0)
    with pytest.raises(RuntimeError, match="unsupported YUV format"):
        enc.close()
    assert delivered == []