import io
import json

import pytest

from camstream.config import VideoOptions
from camstream.output import (
    Output,
    start_metadata_output,
    stop_metadata_output,
    write_metadata,
)


def test_timestamps_follow_pause_and_keyframes(tmp_path):
    pts = tmp_path / "pts.txt"
    out = Output(VideoOptions(save_pts=str(pts)))
    out.output_ready(b"x", 500, False)  # no keyframe yet: dropped
    out.output_ready(b"x", 1000, True)
    out.output_ready(b"x", 2000, False)
    out.signal()
    out.output_ready(b"x", 3000, True)  # paused: dropped
    out.signal()
    out.output_ready(b"x", 4000, False)  # waiting for keyframe: dropped
    out.output_ready(b"x", 5000, True)
    out.close()
    assert pts.read_text() == "# timecode format v2\n0.000\n1.000\n1.000\n"


def test_paused_from_start_writes_no_timestamps(tmp_path):
    pts = tmp_path / "pts.txt"
    with Output(VideoOptions(save_pts=str(pts), pause=True)) as out:
        out.output_ready(b"x", 1000, True)
    assert pts.read_text() == "# timecode format v2\n"


def test_timestamp_file_open_failure(tmp_path):
    with pytest.raises(RuntimeError):
        Output(VideoOptions(save_pts=str(tmp_path / "missing" / "pts.txt")))


def test_write_metadata_txt():
    buf = io.StringIO()
    write_metadata(buf, "txt", {"ExposureTime": 100, "AnalogueGain": 1.5}, True)
    assert buf.getvalue() == "ExposureTime=100\nAnalogueGain=1.5\n\n"


def test_write_metadata_json_quotes_values_with_slash():
    buf = io.StringIO()
    write_metadata(buf, "json", {"FrameDuration": 33333, "Ratio": "3/2"}, True)
    assert json.loads(buf.getvalue()) == {"FrameDuration": 33333, "Ratio": "3/2"}


def test_write_metadata_json_separates_later_objects():
    buf = io.StringIO()
    write_metadata(buf, "json", {"Lux": 400}, False)
    assert buf.getvalue().startswith(",\n{")


def test_start_and_stop_only_for_json():
    buf = io.StringIO()
    start_metadata_output(buf, "txt")
    stop_metadata_output(buf, "txt")
    assert buf.getvalue() == ""
    start_metadata_output(buf, "json")
    stop_metadata_output(buf, "json")
    assert json.loads(buf.getvalue()) == []


def test_metadata_file_is_valid_json(tmp_path):
    meta = tmp_path / "meta.json"
    frames = [{"SensorTimestamp": 10, "ColourGains": [1.5, 2.0]}, {"SensorTimestamp": 20, "AeLocked": True}]
    with Output(VideoOptions(metadata=str(meta))) as out:
        for frame in frames:
            out.metadata_ready(frame)
            out.output_ready(b"data", frame["SensorTimestamp"], True)
    assert json.loads(meta.read_text()) == frames


def test_metadata_txt_file(tmp_path):
    meta = tmp_path / "meta.txt"
    with Output(VideoOptions(metadata=str(meta), metadata_format="txt")) as out:
        out.metadata_ready({"Lux": 12})
        out.output_ready(b"data", 0, True)
    assert meta.read_text() == "Lux=12\n\n"