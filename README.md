# camstream

Building blocks for camera applications: a Motion-JPEG encoder, still
image writers (JPEG with EXIF, BMP, PNG, DNG) and outputs that write an
encoded video stream to a file or keep it in a circular in-memory buffer.

## Installation

```
pip install camstream
```

For running the tests:

```
pip install "camstream[test]"
```

## Configuration

`camstream.config` holds the descriptions everything else works from:

- `PixelFormat` – the frame layouts understood (`RGB888`, `BGR888`,
  `YUV420`, `YUYV` and the packed 10- and 12-bit Bayer formats);
  `PixelFormat.from_name` looks one up by name, ignoring case.
- `StreamInfo` – width, height, stride and pixel format of a stream. A
  pixel format given as a string is converted, and negative sizes raise
  `ValueError`.
- `VideoOptions` – recording settings such as `output`, `quality`,
  `circular`, `segment`, `split`, `wrap`, `flush`, `pause`, `save_pts`,
  `metadata` and `metadata_format`.
- `StillOptions` – still capture settings such as `quality`, `restart`,
  the thumbnail size and quality, and extra `exif` tags.

## Video outputs

All outputs take a `VideoOptions`, are context managers and accept encoded
frames through `output_ready(mem, timestamp_us, keyframe)`.

- `camstream.output.Output` writes no frame data itself. It handles
  pausing: `signal()` toggles recording, and after a pause (or at the
  start) output resumes at the next keyframe with timestamps kept
  continuous. With `save_pts` it writes a "timecode format v2" file of
  millisecond timestamps. With `metadata` set, dictionaries passed to
  `metadata_ready` are written, one per frame, as `txt` lines or a JSON
  array (`metadata="-"` writes to standard output). The helpers
  `start_metadata_output`, `write_metadata` and `stop_metadata_output`
  can be used on their own with any text stream.
- `camstream.file_output.FileOutput` writes frames to `output` (`-` for
  standard output). The name may hold a `%d`-style counter: a new file is
  started when `segment` milliseconds have passed and a keyframe arrives,
  or, with `split`, each time recording restarts after a pause. `wrap`
  makes the counter wrap round.
- `camstream.circular_output.CircularOutput` keeps the latest `circular`
  megabytes of frames in a `CircularBuffer` and, when closed, writes them
  to `output` starting from the first keyframe still held.

## Encoders

`camstream.encoder.Encoder` is the base class. Set
`input_done_callback` (called with no arguments when an input frame may be
reused) and `output_ready_callback` (called as
`(data, timestamp_us, keyframe)`), then call
`encode_buffer(mem, info, timestamp_us)` for each frame. Closing the
encoder, or leaving its `with` block, waits for every queued frame and
re-raises the first error a worker thread met.

`camstream.mjpeg_encoder.MjpegEncoder` encodes YUV420 or YUYV frames as
JPEG at `options.quality` on four worker threads and delivers them in the
order they were queued, every one marked as a keyframe.

```python
from camstream.config import PixelFormat, StreamInfo, VideoOptions
from camstream.file_output import FileOutput
from camstream.mjpeg_encoder import MjpegEncoder

options = VideoOptions(output="clip.mjpeg", quality=80)
info = StreamInfo(640, 480, 640, PixelFormat.YUV420)
frame = bytes(640 * 480 * 3 // 2)

with FileOutput(options) as out, MjpegEncoder(options) as encoder:
    encoder.output_ready_callback = out.output_ready
    for n in range(10):
        encoder.encode_buffer(frame, info, n * 33333)
```

## Still images

Each saver takes a list of plane buffers (`mem`), a `StreamInfo`, a
filename and a `StillOptions`.

- `camstream.jpeg.jpeg_save` writes a YUV420 or YUYV frame as a JPEG
  (`-` for standard output) with EXIF data: make, model, software,
  date and time, exposure time and ISO taken from the `ExposureTime`,
  `AnalogueGain` and `DigitalGain` metadata values, and a thumbnail
  unless `thumb_quality` is 0. Width and height must be even. Extra tags
  in `StillOptions.exif` are written as `IFD.Tag=value[,value...]`, with
  IFD one of `EXIF`, `IFD0`, `IFD1`, `EINT` or `GPS`, for example
  `EXIF.Artist=someone` or `EXIF.FNumber=28/10`; unknown tags are logged
  and ignored. `ExifData` builds EXIF blocks directly, and `yuv_to_jpeg`
  encodes a frame at any output size.
- `camstream.bmp.bmp_save` writes an `RGB888` frame as a 24-bit
  top-down BMP (`-` for standard output).
- `camstream.png.png_save` writes a `BGR888` frame as a PNG (`-` for
  standard output).
- `camstream.dng.dng_save` writes a packed 10- or 12-bit Bayer frame as a
  DNG with a small greyscale preview, black levels, white level, colour
  matrix and neutral from the metadata (`SensorBlackLevels`,
  `ExposureTime`, `AnalogueGain`, `ColourGains`,
  `ColourCorrectionMatrix`; defaults are used and logged when missing).
  `unpack_10bit` and `unpack_12bit` return the unpacked pixels as a
  `numpy` array, and `Matrix` provides the 3x3 colour maths.

Errors while saving are raised as `RuntimeError`.

## What is not included

- No camera capture: frames must come from elsewhere.
- No H.264 or other hardware video encoding; `MjpegEncoder` is the only
  encoder.
- No network output: frames can go to files, standard output or the
  circular buffer only.
- No function chooses an output or an encoder from the options; construct
  the class you need.
- No saver for raw YUV or RGB planes as uncompressed files.
- No command-line program.