import struct
from fractions import Fraction

import numpy as np
import pytest

from camstream.config import PixelFormat, StillOptions, StreamInfo
from camstream.dng import Matrix, dng_save, unpack_10bit, unpack_12bit

_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 10: 8}
_IDENTITY = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0]


def _read_ifd(data, offset):
    (count,) = struct.unpack_from("<H", data, offset)
    entries = {}
    for k in range(count):
        tag, typ, n, raw = struct.unpack_from("<HHI4s", data, offset + 2 + 12 * k)
        size = _SIZES[typ] * n
        if size <= 4:
            payload = raw[:size]
        else:
            (where,) = struct.unpack("<I", raw)
            payload = data[where : where + size]
        entries[tag] = (typ, n, payload)
    return entries


def _values(entry):
    typ, n, payload = entry
    if typ == 2:
        return payload.rstrip(b"\x00").decode()
    if typ == 1:
        return tuple(payload)
    if typ == 3:
        return struct.unpack(f"<{n}H", payload)
    if typ == 4:
        return struct.unpack(f"<{n}I", payload)
    code = "ii" if typ == 10 else "II"
    return [Fraction(*struct.unpack_from("<" + code, payload, 8 * i)) for i in range(n)]


def _pack10(pixels):
    out = bytearray()
    for row in pixels:
        padded = list(row) + [0] * (-len(row) % 4)
        for g in range(0, len(padded), 4):
            quad = padded[g : g + 4]
            out += bytes(p >> 2 for p in quad)
            out.append(sum((p & 3) << (2 * i) for i, p in enumerate(quad)))
    return bytes(out)


def _pack12(pixels):
    out = bytearray()
    for row in pixels:
        padded = list(row) + [0] * (len(row) % 2)
        for g in range(0, len(padded), 2):
            a, b = padded[g], padded[g + 1]
            out += bytes([a >> 4, b >> 4, (a & 15) | ((b & 15) << 4)])
    return bytes(out)


M = Matrix(2, 1, 0.5, -1, 3, 0.25, 0.1, -0.2, 4)
N = Matrix(1, 0.3, -0.7, 0.2, 1.5, 0.4, -0.3, 0.6, 2)


def test_matrix_inverse_gives_identity():
    right = M * M.inverse()
    left = M.inverse() * M
    assert list(right.m) == pytest.approx(_IDENTITY, abs=1e-9)
    assert list(left.m) == pytest.approx(_IDENTITY, abs=1e-9)


def test_matrix_transpose_twice_is_original():
    assert list(M.transpose().transpose().m) == pytest.approx(list(M.m), abs=1e-9)
    assert M.transpose().m[1] == M.m[3]


def test_matrix_adjugate_property():
    det = M.determinant()
    product = M * M.adjugate()
    assert list(product.m) == pytest.approx([det * v for v in _IDENTITY], abs=1e-9)


def test_matrix_determinant_is_multiplicative():
    assert (M * N).determinant() == pytest.approx(M.determinant() * N.determinant())


def test_matrix_scalar_multiply_and_diagonal():
    assert (Matrix(1, 2, 3) * 2.0).m == [2.0, 0.0, 0.0, 0.0, 4.0, 0.0, 0.0, 0.0, 6.0]


def test_singular_matrix_has_no_inverse():
    with pytest.raises(ValueError):
        Matrix(1, 2, 3, 2, 4, 6, 0, 0, 1).inverse()


def test_matrix_bad_argument_count():
    with pytest.raises(TypeError):
        Matrix(1, 2)


@pytest.mark.parametrize("width", [8, 6, 5])
def test_unpack_10bit_round_trip(width):
    rng = np.random.default_rng(1)
    pixels = rng.integers(0, 1024, size=(3, width))
    packed = _pack10(pixels)
    stride = len(packed) // 3
    info = StreamInfo(width, 3, stride, PixelFormat.SRGGB10_CSI2P)
    assert np.array_equal(unpack_10bit(packed, info), pixels)


@pytest.mark.parametrize("width", [6, 5])
def test_unpack_12bit_round_trip(width):
    rng = np.random.default_rng(2)
    pixels = rng.integers(0, 4096, size=(2, width))
    packed = _pack12(pixels)
    stride = len(packed) // 2
    info = StreamInfo(width, 2, stride, PixelFormat.SRGGB12_CSI2P)
    assert np.array_equal(unpack_12bit(packed, info), pixels)


def test_unpack_honours_stride():
    pixels = np.arange(8).reshape(2, 4) * 100
    rows = [_pack10([row]) + b"\xee\xee\xee" for row in pixels]
    info = StreamInfo(4, 2, 8, PixelFormat.SRGGB10_CSI2P)
    assert np.array_equal(unpack_10bit(b"".join(rows), info), pixels)


def _save(tmp_path, fmt=PixelFormat.SRGGB10_CSI2P, metadata=None, size=32):
    rng = np.random.default_rng(3)
    bits = 12 if "12" in fmt.name else 10
    pixels = rng.integers(0, 1 << bits, size=(size, size))
    packed = _pack12(pixels) if bits == 12 else _pack10(pixels)
    info = StreamInfo(size, size, len(packed) // size, fmt)
    path = tmp_path / "out.dng"
    dng_save([packed], info, metadata or {}, str(path), "imx-test", StillOptions())
    data = path.read_bytes()
    ifd0 = _read_ifd(data, struct.unpack_from("<I", data, 4)[0])
    raw = _read_ifd(data, _values(ifd0[330])[0])
    exif = _read_ifd(data, _values(ifd0[34665])[0])
    return data, ifd0, raw, exif, pixels, info


def test_dng_header_and_identity(tmp_path):
    data, ifd0, _, _, _, _ = _save(tmp_path)
    assert data[:4] == b"II*\x00"
    assert _values(ifd0[271]) == "Raspberry Pi"
    assert _values(ifd0[272]) == "imx-test"
    assert _values(ifd0[50708]) == "imx-test"
    assert _values(ifd0[305]) == "libcamera-still"
    assert _values(ifd0[50706]) == (1, 1, 0, 0)


def test_dng_raw_image_data(tmp_path):
    data, _, raw, _, pixels, info = _save(tmp_path)
    assert _values(raw[256]) == (info.width,)
    assert _values(raw[257]) == (info.height,)
    offset = _values(raw[273])[0]
    length = _values(raw[279])[0]
    stored = np.frombuffer(data[offset : offset + length], dtype="<u2").reshape(info.height, info.width)
    assert np.array_equal(stored, pixels)
    assert _values(raw[50717]) == (1023,)
    assert _values(raw[33422]) == (0, 1, 1, 2)


def test_dng_twelve_bit_white_level(tmp_path):
    _, _, raw, _, _, _ = _save(tmp_path, PixelFormat.SBGGR12_CSI2P)
    assert _values(raw[50717]) == (4095,)
    assert _values(raw[33422]) == (2, 1, 1, 0)


def test_dng_thumbnail_dimensions(tmp_path):
    data, ifd0, _, _, _, info = _save(tmp_path, size=48)
    assert _values(ifd0[256]) == (info.width >> 4,)
    assert _values(ifd0[257]) == (info.height >> 4,)
    count = _values(ifd0[279])[0]
    assert count == (info.width >> 4) * (info.height >> 4) * 3


def test_dng_exif_values(tmp_path):
    metadata = {"ExposureTime": 20000, "AnalogueGain": 2.0}
    _, _, _, exif, _, _ = _save(tmp_path, metadata=metadata)
    assert _values(exif[34855]) == (200,)
    assert _values(exif[33434]) == [Fraction(20000, 10**6)]


def test_dng_black_levels_follow_bayer_order(tmp_path):
    levels = [4096, 4160, 4224, 4288]
    _, _, rggb, _, _, _ = _save(tmp_path, PixelFormat.SRGGB10_CSI2P, {"SensorBlackLevels": levels})
    _, _, bggr, _, _, _ = _save(tmp_path, PixelFormat.SBGGR10_CSI2P, {"SensorBlackLevels": levels})
    assert _values(bggr[50714]) == list(reversed(_values(rggb[50714])))


def test_dng_default_black_level(tmp_path):
    _, _, default, _, _, _ = _save(tmp_path)
    _, _, given, _, _, _ = _save(tmp_path, metadata={"SensorBlackLevels": [4096] * 4})
    assert _values(default[50714]) == _values(given[50714])


def test_dng_colour_matrix_and_neutral(tmp_path):
    _, ifd0, _, _, _, _ = _save(tmp_path, metadata={"ColourGains": [2.0, 1.25]})
    assert len(_values(ifd0[50721])) == 9
    assert _values(ifd0[50728]) == [Fraction(1, 2), Fraction(1), Fraction(4, 5)]


def test_dng_rejects_non_bayer(tmp_path):
    info = StreamInfo(4, 4, 12, PixelFormat.RGB888)
    with pytest.raises(RuntimeError, match="unsupported Bayer format"):
        dng_save([bytes(48)], info, {}, str(tmp_path / "x.dng"), "cam", StillOptions())


def test_dng_unopenable_file(tmp_path):
    info = StreamInfo(4, 2, 5, PixelFormat.SRGGB10_CSI2P)
    target = tmp_path / "missing" / "x.dng"
    with pytest.raises(RuntimeError, match="could not open file"):
        dng_save([bytes(10)], info, {}, str(target), "cam", StillOptions())