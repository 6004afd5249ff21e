import io

import numpy as np
import pytest
from PIL import Image

from camhub.motion_detection import (
    NOISE,
    THRESHOLD,
    BackgroundSubtractor,
    MotionDetection,
    dbscan,
    get_mjpeg_boundary,
    iter_mjpeg_frames,
    read_ascii_line,
)


def encode(array: np.ndarray) -> bytes:
    out = io.BytesIO()
    Image.fromarray(array.astype(np.uint8)).save(out, format="PNG")
    return out.getvalue()


def test_subtractor_identical_frame_has_no_motion():
    frame = np.full((4, 5), 120, dtype=np.uint8)
    sub = BackgroundSubtractor(frame)
    mask = sub.apply(frame)
    assert mask.shape == (4, 5)
    assert not mask.any()


def test_subtractor_threshold_is_strict():
    base = np.zeros((2, 2), dtype=np.uint8)
    frame = np.array([[THRESHOLD, THRESHOLD + 1], [0, 255]], dtype=np.uint8)
    mask = BackgroundSubtractor(base).apply(frame)
    assert mask.tolist() == [[0, 255], [0, 255]]


def test_subtractor_background_moves_toward_frame():
    sub = BackgroundSubtractor(np.zeros((3, 3), dtype=np.uint8))
    sub.apply(np.full((3, 3), 200, dtype=np.uint8))
    assert np.all(sub.background > 0)
    assert np.all(sub.background < 200)


def test_subtractor_rejects_shape_mismatch():
    sub = BackgroundSubtractor(np.zeros((3, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        sub.apply(np.zeros((2, 3), dtype=np.uint8))


def test_dbscan_separates_blobs_and_noise():
    blob_a = [(x, y) for x in range(5) for y in range(5)]
    blob_b = [(100 + x, 100 + y) for x in range(5) for y in range(5)]
    lone = [(50, 50)]
    labels = dbscan(np.array(blob_a + blob_b + lone, dtype=float), 5, 1.5)
    a = set(labels[:25].tolist())
    b = set(labels[25:50].tolist())
    assert len(a) == 1 and len(b) == 1
    assert a != b
    assert NOISE not in a | b
    assert labels[50] == NOISE


def test_dbscan_empty_and_sparse():
    assert len(dbscan(np.empty((0, 2)), 3, 1.0)) == 0
    labels = dbscan(np.array([[0, 0], [10, 10], [20, 20]], dtype=float), 2, 1.0)
    assert labels.tolist() == [NOISE, NOISE, NOISE]


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("multipart/x-mixed-replace; boundary=myboundary", "--myboundary"),
        ('multipart/x-mixed-replace; BOUNDARY="--frame";', "--frame"),
        ("multipart/x-mixed-replace", None),
        ("multipart/x-mixed-replace; boundary=", None),
        (None, None),
    ],
)
def test_get_mjpeg_boundary(content_type, expected):
    assert get_mjpeg_boundary(content_type) == expected


def test_read_ascii_line():
    reader = io.BytesIO(b"abc\r\nxyz")
    assert read_ascii_line(reader) == "abc"
    assert read_ascii_line(reader) == "xyz"
    assert read_ascii_line(reader) is None


def part(body: bytes, boundary: str = "--myboundary", length: bool = True) -> bytes:
    headers = f"{boundary}\r\nContent-Type: image/jpeg\r\n"
    if length:
        headers += f"Content-Length: {len(body)}\r\n"
    return headers.encode() + b"\r\n" + body + b"\r\n"


def test_iter_mjpeg_frames_round_trip():
    bodies = [b"\xff\xd8first\xff\xd9", b"\xff\xd8second\r\n\xff\xd9"]
    stream = io.BytesIO(b"".join(part(b) for b in bodies))
    assert list(iter_mjpeg_frames(stream, "--myboundary")) == bodies


def test_iter_mjpeg_frames_skips_parts_without_length():
    stream = io.BytesIO(part(b"skip", length=False) + part(b"keep"))
    assert list(iter_mjpeg_frames(stream, "--myboundary")) == [b"keep"]


def test_iter_mjpeg_frames_truncated_frame():
    data = part(b"0123456789")[:-8]
    with pytest.raises(EOFError):
        list(iter_mjpeg_frames(io.BytesIO(data), "--myboundary"))


def test_iter_mjpeg_frames_bad_length():
    data = b"--myboundary\r\nContent-Length: many\r\n\r\n"
    with pytest.raises(ValueError):
        list(iter_mjpeg_frames(io.BytesIO(data), "--myboundary"))


def test_motion_fps_must_be_positive():
    with pytest.raises(ValueError):
        MotionDetection(0)


def test_no_frame_means_no_motion():
    assert MotionDetection(1).handle_motion_event() is False


def test_global_change_is_motion():
    md = MotionDetection(1)
    md.submit_frame(encode(np.zeros((48, 64))), 0.0)
    assert md.handle_motion_event() is False
    md.submit_frame(encode(np.full((48, 64), 255)), 2.0)
    assert md.handle_motion_event() is True
    # The background was replaced by the changed frame.
    md.submit_frame(encode(np.full((48, 64), 255)), 4.0)
    assert md.handle_motion_event() is False


def test_same_frame_is_not_checked_twice():
    md = MotionDetection(1)
    md.submit_frame(encode(np.zeros((48, 64))), 0.0)
    assert md.handle_motion_event() is False
    md.submit_frame(encode(np.full((48, 64), 255)), 0.5)
    assert md.handle_motion_event() is False
    md.submit_frame(encode(np.full((48, 64), 255)), 1.5)
    assert md.handle_motion_event() is True


def test_dense_cluster_is_motion():
    md = MotionDetection(1)
    base = np.zeros((480, 640))
    md.submit_frame(encode(base), 0.0)
    md.handle_motion_event()
    changed = base.copy()
    changed[100:130, 200:230] = 255
    md.submit_frame(encode(changed), 2.0)
    assert md.handle_motion_event() is True


def test_scattered_noise_is_not_motion():
    md = MotionDetection(1)
    base = np.zeros((480, 640))
    md.submit_frame(encode(base), 0.0)
    md.handle_motion_event()
    changed = base.copy()
    changed[50:250:5, 50:250:5] = 255
    md.submit_frame(encode(changed), 2.0)
    assert md.handle_motion_event() is False


def test_large_frames_are_downscaled():
    md = MotionDetection(2)
    md.submit_frame(encode(np.zeros((960, 1280))), 0.0)
    assert md.handle_motion_event() is False
    md.submit_frame(encode(np.full((960, 1280), 255)), 1.0)
    assert md.handle_motion_event() is True


def test_undecodable_frame_raises():
    md = MotionDetection(1)
    md.submit_frame(b"not an image", 0.0)
    with pytest.raises(OSError):
        md.handle_motion_event()