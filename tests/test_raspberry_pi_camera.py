import io
import socket
import struct
import threading
import time

import pytest

from camhub.delivery_monitor import VideoInfo
from camhub.livestream import MAX_CHUNK, MIN_CHUNK, LivestreamWriter
from camhub.mp4 import Mp4Writer
from camhub.raspberry_pi_camera import (
    FrameQueue,
    RaspberryPiCamera,
    RpiCameraAudioParameters,
    RpiCameraVideoParameters,
    VideoFrame,
    VideoFrameKind,
    append_length_prefixed_nal,
    copy_frames,
    extract_h264_frame,
    find_start_code,
)

SC = b"\x00\x00\x00\x01"
SPS = b"\x67\x42\x00\x1e\xab"
PPS = b"\x68\xce\x38\x80"
IDR = b"\x65\x88\x84\x21\xa0"


def test_find_start_code():
    assert find_start_code(b"\x05\x00\x00\x00\x01\x67", SC) == 1
    assert find_start_code(b"\x05\x00\x00\x01", SC) is None
    assert find_start_code(b"\x05\x00\x00\x01", b"\x00\x00\x01") == 1


def test_append_length_prefixed_nal():
    assert append_length_prefixed_nal(SPS) == struct.pack(">I", len(SPS)) + SPS


def test_extract_frames_in_order():
    buffer = bytearray(SC + SPS + SC + PPS + SC)
    sps = extract_h264_frame(buffer)
    assert sps.kind is VideoFrameKind.SPS
    assert sps.data == append_length_prefixed_nal(SPS)
    assert buffer == bytearray(SC + PPS + SC)
    pps = extract_h264_frame(buffer)
    assert pps.kind is VideoFrameKind.PPS
    assert pps.data[4:] == PPS
    assert extract_h264_frame(buffer) is None
    assert buffer == bytearray(SC)


def test_extract_short_start_codes():
    buffer = bytearray(b"\x00\x00\x01" + IDR + b"\x00\x00\x01\x41")
    frame = extract_h264_frame(buffer)
    assert frame.kind is VideoFrameKind.IFRAME
    assert frame.data[4:] == IDR


def test_extract_incomplete_leaves_buffer():
    buffer = bytearray(SC + SPS)
    assert extract_h264_frame(buffer) is None
    assert buffer == bytearray(SC + SPS)
    assert extract_h264_frame(bytearray(b"\x12\x34")) is None


def test_extract_unsupported_nal_is_consumed():
    sei = b"\x06\x05\x01"
    buffer = bytearray(SC + sei + SC + PPS)
    assert extract_h264_frame(buffer) is None
    assert buffer == bytearray(SC + PPS)


def test_frame_queue_drops_old_frames():
    now = [100.0]
    q = FrameQueue(window=5.0, clock=lambda: now[0])
    q.push(VideoFrame(b"a", VideoFrameKind.RFRAME, timestamp=90.0))
    q.push(VideoFrame(b"b", VideoFrameKind.RFRAME, timestamp=97.0))
    q.push(VideoFrame(b"c", VideoFrameKind.RFRAME, timestamp=100.0))
    assert len(q) == 2
    assert q.pop().data == b"b"
    q.clear()
    assert q.pop() is None


def test_video_parameters_codec_box():
    params = RpiCameraVideoParameters(SPS, PPS)
    buf = bytearray()
    params.write_codec_box(buf)
    assert struct.unpack(">I", buf[:4])[0] == len(buf)
    assert buf[4:8] == b"avc1"
    avcc = buf.index(b"avcC")
    assert buf[avcc + 4:avcc + 10] == bytes([1, SPS[1], SPS[2], SPS[3], 0xFF, 0xE1])
    assert buf.endswith(PPS)
    assert SPS in buf
    width, height = params.dimensions()
    assert (width >> 16, height >> 16) == (640, 480)
    assert params.clock_rate() == 0


def test_audio_parameters_are_empty():
    params = RpiCameraAudioParameters()
    buf = bytearray(b"x")
    params.write_codec_box(buf)
    assert buf == bytearray(b"x")
    assert params.dimensions() == (0, 0)
    assert params.clock_rate() == 0


class RecordingSink:
    def __init__(self, fail_fragment=False):
        self.events = []
        self.fail_fragment = fail_fragment

    def video(self, frame, frame_timestamp, is_random_access_point):
        self.events.append(("video", frame, is_random_access_point))

    def audio(self, frame, frame_timestamp):
        self.events.append(("audio", frame))

    def finish_fragment(self):
        if self.fail_fragment:
            raise OSError("closed")
        self.events.append(("fragment",))


def test_copy_frames_starts_at_iframe_and_stops_after_duration():
    q = FrameQueue()
    past = time.time() - 1
    q.push(VideoFrame(b"r0", VideoFrameKind.RFRAME, past))
    q.push(VideoFrame(b"i1", VideoFrameKind.IFRAME, past))
    q.push(VideoFrame(b"r2", VideoFrameKind.RFRAME, past))
    q.push(VideoFrame(b"late", VideoFrameKind.RFRAME, time.time() + 100))
    q.push(VideoFrame(b"never", VideoFrameKind.RFRAME, time.time() + 101))
    sink = RecordingSink()
    copy_frames(sink, 0, q)
    assert sink.events == [
        ("fragment",),
        ("video", b"i1", True),
        ("video", b"r2", False),
        ("video", b"late", False),
    ]
    assert q.pop().data == b"never"


def test_copy_frames_stops_when_sink_closes():
    q = FrameQueue()
    q.push(VideoFrame(b"i1", VideoFrameKind.IFRAME))
    q.push(VideoFrame(b"r2", VideoFrameKind.RFRAME))
    sink = RecordingSink(fail_fragment=True)
    copy_frames(sink, None, q)
    assert sink.events == []
    assert q.pop().data == b"r2"


def test_copy_frames_into_mp4_writer():
    q = FrameQueue()
    q.push(VideoFrame(append_length_prefixed_nal(IDR), VideoFrameKind.IFRAME))
    q.push(VideoFrame(append_length_prefixed_nal(b"\x41\x9a"), VideoFrameKind.RFRAME, time.time() + 50))
    out = io.BytesIO()
    mp4 = Mp4Writer(RpiCameraVideoParameters(SPS, PPS), RpiCameraAudioParameters(), out)
    copy_frames(mp4, 0, q)
    mp4.finish()
    data = out.getvalue()
    assert data[4:8] == b"ftyp"
    assert b"moov" in data
    assert b"avcC" in data
    assert append_length_prefixed_nal(IDR) in data


@pytest.fixture
def camera(tmp_path):
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    address = listener.getsockname()
    payload = SC + SPS + SC + PPS + SC + IDR + SC

    def serve():
        conn, _ = listener.accept()
        with conn:
            conn.sendall(payload)

    threading.Thread(target=serve, daemon=True).start()
    cam = RaspberryPiCamera("Front door", str(tmp_path), str(tmp_path), 1, command=None, address=address)
    deadline = time.time() + 10
    while len(cam.frame_queue) < 3 and time.time() < deadline:
        time.sleep(0.01)
    yield cam
    listener.close()


def test_camera_reads_parameter_sets(camera):
    assert camera.sps_frame.kind is VideoFrameKind.SPS
    assert camera.sps_frame.data[4:] == SPS
    assert camera.pps_frame.data[4:] == PPS
    assert camera.is_there_motion() is True
    assert camera.name == "Front door"


def test_camera_records_motion_video(camera, tmp_path):
    camera.frame_queue.push(
        VideoFrame(append_length_prefixed_nal(IDR), VideoFrameKind.IFRAME, time.time() + 100)
    )
    info = VideoInfo(timestamp=42, filename=VideoInfo.filename_from_timestamp(42))
    camera.record_motion_video(info)
    data = (tmp_path / info.filename).read_bytes()
    assert data[4:8] == b"ftyp"
    assert b"moov" in data
    assert SPS in data and PPS in data


def test_camera_livestream_sends_chunks(camera):
    chunks = []
    writer = LivestreamWriter(chunks.append)
    camera.launch_livestream(writer)
    big = append_length_prefixed_nal(b"\x65" + b"\x11" * 70_000)
    camera.frame_queue.push(VideoFrame(big, VideoFrameKind.IFRAME))
    camera.frame_queue.push(VideoFrame(append_length_prefixed_nal(IDR), VideoFrameKind.IFRAME))
    deadline = time.time() + 15
    while not chunks and time.time() < deadline:
        time.sleep(0.05)
    assert chunks
    assert chunks[0][4:8] == b"ftyp"
    assert all(MIN_CHUNK <= len(c) <= MAX_CHUNK for c in chunks)