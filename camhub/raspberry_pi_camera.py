"""Raspberry Pi camera: reads H.264 from libcamera-vid over TCP and records MP4."""

from __future__ import annotations

import logging
import queue
import socket
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from camhub.fmp4 import Fmp4Writer
from camhub.mp4 import Mp4Writer, put_u8, put_u16, put_u32, put_u64, write_box
from camhub.traits import Camera, CodecParameters, Mp4Sink

log = logging.getLogger(__name__)

START_CODE = b"\x00\x00\x00\x01"
SHORT_START_CODE = b"\x00\x00\x01"

# Frames kept in the queue so a recording can include what came before motion.
QUEUE_WINDOW_SECONDS = 5.0
RECORDING_SECONDS = 20
READ_SIZE = 4096
CONNECT_ATTEMPTS = 9
RESTART_DELAY_SECONDS = 5.0
_POLL_INTERVAL = 1.0

LIBCAMERA_COMMAND = (
    "~/libcamera-apps/build/libcamera-vid -t 0 --width 1296 --height 972 "
    "--framerate 10 --inline --listen --codec h264 -o tcp://0.0.0.0:8888"
)
STREAM_ADDRESS = ("127.0.0.1", 8888)

# Hard-coded picture size written into the sample entry.
WIDTH = 640
HEIGHT = 480


class VideoFrameKind(Enum):
    """Kinds of H.264 NAL units handled, valued by NAL unit type."""

    RFRAME = 1  # regular (non-IDR) slice
    IFRAME = 5
    SPS = 7
    PPS = 8


@dataclass(frozen=True)
class VideoFrame:
    """A length-prefixed NAL unit and the time it was received."""

    data: bytes
    kind: VideoFrameKind
    timestamp: float = field(default_factory=time.time)


def find_start_code(buffer: bytes, start_code: bytes) -> int | None:
    """Return the position of ``start_code`` in ``buffer``, or None."""
    pos = bytes(buffer).find(start_code)
    return None if pos < 0 else pos


def append_length_prefixed_nal(nal: bytes) -> bytes:
    """Return ``nal`` preceded by its 4-byte big-endian length."""
    return len(nal).to_bytes(4, "big") + bytes(nal)


def _find_first_start(buffer: bytes) -> int | None:
    pos = find_start_code(buffer, START_CODE)
    if pos is not None:
        return pos + len(START_CODE)
    pos = find_start_code(buffer, SHORT_START_CODE)
    if pos is not None:
        return pos + len(SHORT_START_CODE)
    return None


def extract_h264_frame(buffer: bytearray) -> VideoFrame | None:
    """Remove the first complete NAL unit from ``buffer`` and return it.

    Returns None if no complete unit is available yet, or if the unit that
    was removed is of an unsupported type.
    """
    start = _find_first_start(buffer)
    if start is None:
        return None

    rest = bytes(buffer[start:])
    end = find_start_code(rest, START_CODE)
    if end is None:
        end = find_start_code(rest, SHORT_START_CODE)
    if end is None:
        return None
    end += start

    nal = bytes(buffer[start:end])
    del buffer[:end]
    if not nal:
        return None

    nal_type = nal[0] & 0x1F
    try:
        kind = VideoFrameKind(nal_type)
    except ValueError:
        log.warning("Unsupported frame (NAL: %d)", nal_type)
        return None
    return VideoFrame(append_length_prefixed_nal(nal), kind)


class FrameQueue:
    """A thread-safe queue of frames that keeps only the last few seconds."""

    def __init__(self, window: float = QUEUE_WINDOW_SECONDS, clock: Callable[[], float] = time.time):
        self.window = window
        self._clock = clock
        self._frames: deque[VideoFrame] = deque()
        self._lock = threading.Lock()

    def push(self, frame: VideoFrame) -> None:
        """Append a frame and drop frames older than the window."""
        with self._lock:
            self._frames.append(frame)
            now = self._clock()
            while self._frames and max(0.0, now - self._frames[0].timestamp) > self.window:
                self._frames.popleft()

    def pop(self) -> VideoFrame | None:
        """Remove and return the oldest frame, or None if empty."""
        with self._lock:
            return self._frames.popleft() if self._frames else None

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)


@dataclass
class RpiCameraVideoParameters(CodecParameters):
    """H.264 parameters built from the camera's SPS and PPS."""

    sps: bytes
    pps: bytes

    def write_codec_box(self, buf: bytearray) -> None:
        with write_box(buf, b"avc1"):
            put_u32(buf, 0)  # pre_defined & reserved
            put_u32(buf, 1)  # data reference index
            put_u32(buf, 0)  # reserved
            put_u64(buf, 0)  # reserved
            put_u32(buf, 0)  # reserved
            put_u16(buf, WIDTH)
            put_u16(buf, HEIGHT)
            put_u32(buf, 0x0048)  # horizontal resolution
            put_u32(buf, 0x0048)  # vertical resolution
            put_u32(buf, 0)  # reserved
            put_u16(buf, 1)  # frame count
            buf.extend(bytes(32))  # compressor name
            put_u16(buf, 0x0018)  # depth
            put_u16(buf, 0xFFFF)  # pre_defined
            with write_box(buf, b"avcC"):
                put_u8(buf, 1)  # configuration version
                put_u8(buf, self.sps[1])  # profile indication
                put_u8(buf, self.sps[2])  # profile compatibility
                put_u8(buf, self.sps[3])  # level indication
                put_u8(buf, 0xFC | 3)  # reserved + lengthSizeMinusOne
                put_u8(buf, 0xE0 | 1)  # reserved + numOfSequenceParameterSets
                put_u16(buf, len(self.sps) & 0xFFFF)
                buf.extend(self.sps)
                put_u8(buf, 1)  # numOfPictureParameterSets
                put_u16(buf, len(self.pps) & 0xFFFF)
                buf.extend(self.pps)

    def clock_rate(self) -> int:
        return 0

    def dimensions(self) -> tuple[int, int]:
        return WIDTH << 16, HEIGHT << 16


class RpiCameraAudioParameters(CodecParameters):
    """Placeholder audio parameters; the camera records no audio."""

    def write_codec_box(self, buf: bytearray) -> None:
        """There is no audio sample entry to write."""

    def clock_rate(self) -> int:
        return 0

    def dimensions(self) -> tuple[int, int]:
        return 0, 0


def copy_frames(mp4: Mp4Sink, duration: float | None, frame_queue: FrameQueue) -> None:
    """Move frames from ``frame_queue`` into ``mp4``.

    Recording starts at the first I-frame. With a ``duration`` in seconds
    it stops after a frame newer than that; it also stops once the sink
    refuses to finish a fragment (the livestream ended).
    """
    start = time.time()
    first_frame_found = False
    while True:
        frame = frame_queue.pop()
        if frame is None:
            time.sleep(_POLL_INTERVAL)
            continue

        is_iframe = frame.kind is VideoFrameKind.IFRAME
        if is_iframe:
            first_frame_found = True
            try:
                mp4.finish_fragment()
            except Exception as exc:  # the sink is gone; the stream is over
                log.debug("finish_fragment failed, stopping: %s", exc)
                break

        elapsed = max(0.0, frame.timestamp - start)
        if first_frame_found:
            micros = int(elapsed * 1_000_000)
            mp4.video(frame.data, micros // 10, is_iframe)

        if duration is not None and elapsed > duration:
            log.info("Stopping the recording.")
            break


def _connect(address: tuple[str, int]) -> socket.socket | None:
    for _ in range(CONNECT_ATTEMPTS):
        log.info("Trying to connect to %s:%s", *address)
        try:
            return socket.create_connection(address)
        except OSError:
            time.sleep(1)
    return None


class RaspberryPiCamera(Camera):
    """A camera fed by libcamera-vid streaming raw H.264 over TCP."""

    def __init__(
        self,
        name: str,
        state_dir: str,
        video_dir: str,
        motion_fps: int,
        command: str | None = LIBCAMERA_COMMAND,
        address: tuple[str, int] = STREAM_ADDRESS,
    ):
        self.name = name
        self.state_dir = state_dir
        self.video_dir = video_dir
        self.motion_fps = motion_fps
        self.frame_queue = FrameQueue()
        self._command = command
        self._address = address

        params: queue.Queue = queue.Queue()
        threading.Thread(
            target=self._run_stream, args=(params,), name="rpi-camera-stream", daemon=True
        ).start()

        self.sps_frame = self._expect(params, VideoFrameKind.SPS)
        self.pps_frame = self._expect(params, VideoFrameKind.PPS)

    @staticmethod
    def _expect(params: queue.Queue, kind: VideoFrameKind) -> VideoFrame:
        item = params.get()
        if isinstance(item, BaseException):
            raise item
        if item.kind is not kind:
            raise RuntimeError(f"expected {kind.name} from the camera, got {item.kind.name}")
        return item

    def _run_stream(self, params: queue.Queue) -> None:
        try:
            self._stream_attempt(params)
        except Exception as exc:
            params.put(exc)
            return
        params.put(ConnectionError("camera stream ended before SPS and PPS arrived"))

        while True:
            log.warning("Camera stream stopped or didn't start. Will try to restart soon.")
            time.sleep(RESTART_DELAY_SECONDS)
            try:
                self._stream_attempt(None)
            except OSError as exc:
                log.error("Camera stream failed: %s", exc)
                return

    def _stream_attempt(self, params: queue.Queue | None) -> None:
        if self._command:
            subprocess.Popen(
                self._command,
                shell=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        self._stream_loop(params)
        log.info("Read frame thread exiting.")

    def _stream_loop(self, params: queue.Queue | None) -> None:
        sock = _connect(self._address)
        if sock is None:
            raise ConnectionError("Could not start frame stream")
        buffer = bytearray()
        sps_sent = pps_sent = False
        with sock:
            while True:
                data = sock.recv(READ_SIZE)
                if not data:
                    log.info("Stream closed.")
                    return
                buffer.extend(data)
                while (frame := extract_h264_frame(buffer)) is not None:
                    if params is not None:
                        if not sps_sent and frame.kind is VideoFrameKind.SPS:
                            params.put(frame)
                            sps_sent = True
                        if not pps_sent and frame.kind is VideoFrameKind.PPS:
                            params.put(frame)
                            pps_sent = True
                    self.frame_queue.push(frame)

    def _video_params(self) -> RpiCameraVideoParameters:
        # Strip the 4-byte length prefix.
        return RpiCameraVideoParameters(self.sps_frame.data[4:], self.pps_frame.data[4:])

    def is_there_motion(self) -> bool:
        return True

    def record_motion_video(self, info) -> None:
        path = Path(self.video_dir, info.filename)
        with open(path, "w+b") as out:
            mp4 = Mp4Writer(self._video_params(), RpiCameraAudioParameters(), out)
            copy_frames(mp4, RECORDING_SECONDS, self.frame_queue)
            mp4.finish()

    def launch_livestream(self, livestream_writer) -> None:
        video_params = self._video_params()

        def run() -> None:
            fmp4 = Fmp4Writer(video_params, RpiCameraAudioParameters(), livestream_writer)
            fmp4.finish_header()
            copy_frames(fmp4, None, self.frame_queue)

        threading.Thread(target=run, name="rpi-livestream", daemon=True).start()