"""Motion detection on the MJPEG substream of an IP camera."""

from __future__ import annotations

import io
import logging
import string
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import BinaryIO, Iterator

import numpy as np
import requests
from PIL import Image
from requests.auth import HTTPDigestAuth
from scipy.spatial import cKDTree

log = logging.getLogger(__name__)

ALPHA = 0.05  # Background update rate
THRESHOLD = 70  # Per-pixel difference counted as motion

# Distance within which two changed points are neighbours in a cluster.
DBSCAN_TOLERANCE = 20.0
# Clustered points needed in total to count as motion.
MINIMUM_TOTAL_CLUSTERED_POINTS = 700
# Points a cluster needs so that it is not noise.
MINIMUM_INDIVIDUAL_CLUSTER_POINTS = 400
# Changed points that count as motion without any clustering.
MINIMUM_GLOBAL_POINTS = 2500

MAX_WIDTH = 640
MAX_HEIGHT = 480
DEFAULT_BOUNDARY = "--myboundary"
NOISE = -1

_BOUNDARY_TRIM = string.whitespace + ';"'


class BackgroundSubtractor:
    """An exponential moving average background model."""

    def __init__(self, initial_frame: np.ndarray):
        self.background = np.asarray(initial_frame, dtype=np.float32).copy()

    def apply(self, frame: np.ndarray) -> np.ndarray:
        """Update the background and return a 0/255 mask of changed pixels."""
        current = np.asarray(frame, dtype=np.float32)
        if current.shape != self.background.shape:
            raise ValueError(
                f"frame shape {current.shape} does not match background {self.background.shape}"
            )
        diff = np.abs(current - self.background)
        self.background = current * ALPHA + self.background * (1.0 - ALPHA)
        return np.where(diff > THRESHOLD, 255, 0).astype(np.uint8)


def dbscan(points: np.ndarray, min_points: int, tolerance: float) -> np.ndarray:
    """Cluster 2-D points; return one label per point, NOISE (-1) for noise.

    A point is a core point when at least ``min_points`` points, itself
    included, lie within ``tolerance`` of it.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    labels = np.full(len(pts), NOISE, dtype=np.int64)
    if len(pts) == 0:
        return labels

    neighbours = cKDTree(pts).query_ball_point(pts, r=tolerance)
    is_core = [len(n) >= min_points for n in neighbours]

    cluster = 0
    for start, core in enumerate(is_core):
        if not core or labels[start] != NOISE:
            continue
        labels[start] = cluster
        pending = deque([start])
        while pending:
            for j in neighbours[pending.popleft()]:
                if labels[j] == NOISE:
                    labels[j] = cluster
                    if is_core[j]:
                        pending.append(j)
        cluster += 1
    return labels


def get_mjpeg_boundary(content_type: str | None) -> str | None:
    """Extract the multipart boundary from a Content-Type value, with a ``--`` prefix."""
    if content_type is None:
        return None
    idx = content_type.lower().find("boundary=")
    if idx < 0:
        return None
    boundary = content_type[idx + len("boundary="):].strip(_BOUNDARY_TRIM)
    if not boundary:
        return None
    return boundary if boundary.startswith("--") else f"--{boundary}"


def read_ascii_line(reader: BinaryIO) -> str | None:
    """Read one line without its line ending; None at end of stream."""
    raw = reader.readline()
    if not raw:
        return None
    return raw.rstrip(b"\r\n").decode("utf-8", errors="replace")


def iter_mjpeg_frames(reader: BinaryIO, boundary: str) -> Iterator[bytes]:
    """Yield the JPEG bodies of a multipart/x-mixed-replace stream."""
    while True:
        line = read_ascii_line(reader)
        if line is None:
            log.debug("EOF reached, leaving MJPEG loop.")
            return
        if not line.strip().startswith(boundary):
            continue

        content_length: int | None = None
        while True:
            header = read_ascii_line(reader)
            if header is None:
                return
            header = header.strip()
            if not header:
                break
            if header.startswith("Content-Length:"):
                value = header[len("Content-Length:"):].strip()
                try:
                    content_length = int(value)
                except ValueError as exc:
                    raise ValueError(f"Content-Length not a valid integer: {value!r}") from exc

        if content_length is None:
            log.debug("No Content-Length header found for this part")
            continue
        data = reader.read(content_length)
        if len(data) != content_length:
            raise EOFError("stream ended inside a JPEG frame")
        yield data


@dataclass
class _Frame:
    jpeg: bytes
    timestamp: float


class MotionDetection:
    """Detects motion by comparing the latest camera frame with a background."""

    def __init__(self, motion_fps: int):
        if motion_fps <= 0:
            raise ValueError("motion_fps must be positive")
        self.motion_fps = motion_fps
        self._lock = threading.Lock()
        self._latest: _Frame | None = None
        self._subtractor: BackgroundSubtractor | None = None
        self._last_detection: float | None = None

    def submit_frame(self, jpeg: bytes, timestamp: float | None = None) -> None:
        """Replace the latest frame with an encoded image."""
        stamp = time.time() if timestamp is None else timestamp
        with self._lock:
            self._latest = _Frame(bytes(jpeg), stamp)

    def _is_due(self, frame_time: float) -> bool:
        if self._last_detection is None:
            return True
        interval = (1000 // self.motion_fps) / 1000.0
        return frame_time - self._last_detection >= interval

    def handle_motion_event(self) -> bool:
        """Check the latest frame; return True if it shows motion."""
        with self._lock:
            latest = self._latest
        if latest is None or not self._is_due(latest.timestamp):
            return False

        image = Image.open(io.BytesIO(latest.jpeg))
        image.load()
        self._last_detection = latest.timestamp

        gray_image = image.convert("L")
        width, height = gray_image.size
        if width > MAX_WIDTH and height > MAX_HEIGHT:
            # Cap the resolution to keep the CPU load bounded.
            width, height = MAX_WIDTH, MAX_HEIGHT
            gray_image = gray_image.resize((width, height), Image.Resampling.NEAREST)
        gray = np.asarray(gray_image, dtype=np.uint8)

        scale = (width * height) / (MAX_WIDTH * MAX_HEIGHT)

        if self._subtractor is None:
            self._subtractor = BackgroundSubtractor(gray)
            return False

        # Compare against a copy so the stored background stays the baseline.
        mask = BackgroundSubtractor(self._subtractor.background).apply(gray)
        rows, cols = np.nonzero(mask == 255)
        total = len(rows)

        if total >= scale * MINIMUM_GLOBAL_POINTS:
            self._subtractor = BackgroundSubtractor(gray)
            log.debug("Motion detected via global analysis with %d total points", total)
            return True

        if total >= scale * MINIMUM_TOTAL_CLUSTERED_POINTS:
            points = np.column_stack((cols, rows)).astype(np.float64)
            labels = dbscan(
                points,
                int(scale * MINIMUM_INDIVIDUAL_CLUSTER_POINTS),
                scale * DBSCAN_TOLERANCE,
            )
            clustered = int(np.count_nonzero(labels != NOISE))
            if clustered >= scale * MINIMUM_TOTAL_CLUSTERED_POINTS:
                self._subtractor = BackgroundSubtractor(gray)
                log.debug(
                    "Motion detected via cluster analysis with %d clustered and %d total points",
                    clustered,
                    total,
                )
                return True
        return False

    def start_stream(self, ip: str, username: str, password: str) -> threading.Thread:
        """Connect to the camera's MJPEG stream and feed frames in the background."""
        url = f"http://{ip}/cgi-bin/mjpg/video.cgi?subtype=1"
        session = requests.Session()

        with session.get(url, stream=True) as probe:
            if probe.status_code != 401:
                raise ConnectionError(
                    f"Unexpected status from camera MJPEG attempt: {probe.status_code}"
                )

        response = session.get(url, auth=HTTPDigestAuth(username, password), stream=True)
        if not response.ok:
            response.close()
            raise ConnectionError(
                f"Failed to authenticate to camera MJPEG: HTTP {response.status_code}"
            )

        boundary = get_mjpeg_boundary(response.headers.get("Content-Type")) or DEFAULT_BOUNDARY
        log.debug("Using boundary: %s", boundary)
        response.raw.decode_content = True
        reader = io.BufferedReader(response.raw)

        def run() -> None:
            log.debug("Starting MJPEG motion detection background thread")
            try:
                for jpeg in iter_mjpeg_frames(reader, boundary):
                    self.submit_frame(jpeg)
            except (OSError, ValueError, EOFError) as exc:
                log.error("MJPEG stream failed: %s", exc)
            finally:
                response.close()

        thread = threading.Thread(target=run, name="mjpeg-stream", daemon=True)
        thread.start()
        return thread