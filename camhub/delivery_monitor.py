"""Tracks sent videos and decides when to resend or renotify them."""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import suppress
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Callable

log = logging.getLogger(__name__)

STATE_PREFIX = "delivery_monitor_"


@dataclass
class VideoInfo:
    """A recorded video and when it was last sent or announced."""

    timestamp: int
    filename: str
    last_send_timestamp: int | None = None
    last_notify_timestamp: int | None = None

    @classmethod
    def create(cls) -> VideoInfo:
        """Describe a new video stamped with the current time."""
        now = int(time.time())
        return cls(timestamp=now, filename=cls.filename_from_timestamp(now))

    @staticmethod
    def filename_from_timestamp(timestamp: int) -> str:
        return f"video_{timestamp}.mp4"


def _state_files_sorted(state_dir: str) -> list[str]:
    """State file names in ``state_dir``, newest first."""
    names = []
    for entry in os.listdir(state_dir):
        if not entry.startswith(STATE_PREFIX):
            continue
        suffix = entry[len(STATE_PREFIX):]
        if suffix.isdigit():
            names.append((int(suffix), entry))
    return [name for _, name in sorted(names, reverse=True)]


class DeliveryMonitor:
    """Keeps a watch list of videos until the app acknowledges them."""

    def __init__(
        self,
        video_dir: str,
        state_dir: str,
        renotify_threshold: int,
        clock: Callable[[], float] = time.time,
    ):
        self.watch_list: dict[int, VideoInfo] = {}
        self.last_ack_timestamp: int | None = None
        self.video_dir = video_dir
        self.state_dir = state_dir
        self.renotify_threshold = renotify_threshold
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _to_dict(self) -> dict:
        return {
            "watch_list": [asdict(info) for info in self.watch_list.values()],
            "last_ack_timestamp": self.last_ack_timestamp,
            "video_dir": self.video_dir,
            "state_dir": self.state_dir,
            "renotify_threshold": self.renotify_threshold,
        }

    @classmethod
    def _from_dict(cls, data: dict) -> DeliveryMonitor:
        monitor = cls(data["video_dir"], data["state_dir"], int(data["renotify_threshold"]))
        monitor.last_ack_timestamp = data["last_ack_timestamp"]
        for item in data["watch_list"]:
            info = VideoInfo(**item)
            monitor.watch_list[info.timestamp] = info
        return monitor

    @classmethod
    def from_file_or_new(cls, video_dir: str, state_dir: str, renotify_threshold: int) -> DeliveryMonitor:
        """Load the newest readable saved state, or start empty."""
        for name in _state_files_sorted(state_dir):
            try:
                data = json.loads(Path(state_dir, name).read_text(encoding="utf-8"))
                return cls._from_dict(data)
            except (ValueError, KeyError, TypeError):
                continue
        return cls(video_dir, state_dir, renotify_threshold)

    def save_state(self) -> None:
        """Write the state to a new file and remove older ones."""
        name = f"{STATE_PREFIX}{time.time_ns()}"
        path = Path(self.state_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._to_dict(), f)
            f.flush()
            os.fsync(f.fileno())

        files = _state_files_sorted(self.state_dir)
        if not files or files[0] != name:
            raise RuntimeError(f"newest state file is not {name}")
        for old in files[1:]:
            with suppress(OSError):
                os.remove(Path(self.state_dir, old))

    def send_event(self, video_info: VideoInfo) -> None:
        """Record that a video (and with it a notification) was sent."""
        log.info("send_event: %s", video_info.timestamp)
        now = self._now()
        self.watch_list[video_info.timestamp] = replace(
            video_info, last_send_timestamp=now, last_notify_timestamp=now
        )
        self.save_state()

    def ack_event(self, video_timestamp: int, video_ack: bool) -> None:
        """Record an ack; a video ack drops the video and its file."""
        log.info("ack_event: %s, %s", video_timestamp, video_ack)
        self.last_ack_timestamp = self._now()
        if video_ack:
            self.watch_list.pop(video_timestamp, None)
            with suppress(OSError):
                os.remove(Path(self.video_dir, VideoInfo.filename_from_timestamp(video_timestamp)))
        self.save_state()

    def notify_event(self, video_info: VideoInfo) -> None:
        """Record that a notification for a video was sent."""
        log.info("notify_event: %s", video_info.timestamp)
        updated = replace(video_info, last_notify_timestamp=self._now())
        if video_info.timestamp not in self.watch_list:
            log.debug("notify_event for video not in the watch list!")
            self.watch_list[video_info.timestamp] = updated
        self.save_state()

    def videos_to_resend_renotify(self) -> tuple[list[VideoInfo], list[VideoInfo]]:
        """Return (videos to resend, videos to renotify), each sorted by timestamp."""
        resend: list[VideoInfo] = []
        renotify: list[VideoInfo] = []
        now = self._now()
        for info in self.watch_list.values():
            if (
                self.last_ack_timestamp is not None
                and info.last_send_timestamp is not None
                and info.last_send_timestamp < self.last_ack_timestamp
            ):
                resend.append(replace(info))
                log.info("adding to resend list: %s", info.timestamp)
            elif (
                info.last_notify_timestamp is not None
                and now - info.last_notify_timestamp > self.renotify_threshold
            ):
                renotify.append(replace(info))
                log.info("adding to renotify list: %s", info.timestamp)
        resend.sort(key=lambda v: v.timestamp)
        renotify.sort(key=lambda v: v.timestamp)
        return resend, renotify