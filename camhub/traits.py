"""Interfaces shared by codecs, MP4 sinks and cameras."""

from __future__ import annotations

from abc import ABC, abstractmethod


class CodecParameters(ABC):
    """Describes a stream's codec for the sample description box."""

    @abstractmethod
    def write_codec_box(self, buf: bytearray) -> None:
        """Append the codec's sample entry box to ``buf``."""

    @abstractmethod
    def clock_rate(self) -> int:
        """Return the stream's clock rate in Hz."""

    @abstractmethod
    def dimensions(self) -> tuple[int, int]:
        """Return (width, height) as 16.16 fixed-point values."""


class Mp4Sink(ABC):
    """Something that accepts encoded frames and packages them as MP4."""

    @abstractmethod
    def video(self, frame: bytes, frame_timestamp: int, is_random_access_point: bool) -> None:
        """Add one video frame."""

    @abstractmethod
    def audio(self, frame: bytes, frame_timestamp: int) -> None:
        """Add one audio frame."""

    @abstractmethod
    def finish_fragment(self) -> None:
        """Close the current fragment, if the sink writes fragments."""


class Camera(ABC):
    """A camera that detects motion, records clips and streams live."""

    name: str
    state_dir: str
    video_dir: str

    @abstractmethod
    def is_there_motion(self) -> bool:
        """Return True if motion was detected since the last check."""

    @abstractmethod
    def record_motion_video(self, info) -> None:
        """Record a clip into the file named by ``info``."""

    @abstractmethod
    def launch_livestream(self, livestream_writer) -> None:
        """Start streaming fragmented MP4 into ``livestream_writer``."""