"""A fragmented `.mp4` writer used for livestreaming."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO

from camhub.mp4 import (
    U32_MAX,
    Mp4WriterCore,
    TrakTrackerCore,
    put_u32,
    put_u64,
    to_u32,
    write_box,
    write_ftyp,
    write_mvhd,
)
from camhub.traits import CodecParameters, Mp4Sink


@dataclass
class FragmentTrakTracker:
    """Tracks the samples of one track within the current fragment."""

    core: TrakTrackerCore = field(default_factory=TrakTrackerCore)
    samples_durations_sizes: list[tuple[int, int]] = field(default_factory=list)
    fragment_start_time: int = 0
    last_timestamp: int = 0

    def add_sample(self, size: int, timestamp: int) -> None:
        self.core.samples += 1
        if self.last_timestamp == 0:
            duration = 0
        else:
            duration = timestamp - self.last_timestamp
            if duration < 0:
                raise ValueError(
                    f"timestamp {timestamp} is earlier than the previous one {self.last_timestamp}"
                )
            to_u32(duration, "sample duration")
        self.last_timestamp = timestamp
        self.core.tot_duration += duration
        self.samples_durations_sizes.append((duration, size))

    def write_fragment(self, buf: bytearray) -> None:
        """Write the `tfdt` and `trun` boxes of this track's fragment."""
        with write_box(buf, b"tfdt"):
            put_u32(buf, 1 << 24)  # version, flags
            put_u64(buf, self.fragment_start_time)  # base media decode time
        with write_box(buf, b"trun"):
            put_u32(buf, 1 << 24 | 0x100 | 0x200)  # sample duration and size present
            put_u32(buf, self.core.samples)
            for duration, size in self.samples_durations_sizes:
                put_u32(buf, duration)
                put_u32(buf, size)

    def clean(self) -> None:
        """Forget the finished fragment and start the next one."""
        self.core.samples = 0
        self.core.chunks.clear()
        self.core.sizes.clear()
        self.core.durations.clear()
        self.samples_durations_sizes.clear()
        self.fragment_start_time = self.core.tot_duration


class Fmp4Writer(Mp4Sink):
    """Writes fragmented `.mp4` data to a binary sink."""

    def __init__(self, video_params: CodecParameters, audio_params: CodecParameters, inner: BinaryIO):
        buf = bytearray()
        write_ftyp(buf)
        inner.write(bytes(buf))
        self.core = Mp4WriterCore(video_params, audio_params, inner, 0)
        self.video_trak = FragmentTrakTracker()
        self.audio_trak = FragmentTrakTracker()
        self.fbuf_video = bytearray()
        self.fbuf_audio = bytearray()

    def finish_header(self) -> None:
        """Write the `moov` box describing the video track."""
        buf = bytearray()
        with write_box(buf, b"moov"):
            write_mvhd(buf, self.video_trak.core.tot_duration)
            self.core.write_video_trak(buf, self.video_trak.core)
            with write_box(buf, b"mvex"):
                with write_box(buf, b"trex"):
                    put_u32(buf, 1 << 24)  # version, flags
                    put_u32(buf, 1)  # track id
                    put_u32(buf, 1)  # default sample description index
                    put_u32(buf, 0)  # default sample duration
                    put_u32(buf, 0)  # default sample size
                    put_u32(buf, 0)  # default sample flags
        self.core.inner.write(bytes(buf))

    def _write_traf(self, buf: bytearray, track_id: int, trak: FragmentTrakTracker) -> None:
        with write_box(buf, b"traf"):
            with write_box(buf, b"tfhd"):
                put_u32(buf, 1 << 24)  # version, flags
                put_u32(buf, track_id)
            trak.write_fragment(buf)

    def _advance_mdat(self, size: int) -> None:
        new_pos = self.core.mdat_pos + size
        if new_pos > U32_MAX:
            raise OverflowError("mdat_pos overflow")
        self.core.mdat_pos = new_pos

    def video(self, frame: bytes, frame_timestamp: int, is_random_access_point: bool) -> None:
        size = to_u32(len(frame), "frame size")
        self.video_trak.add_sample(size, frame_timestamp)
        self._advance_mdat(size)
        if is_random_access_point:
            self.core.video_sync_sample_nums.append(self.video_trak.core.samples)
        self.fbuf_video.extend(frame)

    def audio(self, frame: bytes, frame_timestamp: int) -> None:
        size = to_u32(len(frame), "frame size")
        self.audio_trak.add_sample(size, frame_timestamp)
        self._advance_mdat(size)
        self.fbuf_audio.extend(frame)

    def finish_fragment(self) -> None:
        """Write a `moof` box and the `mdat` holding the buffered frames."""
        self.video_trak.core.finish()
        self.audio_trak.core.finish()
        buf = bytearray()
        with write_box(buf, b"moof"):
            with write_box(buf, b"mfhd"):
                put_u32(buf, 1 << 24)  # version, flags
                put_u32(buf, 1)  # sequence number
            if self.video_trak.core.samples > 0:
                self._write_traf(buf, 1, self.video_trak)
            if self.audio_trak.core.samples > 0:
                self._write_traf(buf, 2, self.audio_trak)

        mdat_len = to_u32(len(self.fbuf_video) + len(self.fbuf_audio) + 8, "mdat length")
        buf.extend(struct.pack(">I", mdat_len))
        buf.extend(b"mdat")

        inner = self.core.inner
        inner.write(bytes(buf))
        inner.write(bytes(self.fbuf_video))
        inner.write(bytes(self.fbuf_audio))

        self.video_trak.clean()
        self.audio_trak.clean()
        self.fbuf_video.clear()
        self.fbuf_audio.clear()