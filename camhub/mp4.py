"""A simple `.mp4` writer that streams `mdat` and writes `moov` at the end."""

from __future__ import annotations

import logging
import os
import struct
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator

from camhub.traits import CodecParameters, Mp4Sink

log = logging.getLogger(__name__)

U32_MAX = 0xFFFFFFFF
MATRIX = (0x00010000, 0, 0, 0, 0x00010000, 0, 0, 0, 0x40000000)
FTYP_BODY = b"isom" + b"\x00\x00\x00\x00" + b"isom"


def to_u32(value: int, what: str = "value") -> int:
    """Return ``value`` if it fits in an unsigned 32-bit integer."""
    if not 0 <= value <= U32_MAX:
        raise OverflowError(f"{what} {value} does not fit in 32 bits")
    return value


def put_u8(buf: bytearray, value: int) -> None:
    buf.extend(struct.pack(">B", value))


def put_u16(buf: bytearray, value: int) -> None:
    buf.extend(struct.pack(">H", value))


def put_i16(buf: bytearray, value: int) -> None:
    buf.extend(struct.pack(">h", value))


def put_u32(buf: bytearray, value: int) -> None:
    buf.extend(struct.pack(">I", to_u32(value)))


def put_u64(buf: bytearray, value: int) -> None:
    buf.extend(struct.pack(">Q", value))


@contextmanager
def write_box(buf: bytearray, fourcc: bytes) -> Iterator[bytearray]:
    """Open a box in ``buf``; its length is filled in when the block ends."""
    if len(fourcc) != 4:
        raise ValueError(f"box type must be 4 bytes, got {fourcc!r}")
    start = len(buf)
    buf.extend(b"\x00\x00\x00\x00")
    buf.extend(fourcc)
    yield buf
    length = to_u32(len(buf) - start, "box length")
    buf[start:start + 4] = struct.pack(">I", length)


def write_ftyp(buf: bytearray) -> None:
    with write_box(buf, b"ftyp"):
        buf.extend(FTYP_BODY)


def write_mvhd(buf: bytearray, duration: int) -> None:
    with write_box(buf, b"mvhd"):
        put_u32(buf, 1 << 24)  # version
        put_u64(buf, 0)  # creation_time
        put_u64(buf, 0)  # modification_time
        put_u32(buf, 90000)  # timescale
        put_u64(buf, duration)
        put_u32(buf, 0x00010000)  # rate
        put_u16(buf, 0x0100)  # volume
        put_u16(buf, 0)  # reserved
        put_u64(buf, 0)  # reserved
        for v in MATRIX:
            put_u32(buf, v)
        for _ in range(6):
            put_u32(buf, 0)  # pre_defined
        put_u32(buf, 2)  # next_track_id


@dataclass
class Chunk:
    """Samples with consecutive byte positions and the same description."""

    first_sample_number: int  # 1-based
    byte_pos: int
    sample_description_index: int


@dataclass
class TrakTrackerCore:
    """The parts of a `trak` common to video and audio tracks."""

    samples: int = 0
    chunks: list[Chunk] = field(default_factory=list)
    sizes: list[int] = field(default_factory=list)
    # Run-length (sample count, duration); lags one sample behind add_sample.
    durations: list[tuple[int, int]] = field(default_factory=list)
    last_pts: int | None = None
    tot_duration: int = 0

    def finish(self) -> None:
        """Give the last sample a zero duration."""
        if self.last_pts is not None:
            self.durations.append((1, 0))

    def size_estimate(self) -> int:
        """Estimate the size of the variable-length table data."""
        return (
            len(self.durations) * 8  # stts
            + len(self.chunks) * 12  # stsc
            + len(self.sizes) * 4  # stsz
            + len(self.chunks) * 4  # stco
        )

    def write_common_stbl_parts(self, buf: bytearray) -> None:
        """Write the stts, stsc, stsz and stco boxes."""
        with write_box(buf, b"stts"):
            put_u32(buf, 0)
            put_u32(buf, len(self.durations))
            for samples, duration in self.durations:
                put_u32(buf, samples)
                put_u32(buf, duration)
        with write_box(buf, b"stsc"):
            put_u32(buf, 0)  # version
            put_u32(buf, len(self.chunks))
            if self.chunks:
                prev_sample_number = 1
                chunk_number = 1
                for chunk in self.chunks[1:]:
                    put_u32(buf, chunk_number)
                    put_u32(buf, chunk.first_sample_number - prev_sample_number)
                    put_u32(buf, chunk.sample_description_index)
                    prev_sample_number = chunk.first_sample_number
                    chunk_number += 1
                put_u32(buf, chunk_number)
                put_u32(buf, self.samples + 1 - prev_sample_number)
                put_u32(buf, 1)  # sample_description_index
        with write_box(buf, b"stsz"):
            put_u32(buf, 0)  # version
            put_u32(buf, 0)  # sample_size
            put_u32(buf, len(self.sizes))
            for size in self.sizes:
                put_u32(buf, size)
        with write_box(buf, b"stco"):
            put_u32(buf, 0)  # version
            put_u32(buf, len(self.chunks))
            for chunk in self.chunks:
                put_u32(buf, chunk.byte_pos)


@dataclass
class TrakTracker:
    """Tracks samples and chunks of one track of a plain MP4 file."""

    core: TrakTrackerCore = field(default_factory=TrakTrackerCore)
    next_pos: int | None = None

    def add_sample(
        self, sample_description_index: int, byte_pos: int, size: int, timestamp: int
    ) -> None:
        core = self.core
        core.samples += 1
        last_index = core.chunks[-1].sample_description_index if core.chunks else None
        if self.next_pos != byte_pos or last_index != sample_description_index:
            core.chunks.append(Chunk(core.samples, byte_pos, sample_description_index))
        core.sizes.append(size)
        self.next_pos = byte_pos + size

        last_pts, core.last_pts = core.last_pts, timestamp
        if last_pts is None:
            return
        duration = timestamp - last_pts
        if duration < 0:
            log.warning("sample timestamp went backwards; using zero duration")
            duration = 0
        core.tot_duration += duration
        to_u32(duration, "sample duration")
        if core.durations and core.durations[-1][1] == duration:
            count, _ = core.durations[-1]
            core.durations[-1] = (count + 1, duration)
        else:
            core.durations.append((1, duration))


def _write_dinf(buf: bytearray) -> None:
    with write_box(buf, b"dinf"):
        with write_box(buf, b"dref"):
            put_u32(buf, 0)
            put_u32(buf, 1)  # entry_count
            with write_box(buf, b"url "):
                put_u32(buf, 1)  # version, flags=self-contained


def _write_tkhd(buf: bytearray, track_id: int, duration: int, dims: tuple[int, int]) -> None:
    with write_box(buf, b"tkhd"):
        put_u32(buf, (1 << 24) | 7)  # version, flags
        put_u64(buf, 0)  # creation_time
        put_u64(buf, 0)  # modification_time
        put_u32(buf, track_id)
        put_u32(buf, 0)  # reserved
        put_u64(buf, duration)
        put_u64(buf, 0)  # reserved
        put_u16(buf, 0)  # layer
        put_u16(buf, 0)  # alternate_group
        put_u16(buf, 0)  # volume
        put_u16(buf, 0)  # reserved
        for v in MATRIX:
            put_u32(buf, v)
        put_u32(buf, dims[0])
        put_u32(buf, dims[1])


def _write_mdhd(buf: bytearray, timescale: int, duration: int) -> None:
    with write_box(buf, b"mdhd"):
        put_u32(buf, 1 << 24)  # version
        put_u64(buf, 0)  # creation_time
        put_u64(buf, 0)  # modification_time
        put_u32(buf, timescale)
        put_u64(buf, duration)
        put_u32(buf, 0x55C40000)  # language=und + pre-defined


def _write_hdlr(buf: bytearray, handler: bytes) -> None:
    with write_box(buf, b"hdlr"):
        buf.extend(bytes(8))  # version + flags, pre_defined
        buf.extend(handler)
        buf.extend(bytes(12))  # reserved
        buf.extend(b"\x00")  # empty name


@dataclass
class Mp4WriterCore:
    """State shared by the plain and fragmented MP4 writers."""

    video_params: CodecParameters
    audio_params: CodecParameters
    inner: BinaryIO
    mdat_pos: int
    # 1-based sample numbers of the video sync samples.
    video_sync_sample_nums: list[int] = field(default_factory=list)

    def write_video_trak(self, buf: bytearray, video_trak_core: TrakTrackerCore) -> None:
        with write_box(buf, b"trak"):
            _write_tkhd(buf, 1, video_trak_core.tot_duration, self.video_params.dimensions())
            with write_box(buf, b"mdia"):
                _write_mdhd(buf, 90000, video_trak_core.tot_duration)
                _write_hdlr(buf, b"vide")
                with write_box(buf, b"minf"):
                    with write_box(buf, b"vmhd"):
                        put_u32(buf, 1)
                        put_u64(buf, 0)
                    _write_dinf(buf)
                    with write_box(buf, b"stbl"):
                        with write_box(buf, b"stsd"):
                            put_u32(buf, 0)  # version
                            put_u32(buf, 1)  # entry_count
                            self.video_params.write_codec_box(buf)
                        video_trak_core.write_common_stbl_parts(buf)
                        with write_box(buf, b"stss"):
                            put_u32(buf, 0)  # version
                            put_u32(buf, len(self.video_sync_sample_nums))
                            for n in self.video_sync_sample_nums:
                                put_u32(buf, n)

    def write_audio_trak(self, buf: bytearray, audio_trak_core: TrakTrackerCore) -> None:
        with write_box(buf, b"trak"):
            _write_tkhd(buf, 2, audio_trak_core.tot_duration, (0, 0))
            with write_box(buf, b"mdia"):
                _write_mdhd(buf, self.audio_params.clock_rate(), audio_trak_core.tot_duration)
                _write_hdlr(buf, b"soun")
                with write_box(buf, b"minf"):
                    with write_box(buf, b"smhd"):
                        buf.extend(bytes(8))  # version + flags, balance, reserved
                    _write_dinf(buf)
                    with write_box(buf, b"stbl"):
                        with write_box(buf, b"stsd"):
                            put_u32(buf, 0)  # version
                            put_u32(buf, 1)  # entry_count
                            self.audio_params.write_codec_box(buf)
                        audio_trak_core.write_common_stbl_parts(buf)
                        # AAC needs the previous sample to decode accurately.
                        with write_box(buf, b"sgpd"):
                            put_u32(buf, 0)  # version
                            buf.extend(b"roll")
                            put_u32(buf, 1)  # entry_count
                            put_i16(buf, -1)  # roll_distance
                        with write_box(buf, b"sbgp"):
                            put_u32(buf, 0)  # version
                            buf.extend(b"roll")
                            put_u32(buf, 1)  # entry_count
                            put_u32(buf, audio_trak_core.samples)
                            put_u32(buf, 1)  # group_description_index


class Mp4Writer(Mp4Sink):
    """Writes a plain `.mp4` to a seekable binary stream."""

    def __init__(self, video_params: CodecParameters, audio_params: CodecParameters, inner: BinaryIO):
        buf = bytearray()
        write_ftyp(buf)
        buf.extend(b"\x00\x00\x00\x00mdat")
        self.mdat_start = to_u32(len(buf))
        inner.write(bytes(buf))
        self.core = Mp4WriterCore(video_params, audio_params, inner, self.mdat_start)
        self.video_trak = TrakTracker()
        self.audio_trak = TrakTracker()

    def _advance_mdat(self, size: int) -> None:
        new_pos = self.core.mdat_pos + size
        if new_pos > U32_MAX:
            raise OverflowError("mdat_pos overflow")
        self.core.mdat_pos = new_pos

    def video(self, frame: bytes, frame_timestamp: int, is_random_access_point: bool) -> None:
        size = to_u32(len(frame), "frame size")
        self.video_trak.add_sample(1, self.core.mdat_pos, size, frame_timestamp)
        self._advance_mdat(size)
        if is_random_access_point:
            self.core.video_sync_sample_nums.append(self.video_trak.core.samples)
        self.core.inner.write(frame)

    def audio(self, frame: bytes, frame_timestamp: int) -> None:
        size = to_u32(len(frame), "frame size")
        self.audio_trak.add_sample(1, self.core.mdat_pos, size, frame_timestamp)
        self._advance_mdat(size)
        self.core.inner.write(frame)

    def finish_fragment(self) -> None:
        """Plain MP4 files have no fragments; nothing to do."""

    def finish(self) -> None:
        """Write the `moov` box and patch the `mdat` length."""
        video_core = self.video_trak.core
        audio_core = self.audio_trak.core
        video_core.finish()
        audio_core.finish()
        buf = bytearray()
        with write_box(buf, b"moov"):
            write_mvhd(buf, video_core.tot_duration)
            if video_core.samples > 0:
                self.core.write_video_trak(buf, video_core)
            if audio_core.samples > 0:
                self.core.write_audio_trak(buf, audio_core)
        inner = self.core.inner
        inner.write(bytes(buf))
        inner.seek(self.mdat_start - 8)
        mdat_len = to_u32(self.core.mdat_pos + 8 - self.mdat_start, "mdat length")
        inner.write(struct.pack(">I", mdat_len))
        inner.seek(0, os.SEEK_END)