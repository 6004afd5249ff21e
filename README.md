# camhub

Building blocks for a camera hub that records short motion-triggered clips,
streams live video in message-sized chunks, and keeps track of which recorded
videos still need to be delivered.

## What is in the package

- `camhub.traits` — the abstract interfaces `CodecParameters`
  (`write_codec_box`, `clock_rate`, `dimensions`), `Mp4Sink` (`video`,
  `audio`, `finish_fragment`) and `Camera` (`is_there_motion`,
  `record_motion_video`, `launch_livestream`).
- `camhub.mp4` — a streaming `.mp4` writer. `Mp4Writer` writes `ftyp` and an
  `mdat` header up front, appends frames as they arrive, and `finish()` appends
  the `moov` box and goes back to patch the `mdat` length. The `write_box`
  context manager and the sample-table bookkeeping (`TrakTrackerCore`,
  `TrakTracker`, `Chunk`, `Mp4WriterCore`) are available for reuse.
- `camhub.fmp4` — `Fmp4Writer`, a fragmented MP4 writer: `finish_header()`
  writes the `moov` box for the video track, and each `finish_fragment()` emits
  a `moof`/`mdat` pair holding the samples gathered since the previous
  fragment. `FragmentTrakTracker` tracks one track's samples per fragment.
- `camhub.livestream` — `LivestreamWriter`, a file-like sink that regroups
  written bytes into chunks of 60–62 KiB and passes each chunk to a callable;
  bytes short of a full chunk stay pending. A failing callable surfaces as
  `OSError`, and writing after `close()` raises `ValueError`.
  `is_livestream_start_message` recognises the one-byte start request.
- `camhub.delivery_monitor` — `VideoInfo` and `DeliveryMonitor`, which persist
  the sent-but-unacknowledged videos in a state directory and decide which
  videos must be resent and which need a fresh notification.
- `camhub.motion_detection` — `BackgroundSubtractor`, a DBSCAN helper `dbscan`,
  MJPEG stream parsing (`get_mjpeg_boundary`, `read_ascii_line`,
  `iter_mjpeg_frames`) and `MotionDetection`.
- `camhub.raspberry_pi_camera` — H.264 Annex-B NAL splitting
  (`extract_h264_frame`, `find_start_code`, `append_length_prefixed_nal`),
  `VideoFrame`/`VideoFrameKind`, a time-windowed thread-safe `FrameQueue`,
  the `avc1`/`avcC` sample entry in `RpiCameraVideoParameters`,
  `RpiCameraAudioParameters`, `copy_frames`, and `RaspberryPiCamera`.

## Tracking deliveries

```python
from camhub.delivery_monitor import DeliveryMonitor, VideoInfo

monitor = DeliveryMonitor.from_file_or_new("pending_videos", "state", 60)

info = VideoInfo.create()          # named video_<unix seconds>.mp4
monitor.send_event(info)           # record that the video went out

resend, renotify = monitor.videos_to_resend_renotify()

monitor.ack_event(info.timestamp, True)   # delivered: forget it, delete the file
```

A video is due for resending when it was last sent before the most recent
ack; otherwise it is due for a renotification once its last notification is
older than the threshold (in seconds). Both lists are sorted by timestamp.

Every state change is saved as JSON to a new `delivery_monitor_<nanoseconds>`
file in the state directory, and older state files are removed, so
`from_file_or_new` picks up the newest readable state after a restart.

## Writing an MP4 file

`Mp4Writer` needs a `CodecParameters` object for video and one for audio, and
a seekable binary file:

```python
from camhub.mp4 import Mp4Writer

with open("clip.mp4", "w+b") as out:
    writer = Mp4Writer(video_params, audio_params, out)
    for data, timestamp, is_key in frames:
        writer.video(data, timestamp, is_key)
    writer.finish()
```

The movie and video track use a 90 kHz timescale. Track boxes are only written
for tracks that received samples.

## Livestreaming

```python
from camhub.fmp4 import Fmp4Writer
from camhub.livestream import LivestreamWriter

chunks = []
sink = LivestreamWriter(chunks.append)
fmp4 = Fmp4Writer(video_params, audio_params, sink)
fmp4.finish_header()
# ... fmp4.video(...) for each frame, fmp4.finish_fragment() at each key frame
```

## Detecting motion

`MotionDetection(motion_fps)` keeps the newest frame handed to
`submit_frame`; `handle_motion_event` decodes it (at most `motion_fps` times a
second) and reports whether something moved. The first frame becomes the
background; frames larger than 640×480 are scaled down; motion is reported
when many pixels changed, or when the changed pixels form large enough
clusters. `start_stream(ip, username, password)` connects to a camera's MJPEG
stream with HTTP digest authentication and feeds frames from a background
thread.

## Raspberry Pi camera

`RaspberryPiCamera` starts `libcamera-vid` through the shell, reads raw H.264
from it over TCP, and keeps the last five seconds of frames in a `FrameQueue`.
`record_motion_video` writes a 20-second clip with `Mp4Writer`, and
`launch_livestream` streams fragmented MP4 into a `LivestreamWriter` from a
background thread. Its `is_there_motion` always returns `True`.

## What the package does not do

There is no command-line program and no main loop: the package does not
connect to a delivery server, pair with a mobile app, encrypt or send
messages, or read a camera configuration file. Only the Raspberry Pi camera is
provided as a `Camera`; there is no RTSP client for IP cameras. Callers wire
the pieces together themselves.