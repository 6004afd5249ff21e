"""Chunking of livestream data into message-sized pieces."""

from __future__ import annotations

import logging
from typing import Callable

log = logging.getLogger(__name__)

# Each encrypted message should fit in one TCP packet (at most 64 kB).
MAX_CHUNK = 62 * 1024
MIN_CHUNK = 60 * 1024

LIVESTREAM_START = 13


class LivestreamWriter:
    """A binary sink that hands data on in chunks of MIN_CHUNK to MAX_CHUNK bytes."""

    def __init__(self, sink: Callable[[bytes], object]):
        self.sink = sink
        self.pending = bytearray()
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed LivestreamWriter")

    def write(self, data: bytes) -> int:
        self._check_open()
        self.pending.extend(data)
        while len(self.pending) >= MIN_CHUNK:
            length = min(len(self.pending), MAX_CHUNK)
            chunk = bytes(self.pending[:length])
            del self.pending[:length]
            try:
                self.sink(chunk)
            except Exception as exc:
                raise OSError("Failed to send data over the channel") from exc
        return len(data)

    def flush(self) -> None:
        """Check the writer is open; data is handed on only in whole chunks."""
        self._check_open()

    def close(self) -> None:
        """Mark the writer closed; later writes raise ValueError."""
        self.closed = True


def is_livestream_start_message(msg: bytes) -> bool:
    """Return True if ``msg`` asks the camera to start a livestream."""
    if len(msg) == 1 and msg[0] == LIVESTREAM_START:
        log.info("livestream start request received")
        return True
    return False