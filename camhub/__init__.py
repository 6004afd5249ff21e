"""Camera hub building blocks: MP4/fMP4 writing, motion detection, livestream chunking and delivery tracking."""

__version__ = "0.1.0"

__all__ = [
    "traits",
    "mp4",
    "fmp4",
    "livestream",
    "delivery_monitor",
    "motion_detection",
    "raspberry_pi_camera",
]