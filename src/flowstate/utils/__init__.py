"""
Flowstate utilities for media handling and cooperative cancellation.
"""

from .cancellation import CancellationToken
from .media import (
    decode_data_url,
    to_data_url,
    guess_mime_type,
    sha256_hex,
    probe_image_dimensions,
    probe_video_dimensions,
    meets_min_edge,
)

__all__ = [
    "CancellationToken",
    "decode_data_url",
    "to_data_url",
    "guess_mime_type",
    "sha256_hex",
    "probe_image_dimensions",
    "probe_video_dimensions",
    "meets_min_edge",
]
