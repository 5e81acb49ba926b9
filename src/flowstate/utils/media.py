"""
Media helpers: data URLs, MIME guessing, and dimension probing for images
(Pillow) and videos (OpenCV).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import logging
import mimetypes
import os
import re
import tempfile
from pathlib import Path
from typing import Tuple

import cv2
from PIL import Image

logger = logging.getLogger("flowstate.media")

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*?);base64,(?P<data>.*)$", re.DOTALL)

_VIDEO_SUFFIXES = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
}


def decode_data_url(data_url: str) -> Tuple[bytes, str]:
    """Split a base64 data URL into (bytes, mime_type)."""
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise ValueError("Not a base64 data URL")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return data, match.group("mime") or "application/octet-stream"


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def guess_mime_type(path: Path) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


def extension_for(mime_type: str) -> str:
    if mime_type in _VIDEO_SUFFIXES:
        return _VIDEO_SUFFIXES[mime_type]
    return mimetypes.guess_extension(mime_type) or ".bin"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def probe_image_dimensions(data: bytes) -> Tuple[int, int]:
    """Return (width, height) of an encoded image."""
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def probe_video_dimensions(data: bytes, mime_type: str = "video/mp4") -> Tuple[int, int]:
    """
    Return (width, height) of an encoded video.

    OpenCV only decodes from a path, so the bytes are spooled to a temp file.
    Raises ValueError when the container cannot be decoded.
    """
    fd, tmp_path = tempfile.mkstemp(suffix=extension_for(mime_type))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        cap = cv2.VideoCapture(tmp_path)
        try:
            if not cap.isOpened():
                raise ValueError("Video could not be decoded")
            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            if width <= 0 or height <= 0:
                ok, frame = cap.read()
                if not ok or frame is None:
                    raise ValueError("Video has no readable frames")
                height, width = frame.shape[:2]
        finally:
            cap.release()
    finally:
        try:
            os.unlink(tmp_path)
        except OSError as e:
            logger.debug(f"Could not remove temp video {tmp_path}: {e}")
    return width, height


def meets_min_edge(width: int, height: int, min_edge: int, policy: str = "short") -> bool:
    """Check a resolution bar against the short or long edge."""
    if policy == "short":
        edge = min(width, height)
    elif policy == "long":
        edge = max(width, height)
    else:
        raise ValueError(f"Unknown edge policy '{policy}'")
    return edge >= min_edge
