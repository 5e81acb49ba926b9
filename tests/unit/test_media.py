"""
Unit tests for media and cancellation utilities.
"""

import asyncio
import cv2
import numpy as np
import pytest

from flowstate.errors import OperationCancelled
from flowstate.models import SourceAsset
from flowstate.utils.cancellation import CancellationToken
from flowstate.utils.media import (
    decode_data_url,
    meets_min_edge,
    probe_image_dimensions,
    probe_video_dimensions,
    to_data_url,
)


def _write_avi(path, size=(320, 240), frames=5):
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10, size)
    for i in range(frames):
        frame = np.full((size[1], size[0], 3), i * 40, dtype=np.uint8)
        writer.write(frame)
    writer.release()
    return path.read_bytes()


class TestDataUrls:
    """Test data URL handling."""

    def test_decode(self, png_bytes):
        data, mime = decode_data_url(to_data_url(png_bytes, "image/png"))
        assert data == png_bytes
        assert mime == "image/png"

    def test_decode_rejects_plain_text(self):
        with pytest.raises(ValueError):
            decode_data_url("https://example.com/image.png")

    def test_decode_rejects_bad_base64(self):
        with pytest.raises(ValueError):
            decode_data_url("data:image/png;base64,@@@@")

    def test_source_asset_from_data_url(self, png_bytes):
        asset = SourceAsset.from_data_url(to_data_url(png_bytes, "image/png"), name="front.png")
        assert asset.mime_type == "image/png"
        assert asset.id.startswith("src_")

    def test_source_asset_from_path(self, temp_dir, png_bytes):
        path = temp_dir / "shirt.png"
        path.write_bytes(png_bytes)
        asset = SourceAsset.from_path(path)
        assert asset.name == "shirt.png"
        assert asset.mime_type == "image/png"
        assert asset.payload.data == png_bytes

    def test_empty_source_rejected(self):
        with pytest.raises(ValueError):
            SourceAsset.from_bytes(b"", "image/png")


class TestProbing:
    """Test dimension probing."""

    def test_image_dimensions(self, png_bytes):
        assert probe_image_dimensions(png_bytes) == (64, 64)

    def test_video_dimensions(self, temp_dir):
        data = _write_avi(temp_dir / "clip.avi")
        assert probe_video_dimensions(data, "video/x-msvideo") == (320, 240)

    def test_undecodable_video(self):
        with pytest.raises(ValueError):
            probe_video_dimensions(b"not a video", "video/mp4")

    @pytest.mark.parametrize("width,height,policy,expected", [
        (1920, 1080, "short", True),
        (1080, 1920, "short", True),
        (1280, 720, "short", False),
        (1280, 720, "long", True),
        (960, 540, "long", False),
    ])
    def test_meets_min_edge(self, width, height, policy, expected):
        assert meets_min_edge(width, height, 1080, policy) is expected


class TestCancellationToken:
    """Test cooperative cancellation."""

    def test_sleep_wakes_on_cancel(self):
        async def scenario():
            token = CancellationToken()
            loop = asyncio.get_running_loop()
            loop.call_later(0.01, token.cancel, "stop")
            started = loop.time()
            with pytest.raises(OperationCancelled):
                await token.sleep(30)
            return loop.time() - started

        assert asyncio.run(scenario()) < 5

    def test_run_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        async def scenario():
            return await CancellationToken().run(work())

        assert asyncio.run(scenario()) == 42

    def test_run_abandons_on_cancel(self):
        async def scenario():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            with pytest.raises(OperationCancelled):
                await token.run(asyncio.sleep(30))

        asyncio.run(scenario())

    def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel("done")
        assert token.cancelled
        with pytest.raises(OperationCancelled, match="done"):
            token.raise_if_cancelled()
