"""
Unit tests for Step 4: Batch Orchestrator.
"""

import asyncio
import pytest

from conftest import FakeGenerationClient, build_orchestrator
from flowstate.asset_store import AssetStore
from flowstate.config import RetryPolicy
from flowstate.errors import (
    AuthRequired,
    GenerationBlocked,
    NoResultProduced,
    NoSourceAssets,
    OperationCancelled,
    TransportError,
)
from flowstate.models import AnimationConfig, AssetKind, GeneratedAsset
from flowstate.utils.cancellation import CancellationToken


def _fail_flexible(text):
    return NoResultProduced("empty") if text.startswith("MODE: FLEXIBLE") else None


class TestBatchRun:
    """Test a generation round."""

    def test_default_round_produces_full_suite(self, sources):
        client = FakeGenerationClient()
        store = AssetStore()
        result = asyncio.run(build_orchestrator(client).run(sources, "default", store=store))

        assert [a.label for a in result.assets] == [
            "Strict Flat Lay", "Strict 3D Mockup", "Flexible Photo", "Ecommerce Mockup", "Luxury Photo", "Video",
        ]
        assert result.failures == []
        assert len(store) == 6
        assert len({a.source_task_id for a in result.assets}) == 6

    def test_one_image_failure_is_isolated(self, sources):
        """1 of 5 image tasks fails: 4 images + the video survive, nothing raises."""
        client = FakeGenerationClient(image_error=_fail_flexible)
        result = asyncio.run(build_orchestrator(client).run(sources, "default"))

        images = [a for a in result.assets if a.kind is AssetKind.IMAGE]
        assert len(images) == 4
        assert len(result.failures) == 1
        assert result.missing_labels == ["Flexible Photo"]
        assert result.failures[0].error_type == "NoResultProduced"

    def test_unexpected_error_is_isolated(self, sources):
        """An error outside the taxonomy fails its own task only."""
        def fail_flat_lay(text):
            return RuntimeError("unexpected sdk parse error") if "TASK: FLAT LAY" in text else None

        store = AssetStore()
        client = FakeGenerationClient(image_error=fail_flat_lay)
        result = asyncio.run(build_orchestrator(client).run(sources, "default", store=store))

        assert len(result.assets) == 5
        assert result.missing_labels == ["Strict Flat Lay"]
        assert result.failures[0].error_type == "RuntimeError"
        assert "unexpected sdk parse error" in result.failures[0].message
        assert len(store) == 5

    def test_images_receive_every_source_in_order(self, sources):
        client = FakeGenerationClient()
        asyncio.run(build_orchestrator(client).run(sources, "strict"))

        for _, images in client.image_calls:
            assert [p.data for p in images] == [s.data for s in sources]

    def test_video_uses_primary_source(self, sources):
        client = FakeGenerationClient()
        asyncio.run(build_orchestrator(client).run(sources, "3d-mockup"))

        images_by_job = [job["image"].data for job in client.video_jobs]
        assert sorted(images_by_job) == sorted([sources[0].data, sources[1].data])

    def test_video_exhaustion_becomes_warning(self, sources):
        client = FakeGenerationClient(video_attempts=["720", "720", "720"])
        result = asyncio.run(build_orchestrator(client).run(sources, "ecommerce"))

        assert [a.label for a in result.assets] == ["Ecommerce Flat Lay", "Ecommerce Mockup", "Ecommerce Photo"]
        assert result.missing_labels == ["Ecommerce Video"]
        assert result.failures[0].error_type == "GenerationExhausted"
        assert len(result.warnings) == 1 and "Ecommerce Video" in result.warnings[0]

    def test_blocked_image_is_recorded(self, sources):
        client = FakeGenerationClient(image_error=lambda text: GenerationBlocked("policy"))
        result = asyncio.run(build_orchestrator(client).run(sources, "strict"))
        assert result.assets == []
        assert [f.error_type for f in result.failures] == ["GenerationBlocked", "GenerationBlocked"]

    def test_no_sources_rejected_before_any_work(self):
        client = FakeGenerationClient()
        store = AssetStore()
        with pytest.raises(NoSourceAssets):
            asyncio.run(build_orchestrator(client).run([], "default", store=store))
        assert client.image_calls == []

    def test_unsupported_aspect_ratio_rejected(self, sources):
        with pytest.raises(ValueError):
            asyncio.run(build_orchestrator(FakeGenerationClient()).run(sources, "default", aspect_ratio="1:1"))

    def test_rounds_replace_rather_than_accumulate(self, sources):
        client = FakeGenerationClient()
        orchestrator = build_orchestrator(client)
        store = AssetStore()

        first = asyncio.run(orchestrator.run(sources, "strict", store=store))
        store.select(first.assets[0].id)
        second = asyncio.run(orchestrator.run(sources, "strict", store=store))

        assert len(store) == 2
        assert [a.id for a in store.all()] == [a.id for a in second.assets]
        assert store.selected() == []

    def test_progress_events(self, sources):
        events = []
        asyncio.run(build_orchestrator(FakeGenerationClient()).run(sources, "ecommerce", on_progress=events.append))

        stages = [e.stage for e in events]
        assert stages.count("started") == 4
        assert stages.count("completed") == 4
        assert any(e.stage == "attempt" and e.attempt == 1 and e.max_attempts == 3 for e in events)


class TestImageRetry:
    """Test optional retry for image tasks."""

    def test_images_not_retried_by_default(self, sources):
        calls = []

        def flaky(text):
            calls.append(text)
            return TransportError("503") if len(calls) == 1 else None

        client = FakeGenerationClient(image_error=flaky)
        result = asyncio.run(build_orchestrator(client).run(sources, "strict"))
        assert len(result.assets) == 1
        assert len(client.image_calls) == 2

    def test_configured_retry_recovers_transport_errors(self, sources):
        calls = []

        def flaky(text):
            calls.append(text)
            return TransportError("503") if len(calls) == 1 else None

        client = FakeGenerationClient(image_error=flaky)
        orchestrator = build_orchestrator(client, image_retry=RetryPolicy(max_attempts=2))
        result = asyncio.run(orchestrator.run(sources, "strict"))
        assert len(result.assets) == 2
        assert len(client.image_calls) == 3

    def test_blocks_never_retried(self, sources):
        client = FakeGenerationClient(image_error=lambda text: GenerationBlocked("policy"))
        orchestrator = build_orchestrator(client, image_retry=RetryPolicy(max_attempts=3))
        asyncio.run(orchestrator.run(sources, "strict"))
        assert len(client.image_calls) == 2


class TestCredentialRefresh:
    """Test auth failure handling."""

    def test_without_refresher_sets_needs_reauth(self, sources):
        client = FakeGenerationClient(auth_failures=1)
        result = asyncio.run(build_orchestrator(client).run(sources, "strict"))
        assert result.needs_reauth
        assert [f.error_type for f in result.failures] == ["AuthRequired"]
        assert len(result.assets) == 1

    def test_refresh_once_then_retry(self, sources):
        refreshes = []

        async def refresher():
            refreshes.append(1)

        client = FakeGenerationClient(auth_failures=2)
        result = asyncio.run(build_orchestrator(client, credential_refresher=refresher).run(sources, "strict"))
        assert len(result.assets) == 2
        assert not result.needs_reauth
        assert refreshes == [1]

    def test_failed_refresh_records_failure(self, sources):
        async def refresher():
            raise AuthRequired("user declined")

        client = FakeGenerationClient(auth_failures=1)
        result = asyncio.run(build_orchestrator(client, credential_refresher=refresher).run(sources, "strict"))
        assert result.needs_reauth
        assert len(result.assets) == 1


class TestCancellation:
    """Test cancelling a round."""

    def test_cancel_aborts_round(self, sources):
        client = FakeGenerationClient(pending_polls=10 ** 6)
        store = AssetStore()
        orchestrator = build_orchestrator(client)

        async def scenario():
            token = CancellationToken()
            run = asyncio.ensure_future(orchestrator.run(sources, "ecommerce", store=store, cancel_token=token))
            await asyncio.sleep(0.05)
            token.cancel()
            with pytest.raises(OperationCancelled):
                await run

        asyncio.run(scenario())
        # images finished before the cancel; the video never did
        assert all(a.kind is AssetKind.IMAGE for a in store.all())


class TestAnimation:
    """Test the animation sub-run."""

    def _selected(self, png_bytes):
        return GeneratedAsset(
            id="img_1", kind=AssetKind.IMAGE, label="Strict Flat Lay", mime_type="image/png",
            source_task_id="round-00", prompt="flat lay", data=png_bytes,
        )

    def test_static_and_video(self, png_bytes):
        client = FakeGenerationClient()
        result = asyncio.run(build_orchestrator(client).run_animation(self._selected(png_bytes), AnimationConfig()))

        assert [a.label for a in result.assets] == ["Static Mockup", "Animated Mockup"]
        assert client.video_jobs[0]["aspect_ratio"] == "9:16"
        assert "Action: 360 Spin." in client.video_jobs[0]["text"]
        assert client.video_jobs[0]["image"].data == png_bytes

    def test_video_failure_keeps_static(self, png_bytes):
        client = FakeGenerationClient(video_attempts=["720", "720", "720"])
        result = asyncio.run(build_orchestrator(client).run_animation(self._selected(png_bytes), AnimationConfig()))
        assert [a.label for a in result.assets] == ["Static Mockup"]
        assert result.missing_labels == ["Animated Mockup"]

    def test_rejects_video_asset(self):
        video = GeneratedAsset(
            id="vid_1", kind=AssetKind.VIDEO, label="Video", mime_type="video/mp4",
            source_task_id="round-05", prompt="turntable", data=b"video-1080",
        )
        with pytest.raises(ValueError):
            asyncio.run(build_orchestrator(FakeGenerationClient()).run_animation(video, AnimationConfig()))
