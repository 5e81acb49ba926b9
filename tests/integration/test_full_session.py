"""
Integration tests for a complete Flowstate session.
"""

import json
import asyncio
import pytest
from pathlib import Path

from conftest import FakeGenerationClient, build_orchestrator, fake_probe, make_png_bytes
from flowstate.config import EngineConfig, PollerConfig
from flowstate.models import AssetKind, SubjectCategory
from flowstate.steps.step5_workflow import WorkflowStateMachine, WorkflowStep
from flowstate.steps.step6_history import HistoryStore


class TestFullSessionIntegration:
    """Upload → generate → select → animate → place, with history."""

    @pytest.fixture
    def session_setup(self):
        client = FakeGenerationClient(video_attempts=["720", "1080", "1080", "1080"])
        config = EngineConfig(poller=PollerConfig(poll_interval_seconds=0))
        history = HistoryStore("sqlite://")
        machine = WorkflowStateMachine(build_orchestrator(client, config=config), history=history, config=config)
        return client, machine, history

    def test_3d_lab_session(self, session_setup, sources):
        client, machine, history = session_setup

        machine.upload(sources)
        machine.set_mode("3d-mockup")
        result = asyncio.run(machine.generate(category=SubjectCategory.SOFT_GOODS, aspect_ratio="16:9"))

        assert machine.step is WorkflowStep.SELECTING
        assert [a.kind for a in result.assets] == [AssetKind.IMAGE, AssetKind.IMAGE, AssetKind.VIDEO, AssetKind.VIDEO]
        assert result.failures == []
        # one of the two videos needed a second job after a 720p result
        assert sorted(a.metadata["attempts"] for a in result.assets if a.kind is AssetKind.VIDEO) == [1, 2]
        assert all(job["aspect_ratio"] == "16:9" for job in client.video_jobs[:3])

        hero = result.assets[0]
        machine.select(hero.id)
        machine.advance()
        machine.configure_animation(preset="Windy")
        animation = asyncio.run(machine.animate(category=SubjectCategory.SOFT_GOODS))

        assert machine.step is WorkflowStep.PLACING
        assert [a.label for a in animation.assets] == ["Static Mockup", "Animated Mockup"]
        assert "Action: Windy." in client.video_jobs[-1]["text"]
        assert client.video_jobs[-1]["image"].data == hero.data

        records = history.list()
        assert [r.kind for r in records] == ["animation", "generation"]
        assert records[1].mode == "3d-mockup"
        assert len(records[1].asset_refs) == 4
        assert records[0].inputs_summary["animation"]["preset"] == "Windy"

        machine.reset()
        assert machine.step is WorkflowStep.UPLOAD
        assert machine.session.generated_assets == []


class TestRunCli:
    """End-to-end run through the console entry point with a fake backend."""

    def test_flowstate_run(self, temp_dir, monkeypatch):
        from flowstate import cli
        from flowstate.steps import step3_video_poller

        input_path = temp_dir / "shirt.png"
        input_path.write_bytes(make_png_bytes())
        out_dir = temp_dir / "out"

        monkeypatch.setattr(cli, "GeminiGenerationClient", lambda **kwargs: FakeGenerationClient())
        monkeypatch.setattr(step3_video_poller, "probe_video_dimensions", fake_probe)
        monkeypatch.setenv("FLOWSTATE_POLL_INTERVAL", "0")
        monkeypatch.setenv("FLOWSTATE_HISTORY_DB", f"sqlite:///{temp_dir / 'history.db'}")
        monkeypatch.setattr("sys.argv", [
            "flowstate-run", "--input", str(input_path), "--mode", "strict",
            "--out", str(out_dir), "--run-id", "run_test", "--animate", "--preset", "Arm Flex",
        ])

        cli.flowstate_run()

        summary = json.loads((out_dir / "run_test" / "run_summary.json").read_text())
        assert summary["step"] == "placing"
        assert [a["label"] for a in summary["generation"]["assets"]] == ["Strict Flat Lay", "Strict 3D Mockup"]
        assert [a["label"] for a in summary["animation"]["assets"]] == ["Static Mockup", "Animated Mockup"]
        for entry in summary["generation"]["saved"] + summary["animation"]["saved"]:
            assert Path(entry["path"]).exists()

        assert len(HistoryStore(f"sqlite:///{temp_dir / 'history.db'}").list()) == 2
