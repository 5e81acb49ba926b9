#!/usr/bin/env python3
"""
CLI entry point for the Flowstate Generation Orchestrator.

Provides command-line interfaces for the template engine, the history
store and a complete end-to-end session run.
"""

import asyncio
import argparse
import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import List

from .config import load_config
from .errors import FlowstateError
from .models import ANIMATION_PRESETS, ASPECT_RATIOS, GeneratedAsset, Mode, SourceAsset, SubjectCategory
from .steps.step1_mode_templates import ModeTemplateEngine
from .steps.step1_mode_templates import main as step1_main
from .steps.step2_generation_client import GeminiGenerationClient
from .steps.step4_batch_orchestrator import BatchOrchestrator
from .steps.step5_workflow import WorkflowStateMachine
from .steps.step6_history import HistoryStore
from .steps.step6_history import main as step6_main
from .utils.media import extension_for


def flowstate_templates():
    """CLI entry point for Step 1: Mode Template Engine."""
    step1_main()


def flowstate_history():
    """CLI entry point for Step 6: Generation History."""
    step6_main()


def _save_assets(assets: List[GeneratedAsset], out_dir: Path) -> List[dict]:
    out_dir.mkdir(parents=True, exist_ok=True)
    saved = []
    for i, asset in enumerate(assets):
        entry = asset.to_dict()
        if asset.data is not None:
            slug = asset.label.lower().replace(" ", "_").replace("/", "-").replace("(", "").replace(")", "")
            path = out_dir / f"{i:02d}_{slug}{extension_for(asset.mime_type)}"
            path.write_bytes(asset.data)
            entry["path"] = str(path)
        saved.append(entry)
    return saved


def flowstate_run():
    """Run a complete session: upload → generate → select → animate."""
    parser = argparse.ArgumentParser(
        description="Flowstate Generation Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Default suite from one product photo
    flowstate-run --input shirt.jpg

    # 3D lab mode from two references, then animate the first result
    flowstate-run --input front.jpg --input back.jpg --mode 3d-mockup --animate

    # Luxury suite for a watch, vertical video
    flowstate-run --input watch.png --mode luxury --category hard --aspect-ratio 9:16
        """
    )

    parser.add_argument("--input", action="append", required=True, help="Source image path (repeatable)")
    parser.add_argument("--mode", default=None, choices=[m.value for m in Mode], help="Generation mode")
    parser.add_argument("--category", default="auto", choices=[c.value for c in SubjectCategory],
                        help="Subject category")
    parser.add_argument("--aspect-ratio", choices=list(ASPECT_RATIOS), help="Video aspect ratio")
    parser.add_argument("--out", default="./flowstate_output", help="Output directory")
    parser.add_argument("--config", help="Engine configuration YAML file")
    parser.add_argument("--run-id", help="Custom run ID (auto-generated if not provided)")

    parser.add_argument("--animate", action="store_true", help="Animate the selected asset after generation")
    parser.add_argument("--select", type=int, action="append",
                        help="Index of a generated image to select (repeatable, default: first image)")
    parser.add_argument("--preset", choices=list(ANIMATION_PRESETS), default="360 Spin", help="Animation preset")
    parser.add_argument("--custom-prompt", help="Custom animation action (overrides preset)")
    parser.add_argument("--no-static", action="store_true", help="Skip the static mockup in the animation step")

    parser.add_argument("--no-history", action="store_true", help="Do not record this run in history")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    run_id = args.run_id or f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{str(uuid.uuid4())[:8]}"

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger("flowstate.pipeline")

    config = load_config(args.config)
    out_dir = Path(args.out) / run_id
    out_dir.mkdir(parents=True, exist_ok=True)

    sources = []
    for path in args.input:
        source_path = Path(path)
        if not source_path.exists():
            raise FileNotFoundError(f"Input image not found: {source_path}")
        sources.append(SourceAsset.from_path(source_path))

    client = GeminiGenerationClient(api_key=config.api_key, models=config.models)
    orchestrator = BatchOrchestrator(
        client,
        templates=ModeTemplateEngine(Path(config.style_config_path) if config.style_config_path else None),
        config=config,
    )
    history = None if args.no_history else HistoryStore(config.history_db_url)
    workflow = WorkflowStateMachine(orchestrator, history=history, config=config)

    category = SubjectCategory(args.category)
    summary = {"run_id": run_id, "inputs": [str(p) for p in args.input]}
    start_time = time.time()

    async def _session():
        workflow.upload(sources)
        if args.mode:
            workflow.set_mode(args.mode)

        logger.info(f"Run {run_id}: generating '{workflow.session.mode.value}' suite")
        result = await workflow.generate(category=category, aspect_ratio=args.aspect_ratio)
        summary["generation"] = result.to_dict()
        summary["generation"]["saved"] = _save_assets(result.assets, out_dir / "generated")

        if not args.animate or not result.assets:
            return

        images = [a for a in workflow.session.generated_assets if a.kind.value == "image"]
        if not images:
            logger.warning("No generated images to animate")
            return
        for index in args.select or [0]:
            workflow.select(images[index].id)
        workflow.advance()
        workflow.configure_animation(
            preset=args.preset,
            custom_prompt=args.custom_prompt,
            aspect_ratio=args.aspect_ratio or workflow.session.animation_config.aspect_ratio,
            generate_static=not args.no_static,
        )
        animation = await workflow.animate(category=category)
        summary["animation"] = animation.to_dict()
        summary["animation"]["saved"] = _save_assets(animation.assets, out_dir / "animated")

    try:
        asyncio.run(_session())
    except FlowstateError as e:
        logger.error(f"Run {run_id} failed: {e}")
        raise

    summary["step"] = workflow.step.value
    summary["processing_time_seconds"] = round(time.time() - start_time, 2)
    summary_path = out_dir / "run_summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)

    generation = summary["generation"]
    print(f"✅ Run complete! Output saved to: {out_dir}")
    print(f"🧩 Mode: {generation['mode']}")
    print(f"🖼️  Assets: {len(generation['assets'])}")
    if generation["missing_labels"]:
        print(f"⚠️  Missing: {', '.join(generation['missing_labels'])}")
    for warning in generation["warnings"]:
        print(f"⚠️  {warning}")
    if generation["needs_reauth"]:
        print("🔑 Some tasks need re-authentication (set GEMINI_API_KEY)")
    if "animation" in summary:
        print(f"🎬 Animation outputs: {len(summary['animation']['assets'])}")
    print(f"⏱️  Processing Time: {summary['processing_time_seconds']:.1f}s")


if __name__ == "__main__":
    flowstate_run()
