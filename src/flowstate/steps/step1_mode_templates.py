#!/usr/bin/env python3
"""
step1_mode_templates.py - Step 1: Mode Template Engine
======================================================

Expand a generation mode into a deterministic, ordered list of task
templates. Each template carries its asset kind, a display label and the
full instruction text sent to the backend.

Instruction sections:
1. Mode header (style of the sub-mode that owns the task)
2. Phase body (flat lay, 3D mockup, studio photo, turntable or action video)
3. Fidelity rules (pixel-exact digital twin, no invented branding)
4. Category rules (ghost mannequin for soft goods, floating for hard goods)
5. Framing rules (no cropping, whole subject, centred)
6. Forbidden edits
7. Quality line

Expansion is pure: the same (mode, source_count, category) always yields
the same templates in the same order.

Dependencies: PyYAML
"""

from __future__ import annotations

import json
import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..models import (
    ANIMATION_PRESETS,
    AnimationConfig,
    Mode,
    SubjectCategory,
    TaskPhase,
    TaskTemplate,
)

logger = logging.getLogger("flowstate.templates")

# ---------------------------------------------------------------------------
# Mode catalogue
# ---------------------------------------------------------------------------

# (style, phase, label, detail, primary_index)
_PlanEntry = Tuple[str, TaskPhase, str, str, int]

_FRONT_VIEW = "Front 3/4 Perspective"
_BACK_VIEW = "Back/Side Detail View"

_MODE_DESCRIPTIONS: Dict[Mode, str] = {
    Mode.DEFAULT: "Full suite: 5 images across every style, 1 video",
    Mode.STRICT: "1 Flat Lay, 1 Static 3D Mockup",
    Mode.FLEXIBLE: "2 Creative Photos, 2 Videos",
    Mode.ECOMMERCE: "1 Flat, 1 Mockup, 1 Photo, 1 Video",
    Mode.LUXURY: "1 Flat, 1 Mockup, 1 Photo, 1 Video",
    Mode.COMPLEX: "1 Flat, 1 Mockup, 1 Photo, 1 Video",
    Mode.MOCKUP_3D: "2 Digital Twin Mockups, 360 Turntable (+ multi-angle video with 2+ references)",
}


def _styled_suite(mode: Mode) -> List[_PlanEntry]:
    title = mode.value.capitalize()
    return [
        (mode.value, TaskPhase.FLAT_LAY, f"{title} Flat Lay", "", 0),
        (mode.value, TaskPhase.MOCKUP_3D, f"{title} Mockup", _FRONT_VIEW, 0),
        (mode.value, TaskPhase.STUDIO_PHOTO, f"{title} Photo", "Hero", 0),
        (mode.value, TaskPhase.VIDEO_TURNTABLE, f"{title} Video", "", 0),
    ]


def _plan_for(mode: Mode, source_count: int) -> List[_PlanEntry]:
    if mode is Mode.DEFAULT:
        return [
            ("strict", TaskPhase.FLAT_LAY, "Strict Flat Lay", "", 0),
            ("strict", TaskPhase.MOCKUP_3D, "Strict 3D Mockup", _FRONT_VIEW, 0),
            ("flexible", TaskPhase.STUDIO_PHOTO, "Flexible Photo", "Hero", 0),
            ("ecommerce", TaskPhase.MOCKUP_3D, "Ecommerce Mockup", _FRONT_VIEW, 0),
            ("luxury", TaskPhase.STUDIO_PHOTO, "Luxury Photo", "Hero", 0),
            ("default", TaskPhase.VIDEO_TURNTABLE, "Video", "", 0),
        ]
    if mode is Mode.STRICT:
        return [
            ("strict", TaskPhase.FLAT_LAY, "Strict Flat Lay", "", 0),
            ("strict", TaskPhase.MOCKUP_3D, "Strict 3D Mockup", _FRONT_VIEW, 0),
        ]
    if mode is Mode.FLEXIBLE:
        return [
            ("flexible", TaskPhase.STUDIO_PHOTO, "Flexible Photo (Hero)", "Hero", 0),
            ("flexible", TaskPhase.STUDIO_PHOTO, "Flexible Photo (Detail)", "Detail", 0),
            ("flexible", TaskPhase.VIDEO_TURNTABLE, "Flexible Video (Turntable)", "", 0),
            ("flexible", TaskPhase.VIDEO_ACTION, "Flexible Video (Action)", "natural handheld reveal", 0),
        ]
    if mode is Mode.MOCKUP_3D:
        plan = [
            ("3d-mockup", TaskPhase.MOCKUP_3D, "3D Lab Mockup (Front 3/4)", _FRONT_VIEW, 0),
            ("3d-mockup", TaskPhase.MOCKUP_3D, "3D Lab Mockup (Back/Side)", _BACK_VIEW, 0),
            ("3d-mockup", TaskPhase.VIDEO_TURNTABLE, "3D Lab Turntable", "", 0),
        ]
        if source_count >= 2:
            plan.append(("3d-mockup", TaskPhase.VIDEO_ACTION, "3D Lab Video (Multi-Angle)", "multi-angle", 1))
        return plan
    return _styled_suite(mode)


def available_modes() -> List[Dict[str, str]]:
    return [{"mode": m.value, "description": _MODE_DESCRIPTIONS[m]} for m in Mode]


# ---------------------------------------------------------------------------
# Template engine
# ---------------------------------------------------------------------------

class ModeTemplateEngine:
    """
    Builds instruction text for every task a mode produces, with fidelity,
    category and framing guardrails on every task.
    """

    def __init__(self, style_config_path: Optional[Path] = None):
        if style_config_path and Path(style_config_path).exists():
            with open(style_config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            self.style_config = self._default_style_config()
            for key, value in loaded.items():
                if isinstance(value, dict) and isinstance(self.style_config.get(key), dict):
                    self.style_config[key].update(value)
                else:
                    self.style_config[key] = value
            logger.info(f"Loaded style config from {style_config_path}")
        else:
            self.style_config = self._default_style_config()

    def expand(
        self,
        mode: Any,
        source_count: int,
        category: SubjectCategory = SubjectCategory.AUTO,
    ) -> List[TaskTemplate]:
        """Return the ordered task templates for `mode`."""
        mode = Mode.parse(mode)
        category = SubjectCategory(category)
        if source_count < 0:
            raise ValueError("source_count must be >= 0")

        templates = []
        for index, (style, phase, label, detail, primary) in enumerate(_plan_for(mode, source_count)):
            text = self._compose(style, phase, detail, category)
            templates.append(TaskTemplate(
                template_id=f"{mode.value}:{index:02d}:{style}-{phase.value}",
                phase=phase,
                label=label,
                instruction_text=text,
                header_mode=style,
                primary_index=primary,
            ))

        logger.debug(f"Expanded mode '{mode.value}' into {len(templates)} tasks")
        return templates

    def build_animation_templates(
        self,
        config: AnimationConfig,
        category: SubjectCategory = SubjectCategory.AUTO,
    ) -> List[TaskTemplate]:
        """Templates for the animation sub-run: static hero mockup and/or animated video."""
        config.validate()
        category = SubjectCategory(category)
        templates = []
        if config.generate_static:
            templates.append(TaskTemplate(
                template_id="animation:00:static-3d-mockup",
                phase=TaskPhase.MOCKUP_3D,
                label="Static Mockup",
                instruction_text=self._compose("3d-mockup", TaskPhase.MOCKUP_3D, _FRONT_VIEW, category),
                header_mode="3d-mockup",
            ))
        if config.generate_video:
            sections = [
                "Hyper realistic 3D mockup video.",
                f"Action: {config.action}.",
                "Rules: CLOTHING=GHOST MANNEQUIN. ACCESSORY=FLOATING.",
                self._build_fidelity_section(),
                self._build_category_section(category),
                self._build_framing_section(),
                self._build_quality_section(video=True),
            ]
            templates.append(TaskTemplate(
                template_id="animation:01:video-action",
                phase=TaskPhase.VIDEO_ACTION,
                label="Animated Mockup",
                instruction_text="\n\n".join(sections),
                header_mode="animation",
            ))
        return templates

    # -- composition --------------------------------------------------------

    def _compose(self, style: str, phase: TaskPhase, detail: str, category: SubjectCategory) -> str:
        sections = [
            self._build_header_section(style),
            self._build_phase_section(phase, detail),
            self._build_fidelity_section(),
            self._build_category_section(category),
            self._build_framing_section(),
            self._build_forbidden_section(),
            self._build_quality_section(video=phase.kind.value == "video"),
        ]
        return "\n\n".join(sections)

    def _build_header_section(self, style: str) -> str:
        headers = self.style_config["mode_headers"]
        return headers.get(style, headers["default"])

    def _build_phase_section(self, phase: TaskPhase, detail: str) -> str:
        if phase is TaskPhase.FLAT_LAY:
            return """TASK: FLAT LAY
Top-down orthographic flat lay of the exact product on a seamless background.
Even shadowless lighting, product laid naturally flat, true-to-life colour."""
        if phase is TaskPhase.MOCKUP_3D:
            return f"""TASK: STATIC 3D MOCKUP
VIEW: {detail or _FRONT_VIEW}
Photorealistic volumetric 3D reconstruction of the product on pure white #FFFFFF.
Soft studio key light with a subtle contact shadow only."""
        if phase is TaskPhase.STUDIO_PHOTO:
            shot = "close detail shot of materials and construction" if detail == "Detail" else "hero shot"
            return f"""TASK: STUDIO PHOTO
SHOT: {shot}
Professional studio product photograph with controlled lighting and a clean set.
The set may change; the product may not."""
        if phase is TaskPhase.VIDEO_TURNTABLE:
            return """TASK: VIDEO (TURNTABLE)
A high-fidelity 360-degree turntable loop of the product.
Clean studio lighting, smooth constant rotation, every angle and detail shown."""
        return f"""TASK: VIDEO (ACTION)
ACTION: {detail or 'multi-angle'}
Hyper realistic product video with smooth camera motion and stable exposure."""

    def _build_fidelity_section(self) -> str:
        return """FIDELITY:
- Pixel-exact digital twin of the reference: logos, text, prints and geometry unchanged
- Zero hallucinations: no invented branding, labels, hardware or patterns
- DO NOT ALTER THE PRODUCT"""

    def _build_category_section(self, category: SubjectCategory) -> str:
        soft = "Soft goods (clothing): GHOST MANNEQUIN. Hollow worn form with natural volume, no visible mannequin, body or support."
        hard = "Hard goods (accessories, watches, bags): FLOATING. Rigid object suspended in space, dial, engravings and markings preserved exactly."
        if category is SubjectCategory.SOFT_GOODS:
            return f"CATEGORY:\n- {soft}"
        if category is SubjectCategory.HARD_GOODS:
            return f"CATEGORY:\n- {hard}"
        return f"CATEGORY (apply the rule that matches the product):\n- IF {soft}\n- IF {hard}"

    def _build_framing_section(self) -> str:
        return """FRAMING:
- NO CROPPING: the whole subject is visible inside the frame
- Subject centred with even margins on every side"""

    def _build_forbidden_section(self) -> str:
        edits = self.style_config.get("forbidden_edits", [])
        return "FORBIDDEN EDITS:\n" + "\n".join(f"- {e}" for e in edits)

    def _build_quality_section(self, video: bool) -> str:
        key = "video_quality_line" if video else "quality_line"
        return f"QUALITY: {self.style_config[key]}"

    def _default_style_config(self) -> Dict[str, Any]:
        return {
            "mode_headers": {
                "default": "MODE: DEFAULT. Balanced product suite.",
                "strict": "MODE: STRICT. Catalogue-exact reproduction. Pure white #FFFFFF background, no props, no styling liberties.",
                "flexible": "MODE: FLEXIBLE. Creative set and lighting around an unchanged product.",
                "ecommerce": "MODE: ECOMMERCE. Marketplace-ready presentation on a neutral seamless background with soft even light.",
                "luxury": "MODE: LUXURY. Premium editorial lighting, rich tonal depth, refined minimal set.",
                "complex": "MODE: COMPLEX. Multi-part product; every component and its placement preserved.",
                "3d-mockup": "MODE: 3D LAB. 100% accurate 3D Digital Twin on pure white #FFFFFF.",
            },
            "forbidden_edits": [
                "Do not add, remove or relocate logos, labels or text",
                "Do not change colours, materials or proportions",
                "Do not add people, hands or props touching the product",
            ],
            "quality_line": "Photorealistic, 8k resolution, highly detailed, sharp focus.",
            "video_quality_line": "1080p or higher, photorealistic, smooth motion, no flicker.",
        }


# ---------------------------------------------------------------------------
# CLI Interface
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Step 1: Mode Template Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--mode", default="default", choices=[m.value for m in Mode], help="Generation mode")
    parser.add_argument("--sources", type=int, default=1, help="Number of source images")
    parser.add_argument("--category", default="auto", choices=[c.value for c in SubjectCategory],
                        help="Subject category")
    parser.add_argument("--style-config", help="Optional YAML style config")
    parser.add_argument("--animation-preset", choices=list(ANIMATION_PRESETS),
                        help="Also emit animation templates for this preset")
    parser.add_argument("--out", default="./step1", help="Output directory")
    args = parser.parse_args()

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    engine = ModeTemplateEngine(Path(args.style_config) if args.style_config else None)
    category = SubjectCategory(args.category)
    templates = engine.expand(args.mode, args.sources, category)
    if args.animation_preset:
        templates += engine.build_animation_templates(AnimationConfig(preset=args.animation_preset), category)

    manifest = []
    for i, t in enumerate(templates):
        prompt_path = out_dir / f"task_{i:02d}.txt"
        prompt_path.write_text(t.instruction_text, encoding="utf-8")
        manifest.append({
            "template_id": t.template_id,
            "kind": t.kind.value,
            "phase": t.phase.value,
            "label": t.label,
            "primary_index": t.primary_index,
            "prompt_file": prompt_path.name,
        })

    with open(out_dir / "tasks.json", "w", encoding="utf-8") as f:
        json.dump({"mode": args.mode, "sources": args.sources, "tasks": manifest}, f, indent=2)

    images = sum(1 for t in templates if t.kind.value == "image")
    print(f"✅ Templates written to: {out_dir}")
    print(f"🧩 Mode: {args.mode} → {images} image tasks, {len(templates) - images} video tasks")


if __name__ == "__main__":
    main()
