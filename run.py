"""Command-line entry point for the storyboard generator."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace

from sbgen.config import PipelineConfig, ProviderConfig
from sbgen.modes import GenerationMode
from sbgen.pipeline import StoryboardGenerator
from sbgen.types import ASPECT_RATIOS


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Generate a storyboard from reference images and an outline.")
    parser.add_argument("outline", help="Story outline for the storyboard.")
    parser.add_argument(
        "image_paths",
        nargs="*",
        help="Paths to reference images (tagged Character 1, Character 2, ...).",
    )
    parser.add_argument("--shots", type=int, default=6, help="Number of shots to draft.")
    parser.add_argument("--aspect-ratio", choices=ASPECT_RATIOS, default="16:9")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in GenerationMode],
        default=GenerationMode.CHARACTER_CLOSEUP.value,
        help="Generation mode controlling drafting and image style.",
    )
    parser.add_argument("--face-priority", action="store_true", help="Prefer close-ups of faces.")
    parser.add_argument(
        "--independent-scenes",
        action="store_true",
        help="Treat every shot as a self-contained scene.",
    )
    parser.add_argument("--render-videos", action="store_true", help="Render and merge transition videos.")
    parser.add_argument("--settings", help="Provider settings JSON to import before the run.")
    parser.add_argument("--save", help="Write the resulting project archive to this path.")
    parser.add_argument("--live", action="store_true", help="Call the configured providers instead of mocks.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point used by ``python run.py``."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    config = PipelineConfig.from_env()
    if args.settings:
        config = replace(config, providers=ProviderConfig.load_json(args.settings))
    if args.live:
        config = replace(config, enable_mock_generation=False)

    pipeline = StoryboardGenerator(config)
    state = pipeline.run(
        outline=args.outline,
        shot_count=args.shots,
        image_paths=args.image_paths,
        aspect_ratio=args.aspect_ratio,
        mode=args.mode,
        face_priority=args.face_priority,
        independent_scenes=args.independent_scenes,
        render_videos=args.render_videos,
    )
    print("Generation completed.")
    for report in state.reports:
        print(f"  {report.summary()}")
    print(f"Final video asset: {state.final_video or 'N/A'}")
    if args.save:
        print(f"Project saved to {pipeline.save_project(args.save)}")
    print(f"Run logs stored under {config.runs_dir}/")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
