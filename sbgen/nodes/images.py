"""Phase 2: render every shot image from its prompt and the tagged references."""

from __future__ import annotations

from ..storyboard import StoryboardEngine
from ..types import RunState
from .base import BaseNode


class SynthesizeImages(BaseNode):
    def __init__(self, run_id: str, logger, engine: StoryboardEngine) -> None:
        super().__init__(name="SynthesizeImages", run_id=run_id, logger=logger)
        self._engine = engine

    def run(self, state: RunState) -> RunState:
        """Generate images shot by shot; a failed shot keeps an empty image."""
        project = self._engine.project
        self.log_prompt(
            "\n\n".join(
                f"# Shot {shot.ordinal}\n{self._engine.compose_image_prompt(shot.image_prompt)}"
                for shot in project.visible_shots()
            )
        )
        report = self._engine.synthesize_images()
        state.reports.append(report)
        self.log_response(
            {
                "summary": report.summary(),
                "failed": report.failed,
                "shots": [
                    {
                        "ordinal": shot.ordinal,
                        "image_prompt": shot.image_prompt,
                        "image_bytes": len(shot.image) if shot.image is not None else 0,
                    }
                    for shot in project.shots
                ],
            }
        )
        self.log_report(report)
        return state
