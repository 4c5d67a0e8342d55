"""Phase 3: write a video prompt for every visible shot."""

from __future__ import annotations

from ..storyboard import StoryboardEngine
from ..types import RunState
from .base import BaseNode


class SynthesizeVideoPrompts(BaseNode):
    """Describes the motion from each shot to the next visible one.

    The last visible shot gets a closing-shot prompt instead of a transition.
    """

    def __init__(self, run_id: str, logger, engine: StoryboardEngine) -> None:
        super().__init__(name="SynthesizeVideoPrompts", run_id=run_id, logger=logger)
        self._engine = engine

    def run(self, state: RunState) -> RunState:
        project = self._engine.project
        self.log_prompt(f"Writing video prompts for {len(project.visible_shots())} shots.")
        report = self._engine.synthesize_video_prompts()
        state.reports.append(report)
        self.log_response(
            {
                "summary": report.summary(),
                "video_prompts": [
                    {
                        "ordinal": shot.ordinal,
                        "status": shot.status,
                        "terminal": project.is_terminal(index),
                        "video_prompt": shot.video_prompt,
                    }
                    for index, shot in enumerate(project.shots)
                    if not shot.is_deleted
                ],
            }
        )
        self.log_report(report)
        return state
