"""Phase 1: draft one image prompt per shot."""

from __future__ import annotations

from ..storyboard import StoryboardEngine
from ..types import RunState
from .base import BaseNode


class DraftPrompts(BaseNode):
    """Asks the language model for ``shot_count`` image prompts; failures abort the run."""

    def __init__(self, run_id: str, logger, engine: StoryboardEngine) -> None:
        super().__init__(name="DraftPrompts", run_id=run_id, logger=logger)
        self._engine = engine

    def run(self, state: RunState) -> RunState:
        self.log_prompt(self._engine.drafting_prompt())
        prompts = self._engine.draft_prompts()
        self.log_response({"image_prompts": prompts})
        self.log_event(f"drafted {len(prompts)} shots")
        return state
