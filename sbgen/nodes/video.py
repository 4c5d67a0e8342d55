"""Nodes rendering shot videos and merging them into the final cut."""

from __future__ import annotations

from dataclasses import asdict

from ..assembly import VideoAssembler
from ..types import RunState
from .base import BaseNode


class GenerateShotVideos(BaseNode):
    """Renders a transition clip for every visible shot."""

    def __init__(self, run_id: str, logger, assembler: VideoAssembler) -> None:
        super().__init__(name="GenerateShotVideos", run_id=run_id, logger=logger)
        self._assembler = assembler

    def run(self, state: RunState) -> RunState:
        targets = self._assembler.targets("all")
        self.log_prompt(f"Submitting {len(targets)} video jobs.")
        report = self._assembler.generate_videos("all")
        state.reports.append(report)
        project = self._assembler.project
        self.log_response(
            {
                "summary": report.summary(),
                "failed": report.failed,
                "videos": [asdict(asset) for _, asset in sorted(project.videos.items())],
            }
        )
        self.log_report(report)
        return state


class AssembleVideo(BaseNode):
    """Concatenates the shot videos into a single deliverable."""

    def __init__(self, run_id: str, logger, assembler: VideoAssembler) -> None:
        super().__init__(name="AssembleVideo", run_id=run_id, logger=logger)
        self._assembler = assembler

    def run(self, state: RunState) -> RunState:
        if not self._assembler.project.videos:
            self.log_event("no shot videos rendered; skipping merge")
            return state
        self.log_prompt("Concatenating shot videos into final deliverable.")
        output_path = self._assembler.merge_videos(self.run_id)
        state.final_video = str(output_path)
        self.log_response({"final_video": state.final_video})
        return state
