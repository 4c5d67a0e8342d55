"""Pipeline orchestration and the per-shot operation surface of the storyboard generator."""

from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Sequence, TypedDict

from langchain_core.runnables import RunnableLambda
from langgraph.graph import END, START, StateGraph

from . import archive
from .assembly import VideoAssembler
from .config import PipelineConfig, ProviderConfig
from .errors import PipelineBusyError
from .modes import GenerationMode
from .nodes.base import Node
from .nodes.images import SynthesizeImages
from .nodes.prompts import DraftPrompts
from .nodes.transitions import SynthesizeVideoPrompts
from .nodes.video import AssembleVideo, GenerateShotVideos
from .services.base import Providers, build_providers
from .storyboard import StoryboardEngine
from .types import ASPECT_RATIOS, BatchReport, Project, ReferenceImage, RunState, VideoAsset
from .utils.files import read_binary
from .utils.run_logger import RunLogger


class GraphState(TypedDict):
    state: RunState


class StoryboardGenerator:
    """High-level facade exposing the full run and every per-shot operation.

    Only one operation runs at a time; starting another while one is in flight
    raises :class:`PipelineBusyError`.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        providers: Providers | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ) -> None:
        self.config = config or PipelineConfig.from_env()
        self.logger = RunLogger(base_dir=self.config.runs_dir)
        self.providers = providers or build_providers(self.config)
        self._sleep = sleep
        self._clock = clock
        self._busy = threading.Lock()
        self.session_id = self._new_run_id()
        self.project = Project()
        self._bind(self.project)

    # ------------------------------------------------------------------ wiring

    def _bind(self, project: Project) -> None:
        """Point the engine and assembler at ``project``."""
        self.project = project
        self.engine = StoryboardEngine(
            project,
            self.providers,
            sleep=self._sleep,
            crop_max_width=self.config.crop_max_width,
            notify=self._notify,
        )
        self.assembler = VideoAssembler(
            project,
            self.providers.video,
            outputs_dir=self.config.outputs_dir,
            resolution=self.config.providers.video.resolution,
            poll_interval_sec=self.config.poll_interval_sec,
            max_poll_attempts=self.config.max_poll_attempts,
            spacing_sec=self.config.video_spacing_sec,
            release_delay_sec=self.config.video_release_delay_sec,
            sleep=self._sleep,
            clock=self._clock,
            notify=self._notify,
        )

    def _notify(self, message: str) -> None:
        self.logger.log_event(self.session_id, "Storyboard", message)

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise PipelineBusyError(f"Cannot start {operation}: another operation is still running")
        try:
            yield
        finally:
            self._busy.release()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    # ------------------------------------------------------------------ project setup

    def new_project(
        self,
        *,
        outline: str,
        shot_count: int,
        aspect_ratio: str = "16:9",
        mode: str | GenerationMode = GenerationMode.CHARACTER_CLOSEUP,
        face_priority: bool = False,
        independent_scenes: bool = False,
        references: Sequence[ReferenceImage] | None = None,
    ) -> Project:
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"Aspect ratio must be one of {', '.join(ASPECT_RATIOS)}")
        if shot_count < 1:
            raise ValueError("shot_count must be at least 1")
        project = Project(
            references=list(references if references is not None else self.project.references),
            aspect_ratio=aspect_ratio,
            outline=outline,
            shot_count=shot_count,
            mode=GenerationMode.parse(mode),
            face_priority=face_priority,
            independent_scenes=independent_scenes,
        )
        self._bind(project)
        return project

    def add_reference(self, data: bytes, tag: str | None = None) -> ReferenceImage:
        return self.engine.add_reference(data, tag)

    def add_reference_file(self, path: str | Path, tag: str | None = None) -> ReferenceImage:
        return self.engine.add_reference(read_binary(path), tag)

    def rename_reference(self, reference_id: str, tag: str) -> None:
        self.engine.rename_reference(reference_id, tag)

    def remove_reference(self, reference_id: str) -> None:
        self.engine.remove_reference(reference_id)

    # ------------------------------------------------------------------ full run

    def run(
        self,
        *,
        outline: str,
        shot_count: int,
        image_paths: Iterable[str] = (),
        tags: Sequence[str] = (),
        aspect_ratio: str = "16:9",
        mode: str | GenerationMode = GenerationMode.CHARACTER_CLOSEUP,
        face_priority: bool = False,
        independent_scenes: bool = False,
        render_videos: bool = False,
    ) -> RunState:
        """Draft prompts, render images and write video prompts; optionally render and merge videos."""
        with self._exclusive("run"):
            run_id = self._new_run_id()
            image_paths_list = list(image_paths)
            keep_references = None if not image_paths_list else []
            self.new_project(
                outline=outline,
                shot_count=shot_count,
                aspect_ratio=aspect_ratio,
                mode=mode,
                face_priority=face_priority,
                independent_scenes=independent_scenes,
                references=keep_references,
            )
            for position, path in enumerate(image_paths_list):
                tag = tags[position] if position < len(tags) else None
                self.add_reference_file(path, tag)

            state = RunState(project=self.project, render_videos=render_videos)
            nodes = self._build_nodes(run_id=run_id, render_videos=render_videos)
            if not nodes:
                raise RuntimeError("Pipeline has no nodes configured.")
            app = self._build_graph(nodes).compile()
            result = app.invoke({"state": state})
            return result["state"]

    def _build_graph(self, nodes: Sequence[Node]) -> StateGraph:
        """Construct a LangGraph graph wired with runnable nodes."""
        graph = StateGraph(GraphState)
        node_names: List[str] = []

        for node in nodes:
            graph.add_node(
                node.name,
                RunnableLambda(lambda payload, _node=node: {"state": self._invoke_node(_node, payload["state"])}),
                metadata={"kind": node.name, "may_block": node.name in {"SynthesizeImages", "GenerateShotVideos"}},
            )
            node_names.append(node.name)

        graph.add_edge(START, node_names[0])
        for previous, current in zip(node_names, node_names[1:]):
            graph.add_edge(previous, current)
        graph.add_edge(node_names[-1], END)
        return graph

    def _build_nodes(self, *, run_id: str, render_videos: bool) -> Sequence[Node]:
        nodes: List[Node] = [
            DraftPrompts(run_id=run_id, logger=self.logger, engine=self.engine),
            SynthesizeImages(run_id=run_id, logger=self.logger, engine=self.engine),
            SynthesizeVideoPrompts(run_id=run_id, logger=self.logger, engine=self.engine),
        ]
        if render_videos:
            nodes.extend(
                [
                    GenerateShotVideos(run_id=run_id, logger=self.logger, assembler=self.assembler),
                    AssembleVideo(run_id=run_id, logger=self.logger, assembler=self.assembler),
                ]
            )
        return nodes

    def _invoke_node(self, node: Node, state: RunState) -> RunState:
        """Execute a node while emitting structured IO traces."""
        self._print_step_io(node.name, "input", self._snapshot_state(state))

        started = time.perf_counter()
        updated_state = node.run(state)
        elapsed = time.perf_counter() - started

        self._print_step_io(node.name, "output", self._snapshot_state(updated_state), elapsed)
        return updated_state

    # ------------------------------------------------------------------ single-shot operations

    def regenerate_image(self, index: int) -> bytes:
        with self._exclusive("regenerate_image"):
            return self.engine.regenerate_image(index)

    def replace_image(self, index: int, data: bytes) -> bytes:
        with self._exclusive("replace_image"):
            return self.engine.replace_image(index, data)

    def extend_and_correct(self, index: int) -> bytes:
        with self._exclusive("extend_and_correct"):
            return self.engine.extend_and_correct(index)

    def upscale(self, index: int) -> bytes:
        with self._exclusive("upscale"):
            return self.engine.upscale(index)

    def delete_shot(self, index: int) -> None:
        with self._exclusive("delete_shot"):
            self.engine.delete_shot(index)

    def undo_delete(self, index: int) -> None:
        with self._exclusive("undo_delete"):
            self.engine.undo_delete(index)

    def edit_image_prompt(self, index: int, text: str) -> None:
        with self._exclusive("edit_image_prompt"):
            self.engine.edit_image_prompt(index, text)

    def edit_video_prompt(self, index: int, text: str) -> None:
        with self._exclusive("edit_video_prompt"):
            self.engine.edit_video_prompt(index, text)

    def regenerate_video_prompt(self, index: int) -> str:
        with self._exclusive("regenerate_video_prompt"):
            return self.engine.generate_video_prompt(index)

    def optimize_video_prompt(self, index: int) -> str:
        with self._exclusive("optimize_video_prompt"):
            return self.engine.optimize_video_prompt(index)

    def review_video_prompt(self, index: int) -> str:
        with self._exclusive("review_video_prompt"):
            return self.engine.review_video_prompt(index)

    def generate_video(self, index: int) -> VideoAsset:
        with self._exclusive("generate_video"):
            return self.assembler.generate_video(index)

    # ------------------------------------------------------------------ batch operations

    def regenerate_all_images(self) -> BatchReport:
        with self._exclusive("regenerate_all_images"):
            return self._reported(self.engine.regenerate_all_images())

    def upscale_all_images(self) -> BatchReport:
        with self._exclusive("upscale_all_images"):
            return self._reported(self.engine.upscale_all_images())

    def fix_failed_video_prompts(self) -> BatchReport:
        with self._exclusive("fix_failed_video_prompts"):
            return self._reported(self.engine.fix_failed_video_prompts())

    def review_all_video_prompts(self) -> BatchReport:
        with self._exclusive("review_all_video_prompts"):
            return self._reported(self.engine.review_all_video_prompts())

    def generate_videos(self, mode: str = "all", selected: Iterable[int] = ()) -> BatchReport:
        with self._exclusive("generate_videos"):
            return self._reported(self.assembler.generate_videos(mode, selected))

    def merge_videos(self) -> Path:
        with self._exclusive("merge_videos"):
            return self.assembler.merge_videos(self._new_run_id())

    def _reported(self, report: BatchReport) -> BatchReport:
        self._notify(report.summary())
        return report

    # ------------------------------------------------------------------ persistence

    def save_project(self, path: str | Path, *, include_videos: bool = True) -> Path:
        with self._exclusive("save_project"):
            return archive.save_project(self.project, path, include_videos=include_videos)

    def load_project(self, path: str | Path) -> Project:
        with self._exclusive("load_project"):
            project = archive.load_project(path, extract_dir=self._extract_dir())
            self._bind(project)
            return project

    def append_project(self, path: str | Path) -> List[int]:
        with self._exclusive("append_project"):
            return archive.append_project(self.project, path, extract_dir=self._extract_dir())

    def export_settings(self, path: str | Path, *, include_secrets: bool = False) -> Path:
        return self.config.providers.dump_json(path, include_secrets=include_secrets)

    def import_settings(self, path: str | Path) -> ProviderConfig:
        """Load provider settings from JSON and rebuild the live providers."""
        with self._exclusive("import_settings"):
            providers = ProviderConfig.load_json(path)
            self.config = replace(self.config, providers=providers)
            self.providers = build_providers(self.config)
            self._bind(self.project)
            return providers

    def _extract_dir(self) -> Path:
        return Path(self.config.outputs_dir) / "loaded" / self._new_run_id()

    # ------------------------------------------------------------------ logging helpers

    def _snapshot_state(self, state: RunState | Any) -> Any:
        """Return a compact serialisable view of the state for logging."""
        if not isinstance(state, RunState):
            return self._strip_empty(asdict(state) if is_dataclass(state) else state)
        project = state.project
        raw: Dict[str, Any] = {
            "aspect_ratio": project.aspect_ratio,
            "mode": project.mode.value,
            "shot_count": project.shot_count,
            "references": [reference.tag for reference in project.references],
            "shots": [
                {
                    "ordinal": shot.ordinal,
                    "stage": shot.stage.value,
                    "status": shot.status,
                    "deleted": shot.is_deleted or None,
                    "error": shot.last_error,
                }
                for shot in project.shots
            ],
            "videos": sorted(project.videos),
            "reports": [report.summary() for report in state.reports],
            "final_video": state.final_video,
        }
        return self._strip_empty(raw)

    def _strip_empty(self, value: Any) -> Any:
        """Recursively remove empty containers for cleaner logging."""
        if isinstance(value, dict):
            return {k: self._strip_empty(v) for k, v in value.items() if not self._is_empty(v)}
        if isinstance(value, list):
            return [self._strip_empty(item) for item in value if not self._is_empty(item)]
        return value

    @staticmethod
    def _is_empty(value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, (str, bytes)) and value == "":
            return True
        if isinstance(value, (list, tuple, set, dict)) and len(value) == 0:
            return True
        return False

    def _print_step_io(self, step: str, direction: str, payload: Any, elapsed: float | None = None) -> None:
        """Pretty-print the input/output payload for each step."""
        prefix = ">>" if direction == "input" else "<<"
        timing = f" [{elapsed:.2f}s]" if elapsed is not None and direction == "output" else ""
        body = json.dumps(payload, ensure_ascii=False, indent=2, default=self._json_default)
        print(f"[{step}] {prefix} {direction}{timing}:\n{body}\n")

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, bytes):
            return f"<{len(obj)} bytes>"
        if isinstance(obj, set):
            return sorted(obj)
        return str(obj)

    @staticmethod
    def _new_run_id() -> str:
        """Return a simple unique run identifier."""
        return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
