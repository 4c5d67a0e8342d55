"""Core data models used across the storyboard generator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .modes import GenerationMode

ASPECT_RATIOS = ("16:9", "9:16")

PENDING_TEXT = "Waiting to be generated..."
ADJACENT_IMAGE_CHANGED = "Adjacent image changed; this video prompt is no longer valid."
ADJACENT_SHOT_DELETED = "Adjacent shot deleted; this video prompt is no longer valid."
MISSING_IMAGE_TEXT = "Cannot generate: the image for this shot is missing."
REGENERATION_FAILED = "Regeneration failed, please try again."
AUTO_FIX_FAILED = "Auto-fix failed"

# Marker fragments written into video prompts by older project files.
_LEGACY_PENDING = {"", "待生成...", PENDING_TEXT}
_LEGACY_INVALIDATED = ("失效", "no longer valid")
_LEGACY_FAILED = ("失敗", "無法生成", "failed", "cannot generate")


class PromptState(str, Enum):
    """Explicit lifecycle of a shot's video prompt."""

    PENDING = "pending"
    SUCCESS = "success"
    INVALIDATED = "invalidated"
    FAILED = "failed"

    @classmethod
    def from_legacy_text(cls, text: str | None) -> "PromptState":
        """Classify prompt text from archives that predate the explicit state field."""
        value = (text or "").strip()
        if value in _LEGACY_PENDING:
            return cls.PENDING
        lowered = value.lower()
        if any(marker in lowered for marker in _LEGACY_INVALIDATED):
            return cls.INVALIDATED
        if any(marker in lowered for marker in _LEGACY_FAILED):
            return cls.FAILED
        return cls.SUCCESS


class ShotStage(str, Enum):
    EMPTY = "empty"
    PROMPT_DRAFTED = "prompt_drafted"
    IMAGE_GENERATED = "image_generated"
    VIDEO_PROMPT_GENERATED = "video_prompt_generated"


@dataclass(slots=True)
class ReferenceImage:
    """A user supplied image plus the tag prompts use to refer to it."""

    id: str
    data: bytes
    tag: str
    mime_type: str = "image/png"


@dataclass(slots=True)
class Shot:
    """One storyboard cut."""

    ordinal: int
    image_prompt: str = ""
    video_prompt: str = PENDING_TEXT
    video_prompt_state: PromptState = PromptState.PENDING
    image: Optional[bytes] = None
    is_deleted: bool = False
    last_error: Optional[str] = None

    @property
    def status(self) -> str:
        """User-facing status, derived from the prompt state on every read."""
        if self.video_prompt_state in (PromptState.INVALIDATED, PromptState.FAILED):
            return "error"
        if self.video_prompt_state is PromptState.SUCCESS:
            return "success"
        return "pending"

    @property
    def stage(self) -> ShotStage:
        if self.video_prompt_state is PromptState.SUCCESS and self.image is not None:
            return ShotStage.VIDEO_PROMPT_GENERATED
        if self.image is not None:
            return ShotStage.IMAGE_GENERATED
        if self.image_prompt:
            return ShotStage.PROMPT_DRAFTED
        return ShotStage.EMPTY

    def set_video_prompt(self, text: str) -> None:
        self.video_prompt = text.strip()
        self.video_prompt_state = PromptState.SUCCESS

    def invalidate_video_prompt(self, message: str = ADJACENT_IMAGE_CHANGED) -> None:
        self.video_prompt = message
        self.video_prompt_state = PromptState.INVALIDATED

    def fail_video_prompt(self, message: str) -> None:
        self.video_prompt = message
        self.video_prompt_state = PromptState.FAILED


@dataclass(slots=True)
class VideoAsset:
    """A rendered transition clip for one shot."""

    shot_ordinal: int
    locator: str
    local_path: Optional[str] = None
    version: int = 1


@dataclass(slots=True)
class Project:
    """Everything a storyboard session owns."""

    references: List[ReferenceImage] = field(default_factory=list)
    aspect_ratio: str = "16:9"
    outline: str = ""
    shot_count: int = 0
    mode: GenerationMode = GenerationMode.CHARACTER_CLOSEUP
    face_priority: bool = False
    independent_scenes: bool = False
    shots: List[Shot] = field(default_factory=list)
    videos: Dict[int, VideoAsset] = field(default_factory=dict)
    merged_video: Optional[str] = None

    def visible_indices(self) -> List[int]:
        return [idx for idx, shot in enumerate(self.shots) if not shot.is_deleted]

    def visible_shots(self) -> List[Shot]:
        return [shot for shot in self.shots if not shot.is_deleted]

    def previous_visible(self, index: int) -> Optional[int]:
        for idx in range(index - 1, -1, -1):
            if not self.shots[idx].is_deleted:
                return idx
        return None

    def next_visible(self, index: int) -> Optional[int]:
        for idx in range(index + 1, len(self.shots)):
            if not self.shots[idx].is_deleted:
                return idx
        return None

    def is_terminal(self, index: int) -> bool:
        """True when no visible shot follows ``index``."""
        return self.next_visible(index) is None

    def next_reference_tag(self) -> str:
        return f"Character {len(self.references) + 1}"


@dataclass(slots=True)
class BatchReport:
    """Outcome of a batch operation over several shots."""

    operation: str
    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        parts = [f"{self.operation}: {len(self.succeeded)} succeeded"]
        if self.failed:
            failed = ", ".join(f"#{ordinal}" for ordinal in sorted(self.failed))
            parts.append(f"{len(self.failed)} failed ({failed})")
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        return ", ".join(parts)


@dataclass(slots=True)
class RunState:
    """Mutable state passed between pipeline nodes."""

    project: Project = field(default_factory=Project)
    reports: List[BatchReport] = field(default_factory=list)
    render_videos: bool = False
    final_video: Optional[str] = None
