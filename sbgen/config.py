"""Configuration containers for the storyboard generator."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar, Dict, Mapping

DEFAULT_WORKFLOW = Path(__file__).resolve().parent / "workflows" / "wan_first_last_frame.json"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _pick(cls, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are fields of ``cls``; accepts camelCase aliases."""
    names = {item.name for item in fields(cls)}
    picked: Dict[str, Any] = {}
    for key, value in data.items():
        snake = "".join(f"_{ch.lower()}" if ch.isupper() else ch for ch in key)
        if key in names:
            picked[key] = value
        elif snake in names:
            picked[snake] = value
    return picked


@dataclass(slots=True)
class LanguageSettings:
    """Language model selection. ``provider`` is ``gemini`` or ``openai_compatible``."""

    provider: str = "gemini"
    api_key: str | None = None
    model: str = "gemini-2.5-flash"
    endpoint: str | None = None
    timeout: int = 120


@dataclass(slots=True)
class ImageSettings:
    """Image model selection. ``provider`` is ``gemini`` or ``comfyui``."""

    provider: str = "gemini"
    api_key: str | None = None
    model: str = "gemini-2.5-flash-image"
    endpoint: str = "http://127.0.0.1:8188"
    workflow_path: str | None = None
    load_image_node: str = "10"
    save_image_node: str = "9"
    prompt_node: str = "6"
    resolution: int = 1280


@dataclass(slots=True)
class VideoSettings:
    """ComfyUI first/last-frame video workflow bindings."""

    provider: str = "comfyui"
    endpoint: str = "http://127.0.0.1:8188"
    workflow_path: str = str(DEFAULT_WORKFLOW)
    start_frame_node: str = "68"
    end_frame_node: str = "62"
    prompt_node: str = "6"
    save_video_node: str = "107"
    resolution: int = 512
    timeout: int = 60


@dataclass(slots=True)
class ProviderConfig:
    """Provider selection threaded explicitly into the factory."""

    language: LanguageSettings = field(default_factory=LanguageSettings)
    image: ImageSettings = field(default_factory=ImageSettings)
    video: VideoSettings = field(default_factory=VideoSettings)

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Create provider settings populated from environment variables."""
        gemini_key = os.getenv("GEMINI_API_KEY")
        comfy_url = os.getenv("COMFYUI_URL", "http://127.0.0.1:8188")
        language = LanguageSettings(
            provider=os.getenv("SBGEN_LANGUAGE_PROVIDER", "gemini"),
            api_key=os.getenv("OPENAI_COMPAT_API_KEY") or gemini_key,
            model=os.getenv("SBGEN_LANGUAGE_MODEL", "gemini-2.5-flash"),
            endpoint=os.getenv("OPENAI_COMPAT_ENDPOINT"),
        )
        image = ImageSettings(
            provider=os.getenv("SBGEN_IMAGE_PROVIDER", "gemini"),
            api_key=gemini_key,
            model=os.getenv("SBGEN_IMAGE_MODEL", "gemini-2.5-flash-image"),
            endpoint=comfy_url,
            workflow_path=os.getenv("SBGEN_IMAGE_WORKFLOW"),
        )
        video = VideoSettings(
            endpoint=comfy_url,
            workflow_path=os.getenv("SBGEN_VIDEO_WORKFLOW", str(DEFAULT_WORKFLOW)),
            resolution=int(os.getenv("SBGEN_VIDEO_RESOLUTION", "512")),
        )
        return cls(language=language, image=image, video=video)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        """Build settings from an exported mapping; unknown keys are ignored."""
        language = data.get("language") or data.get("languageModel") or {}
        image = data.get("image") or data.get("imageModel") or {}
        video = data.get("video") or data.get("videoModel") or {}
        return cls(
            language=LanguageSettings(**_pick(LanguageSettings, language)),
            image=ImageSettings(**_pick(ImageSettings, image)),
            video=VideoSettings(**_pick(VideoSettings, video)),
        )

    def to_dict(self, *, include_secrets: bool = False) -> Dict[str, Any]:
        payload = {
            "language": asdict(self.language),
            "image": asdict(self.image),
            "video": asdict(self.video),
        }
        if not include_secrets:
            payload["language"].pop("api_key", None)
            payload["image"].pop("api_key", None)
        return payload

    @classmethod
    def load_json(cls, path: str | Path) -> "ProviderConfig":
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))

    def dump_json(self, path: str | Path, *, include_secrets: bool = False) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            json.dumps(self.to_dict(include_secrets=include_secrets), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        return target


@dataclass(slots=True)
class PipelineConfig:
    """Static configuration applied to every pipeline run."""

    env_prefix: ClassVar[str] = "SBGEN_"

    runs_dir: str = "runs"
    outputs_dir: str = "outputs"
    enable_mock_generation: bool = True
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    poll_interval_sec: float = 2.0
    poll_timeout_sec: float = 3600.0
    video_spacing_sec: float = 3.0
    video_release_delay_sec: float = 5.0
    crop_max_width: int = 1024

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create a config object populated from environment variables."""
        prefix = cls.env_prefix
        return cls(
            runs_dir=os.getenv(f"{prefix}RUNS_DIR", "runs"),
            outputs_dir=os.getenv(f"{prefix}OUTPUTS_DIR", "outputs"),
            enable_mock_generation=_env_flag(f"{prefix}ENABLE_MOCKS", "true"),
            providers=ProviderConfig.from_env(),
            poll_interval_sec=float(os.getenv(f"{prefix}POLL_INTERVAL_SEC", "2.0")),
            poll_timeout_sec=float(os.getenv(f"{prefix}POLL_TIMEOUT_SEC", "3600")),
            video_spacing_sec=float(os.getenv(f"{prefix}VIDEO_SPACING_SEC", "3.0")),
            video_release_delay_sec=float(os.getenv(f"{prefix}VIDEO_RELEASE_DELAY_SEC", "5.0")),
        )

    @property
    def max_poll_attempts(self) -> int:
        return max(1, int(self.poll_timeout_sec / max(self.poll_interval_sec, 0.001)))
