"""Provider protocols, job records and the provider factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..config import PipelineConfig


class LanguageModel(Protocol):
    """Text generation, optionally conditioned on images."""

    def complete(
        self,
        prompt: str,
        *,
        json_mode: bool = False,
        schema: Optional[Mapping[str, Any]] = None,
        images: Sequence[bytes] = (),
    ) -> str:
        ...


class ImageModel(Protocol):
    """Image generation conditioned on reference images.

    Implementations raise ``BlockedBySafety`` for policy refusals,
    ``EmptyResponse`` when no image came back and ``RateLimited`` for quota errors.
    """

    def generate(self, conditioning_images: Sequence[bytes], prompt: str) -> bytes:
        ...


@dataclass(slots=True)
class JobHandle:
    """A submitted video job; ``seen_in_queue`` is updated while polling."""

    job_id: str
    terminal: bool = False
    seen_in_queue: bool = False


@dataclass(slots=True)
class JobStatus:
    state: str
    locator: Optional[str] = None
    reason: Optional[str] = None

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def pending(cls) -> "JobStatus":
        return cls(state=cls.PENDING)

    @classmethod
    def done(cls, locator: str) -> "JobStatus":
        return cls(state=cls.DONE, locator=locator)

    @classmethod
    def failed(cls, reason: str) -> "JobStatus":
        return cls(state=cls.FAILED, reason=reason)


class VideoModel(Protocol):
    """Asynchronous first/last-frame video generation."""

    def submit(
        self,
        start_image: bytes,
        end_image: Optional[bytes],
        prompt: str,
        resolution: int,
        aspect_ratio: str = "16:9",
    ) -> JobHandle:
        ...

    def poll(self, handle: JobHandle) -> JobStatus:
        ...

    def fetch(self, locator: str) -> bytes:
        ...


@dataclass(slots=True)
class Providers:
    language: LanguageModel
    image: ImageModel
    video: VideoModel


def build_providers(config: PipelineConfig) -> Providers:
    """Instantiate the configured language, image and video providers."""
    if config.enable_mock_generation:
        from .mock import MockImageModel, MockLanguageModel, MockVideoModel

        return Providers(
            language=MockLanguageModel(),
            image=MockImageModel(),
            video=MockVideoModel(),
        )

    settings = config.providers
    language_provider = settings.language.provider.lower()
    if language_provider == "gemini":
        from .gemini import GeminiLanguageModel

        language: LanguageModel = GeminiLanguageModel(
            api_key=settings.language.api_key,
            model=settings.language.model,
        )
    elif language_provider in {"openai_compatible", "openai-compatible", "openai"}:
        from .openai_compat import OpenAICompatibleLanguageModel

        language = OpenAICompatibleLanguageModel(
            api_key=settings.language.api_key,
            endpoint=settings.language.endpoint,
            model=settings.language.model,
            timeout=settings.language.timeout,
        )
    else:
        raise ValueError(f"Unsupported language provider: {settings.language.provider}")

    image_provider = settings.image.provider.lower()
    if image_provider == "gemini":
        from .gemini import GeminiImageModel

        image: ImageModel = GeminiImageModel(api_key=settings.image.api_key, model=settings.image.model)
    elif image_provider == "comfyui":
        from .comfyui import ComfyUIImageModel

        image = ComfyUIImageModel(
            settings.image,
            poll_interval=config.poll_interval_sec,
            max_poll_attempts=config.max_poll_attempts,
        )
    else:
        raise ValueError(f"Unsupported image provider: {settings.image.provider}")

    if settings.video.provider.lower() != "comfyui":
        raise ValueError(f"Unsupported video provider: {settings.video.provider}")
    from .comfyui import ComfyUIVideoModel

    video: VideoModel = ComfyUIVideoModel(settings.video)
    return Providers(language=language, image=image, video=video)
