"""Exception taxonomy shared by providers, the storyboard engine and the archive."""

from __future__ import annotations

from typing import Iterable


class StoryboardError(RuntimeError):
    """Base class for every error raised by the storyboard generator."""


class NormalizationError(StoryboardError):
    """Raised when image bytes cannot be decoded or cropped."""


class ProviderError(StoryboardError):
    """A generative backend call failed."""


class EmptyResponse(ProviderError):
    """The backend answered without usable content."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or "no content returned"
        super().__init__(f"Empty response from model: {self.reason}")


class BlockedBySafety(ProviderError):
    """The backend refused the request on content-policy grounds."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or "SAFETY"
        super().__init__(f"Request blocked by safety filter: {self.reason}")


class RateLimited(ProviderError):
    """The backend reported a quota or rate limit (HTTP 429)."""


class VideoJobError(StoryboardError):
    """Base class for asynchronous video job failures."""


class JobFailed(VideoJobError):
    """The video backend reported an error for a submitted job."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Video job failed: {reason}")


class JobTimeout(VideoJobError):
    """The video job did not finish before the polling ceiling."""


class OutputNotFound(VideoJobError):
    """A finished job record did not contain a recognizable video output."""

    def __init__(self, message: str, available_keys: Iterable[str] = ()) -> None:
        self.available_keys = list(available_keys)
        super().__init__(f"{message}: {', '.join(self.available_keys) or '<none>'}")


class MalformedProjectFile(StoryboardError):
    """A project archive is missing its manifest, required keys or referenced files."""


class PipelineBusyError(StoryboardError):
    """A batch operation was requested while another one is still running."""


__all__ = [
    "StoryboardError",
    "NormalizationError",
    "ProviderError",
    "EmptyResponse",
    "BlockedBySafety",
    "RateLimited",
    "VideoJobError",
    "JobFailed",
    "JobTimeout",
    "OutputNotFound",
    "MalformedProjectFile",
    "PipelineBusyError",
]
