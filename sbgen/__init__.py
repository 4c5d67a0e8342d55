"""Storyboard generator package.

Turns reference images and a story outline into a shot-by-shot storyboard:
image prompts, rendered keyframes, per-shot video prompts and, optionally,
transition clips merged into one video.
"""

from .pipeline import StoryboardGenerator  # noqa: F401

__all__ = ["StoryboardGenerator"]
