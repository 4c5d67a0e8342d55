"""Deterministic offline providers used when mock generation is enabled."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Mapping, Optional, Sequence

from ..imaging import solid_png
from ..utils.files import sha256_hex
from .base import JobHandle, JobStatus

_SHOT_COUNT_PATTERN = re.compile(r"Shot count:\s*(\d+)")
_OUTLINE_PATTERN = re.compile(r"Story outline:\s*\"?([^\n\"]*)")

MOCK_LOCATOR_PREFIX = "mock://"


class MockLanguageModel:
    """Returns canned prompts; JSON mode yields the requested number of shots."""

    def complete(
        self,
        prompt: str,
        *,
        json_mode: bool = False,
        schema: Optional[Mapping[str, Any]] = None,
        images: Sequence[bytes] = (),
    ) -> str:
        digest = sha256_hex(prompt.encode("utf-8"))[:8]
        if json_mode:
            match = _SHOT_COUNT_PATTERN.search(prompt)
            count = int(match.group(1)) if match else 1
            outline_match = _OUTLINE_PATTERN.search(prompt)
            outline = (outline_match.group(1).strip() if outline_match else "") or "an untitled story"
            shots = [
                {"image_prompt": f"Shot {idx}: the moment just before the next beat of {outline}"}
                for idx in range(1, count + 1)
            ]
            return json.dumps(shots, ensure_ascii=False)
        return (
            f"[mock {digest}] The camera pushes in slowly while the subject moves with purpose "
            f"across the frame ({len(images)} frame(s) referenced)."
        )


class MockImageModel:
    """Flat-colour PNGs whose colour depends on the prompt."""

    def __init__(self, size: tuple[int, int] = (1280, 720)) -> None:
        self._size = size

    def generate(self, conditioning_images: Sequence[bytes], prompt: str) -> bytes:
        digest = bytes.fromhex(sha256_hex(prompt.encode("utf-8"))[:6])
        return solid_png(self._size[0], self._size[1], (digest[0], digest[1], digest[2]))


class MockVideoModel:
    """Finishes every job immediately with a text stand-in clip."""

    def __init__(self) -> None:
        self._jobs: Dict[str, str] = {}

    def submit(
        self,
        start_image: bytes,
        end_image: Optional[bytes],
        prompt: str,
        resolution: int,
        aspect_ratio: str = "16:9",
    ) -> JobHandle:
        job_id = f"mock-{len(self._jobs) + 1}"
        self._jobs[job_id] = "\n".join(
            [
                f"[Video job {job_id}]",
                f"Resolution: {resolution} ({aspect_ratio})",
                f"Start frame: {sha256_hex(start_image)[:12]}",
                f"End frame: {sha256_hex(end_image)[:12] if end_image is not None else 'none (terminal)'}",
                f"Prompt: {prompt}",
            ]
        )
        return JobHandle(job_id=job_id, terminal=end_image is None)

    def poll(self, handle: JobHandle) -> JobStatus:
        handle.seen_in_queue = True
        return JobStatus.done(f"{MOCK_LOCATOR_PREFIX}{handle.job_id}")

    def fetch(self, locator: str) -> bytes:
        job_id = locator[len(MOCK_LOCATOR_PREFIX):]
        return self._jobs[job_id].encode("utf-8")
