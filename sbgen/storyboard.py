"""Storyboard state machine: prompt drafting, image and video-prompt synthesis, shot edits."""

from __future__ import annotations

import json
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import NormalizationError, ProviderError, StoryboardError
from .imaging import DEFAULT_MAX_WIDTH, crop_to_ratio, prepare_reference
from .modes import GenerationMode, composition_rule, drafting_instruction, drafting_style, style_rules
from .retry import BatchThrottle, RetryPolicy
from .services.base import Providers
from .types import (
    ADJACENT_IMAGE_CHANGED,
    ADJACENT_SHOT_DELETED,
    AUTO_FIX_FAILED,
    MISSING_IMAGE_TEXT,
    PENDING_TEXT,
    REGENERATION_FAILED,
    BatchReport,
    Project,
    PromptState,
    ReferenceImage,
    Shot,
)
from .utils.files import mime_for_extension, sha256_hex
from .utils.prompts import load_prompt

DRAFT_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {"image_prompt": {"type": "STRING"}},
        "required": ["image_prompt"],
    },
}


class MissingImageError(StoryboardError):
    """A shot (or its transition target) has no image to describe."""

    def __init__(self) -> None:
        super().__init__(MISSING_IMAGE_TEXT)


def _clean_json_text(s: str) -> str:
    """Strip markdown fences and cut the outermost JSON array or object."""
    s = s.strip()
    if s.startswith("```") and s.endswith("```"):
        lines = s.splitlines()
        if len(lines) >= 3:
            s = "\n".join(lines[1:-1]).strip()
    a_start = s.find("[")
    a_end = s.rfind("]")
    o_start = s.find("{")
    if a_start != -1 and a_end > a_start and (o_start == -1 or a_start < o_start):
        return s[a_start : a_end + 1]
    o_end = s.rfind("}")
    if o_start != -1 and o_end > o_start:
        return s[o_start : o_end + 1]
    return s


def parse_image_prompts(text: str, expected: int) -> List[str]:
    """Decode the drafting response into exactly ``expected`` prompt strings."""
    cleaned = _clean_json_text(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Failed to decode prompt drafting response as JSON: {cleaned[:200]}") from exc

    # Object-rooted JSON modes wrap the array, e.g. {"shots": [...]}.
    if isinstance(payload, dict):
        payload = next((value for value in payload.values() if isinstance(value, list)), None)
    if not isinstance(payload, list):
        raise ProviderError("Prompt drafting response should be a JSON array of shots.")

    prompts: List[str] = []
    for item in payload:
        if isinstance(item, dict):
            value = item.get("image_prompt") or item.get("imagePrompt")
        else:
            value = item
        if isinstance(value, str) and value.strip():
            prompts.append(value.strip())

    if len(prompts) < expected:
        raise ProviderError(f"Expected {expected} image prompts, model returned {len(prompts)}.")
    return prompts[:expected]


class StoryboardEngine:
    """Owns a :class:`Project` and applies every generation step and shot edit to it.

    Indices are positions in ``project.shots``; deleted shots keep their position.
    Single-shot operations raise on failure. Batch operations record per-shot
    failures in a :class:`BatchReport` and continue.
    """

    def __init__(
        self,
        project: Project,
        providers: Providers,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        crop_max_width: int = DEFAULT_MAX_WIDTH,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.project = project
        self.providers = providers
        self._sleep = sleep
        self._notify = notify or (lambda message: None)
        self.policy = policy or RetryPolicy(providers.language, sleep=sleep, notify=self._notify)
        self._crop_max_width = crop_max_width
        self._normalized: Dict[Tuple[str, str], bytes] = {}

    # ------------------------------------------------------------------ references

    def add_reference(self, data: bytes, tag: Optional[str] = None) -> ReferenceImage:
        payload, ext = prepare_reference(data)
        reference = ReferenceImage(
            id=sha256_hex(payload)[:12],
            data=payload,
            tag=(tag or "").strip() or self.project.next_reference_tag(),
            mime_type=mime_for_extension(ext),
        )
        self.project.references.append(reference)
        return reference

    def rename_reference(self, reference_id: str, tag: str) -> None:
        self._reference(reference_id).tag = tag.strip()

    def remove_reference(self, reference_id: str) -> None:
        self.project.references.remove(self._reference(reference_id))

    def _reference(self, reference_id: str) -> ReferenceImage:
        for reference in self.project.references:
            if reference.id == reference_id:
                return reference
        raise KeyError(f"No reference image with id {reference_id}")

    # ------------------------------------------------------------------ prompt text

    def compose_image_prompt(self, scene: str, *, scene_reference: bool = False) -> str:
        """Wrap a scene description with ratio, style, composition and reference rules."""
        project = self.project
        style, negative, physics = style_rules(project.mode)
        reference_block = ""
        if project.references:
            reference_block = load_prompt(
                "reference_mapping",
                {
                    "count": len(project.references),
                    "reference_list": "\n".join(
                        f"- Reference image {idx}: {ref.tag}"
                        for idx, ref in enumerate(project.references, start=1)
                    ),
                    "first_tag": project.references[0].tag,
                },
            )
        return load_prompt(
            "final_image_prompt",
            {
                "scene_reference": load_prompt("scene_reference") if scene_reference else "",
                "reference_block": reference_block,
                "scene": scene,
                "aspect_ratio": project.aspect_ratio,
                "style": style,
                "composition": composition_rule(project.mode, scene),
                "negative": negative,
                "physics": physics,
            },
        )

    def drafting_prompt(self) -> str:
        project = self.project
        final_shot = ""
        if project.mode is GenerationMode.CHARACTER_CLOSEUP and not project.independent_scenes:
            final_shot = load_prompt("final_shot_full_body", {"shot_count": project.shot_count})
        return load_prompt(
            "draft_image_prompts",
            {
                "style": drafting_style(project.mode),
                "mode_instruction": drafting_instruction(project.mode),
                "continuity": load_prompt(
                    "continuity_independent" if project.independent_scenes else "continuity_scene"
                ),
                "face_priority": load_prompt("face_priority_shots") if project.face_priority else "",
                "final_shot": final_shot,
                "outline": project.outline,
                "shot_count": project.shot_count,
                "aspect_ratio": project.aspect_ratio,
            },
        )

    # ------------------------------------------------------------------ phase 1

    def draft_prompts(self) -> List[str]:
        """Phase 1: one JSON-mode call producing ``shot_count`` image prompts.

        Replaces the project's shots and videos. Any failure propagates.
        """
        if self.project.shot_count < 1:
            raise ValueError("shot_count must be at least 1")
        if not self.project.outline.strip():
            raise ValueError("A story outline is required")
        text = self.policy.call(
            self.providers.language.complete,
            self.drafting_prompt(),
            json_mode=True,
            schema=DRAFT_SCHEMA,
        )
        prompts = parse_image_prompts(text, self.project.shot_count)
        self.project.shots = [Shot(ordinal=idx, image_prompt=prompt) for idx, prompt in enumerate(prompts, start=1)]
        self.project.videos.clear()
        self.project.merged_video = None
        self._notify(f"drafted {len(prompts)} image prompts")
        return prompts

    # ------------------------------------------------------------------ phase 2

    def synthesize_images(self) -> BatchReport:
        """Phase 2: render every visible shot's image in order."""
        report = BatchReport(operation="synthesize_images")
        targets = self.project.visible_indices()
        throttle = self._throttle(len(targets))
        for index in targets:
            shot = self.project.shots[index]
            try:
                shot.image = self._render_image(index, self._reference_images())
                shot.last_error = None
                report.succeeded.append(shot.ordinal)
                self._notify(f"shot #{shot.ordinal} image generated")
            except Exception as exc:
                shot.image = None
                shot.last_error = str(exc)
                report.failed[shot.ordinal] = str(exc)
                self._notify(f"shot #{shot.ordinal} image failed: {exc}")
            throttle.after_call()
        return report

    def _reference_images(self) -> List[bytes]:
        return [self.normalized_reference(reference) for reference in self.project.references]

    def normalized_reference(self, reference: ReferenceImage) -> bytes:
        """The reference cropped to the current project ratio, cached per ratio."""
        key = (reference.id, self.project.aspect_ratio)
        cropped = self._normalized.get(key)
        if cropped is None:
            cropped = self._crop(reference.data)
            self._normalized[key] = cropped
        return cropped

    def _render_image(self, index: int, conditioning: Sequence[bytes], *, scene_reference: bool = False) -> bytes:
        shot = self.project.shots[index]
        raw = self.policy.generate_shot_image(
            self.providers.image,
            conditioning,
            shot,
            lambda scene: self.compose_image_prompt(scene, scene_reference=scene_reference),
        )
        return self._crop(raw)

    def _crop(self, data: bytes) -> bytes:
        try:
            return crop_to_ratio(data, self.project.aspect_ratio, self._crop_max_width)
        except NormalizationError as exc:
            self._notify(f"crop failed, keeping uncropped image: {exc}")
            return data

    # ------------------------------------------------------------------ phase 3

    def synthesize_video_prompts(self) -> BatchReport:
        """Phase 3: describe the motion from each visible shot to the next."""
        report = BatchReport(operation="synthesize_video_prompts")
        targets = self.project.visible_indices()
        throttle = self._throttle(sum(1 for index in targets if self._can_describe(index)))
        for index in targets:
            shot = self.project.shots[index]
            if not self._can_describe(index):
                shot.fail_video_prompt(MISSING_IMAGE_TEXT)
                report.failed[shot.ordinal] = MISSING_IMAGE_TEXT
                continue
            try:
                shot.set_video_prompt(self._describe_motion(index))
                report.succeeded.append(shot.ordinal)
            except Exception as exc:
                shot.fail_video_prompt(REGENERATION_FAILED)
                shot.last_error = str(exc)
                report.failed[shot.ordinal] = str(exc)
                self._notify(f"shot #{shot.ordinal} video prompt failed: {exc}")
            throttle.after_call()
        return report

    def _can_describe(self, index: int) -> bool:
        shot = self.project.shots[index]
        if shot.image is None:
            return False
        following = self.project.next_visible(index)
        return following is None or self.project.shots[following].image is not None

    def _describe_motion(self, index: int, seed: Optional[str] = None) -> str:
        """Ask the language model for the clip starting at ``index``.

        Terminal shots get the closing-shot template; ``seed`` switches to the
        optimize templates that expand a user-written direction.
        """
        if not self._can_describe(index):
            raise MissingImageError()
        project = self.project
        shot = project.shots[index]
        following = project.next_visible(index)
        face = load_prompt("face_priority_video") if project.face_priority else ""
        variables = {"outline": project.outline, "face_constraint": face, "seed": seed}

        if following is None:
            images = [shot.image]
            if seed is not None:
                template = "optimize_terminal"
                variables["sound_design"] = (
                    "4. Sound design (required): describe background music or key sound effects that fit the mood."
                    if project.independent_scenes
                    else ""
                )
            else:
                template = "video_terminal_independent" if project.independent_scenes else "video_terminal"
        else:
            target = project.shots[following]
            images = [shot.image, target.image]
            template = "optimize_transition" if seed is not None else "video_transition"
            variables.update({"from_ordinal": shot.ordinal, "to_ordinal": target.ordinal})

        text = self.policy.call(self.providers.language.complete, load_prompt(template, variables), images=images)
        text = (text or "").strip()
        if not text:
            raise ProviderError("Model returned an empty video prompt")
        return text

    # ------------------------------------------------------------------ single-shot video prompt edits

    def generate_video_prompt(self, index: int) -> str:
        """Regenerate one shot's video prompt; on failure the prompt is marked failed."""
        shot = self.project.shots[index]
        try:
            text = self._describe_motion(index)
        except MissingImageError:
            shot.fail_video_prompt(MISSING_IMAGE_TEXT)
            raise
        except Exception:
            shot.fail_video_prompt(REGENERATION_FAILED)
            raise
        shot.set_video_prompt(text)
        return text

    def optimize_video_prompt(self, index: int) -> str:
        """Expand the current prompt, used as a creative seed, into a full prompt."""
        shot = self.project.shots[index]
        if shot.video_prompt_state is not PromptState.SUCCESS or not shot.video_prompt.strip():
            raise ValueError(f"Shot #{shot.ordinal} has no video prompt to optimize")
        text = self._describe_motion(index, seed=shot.video_prompt)
        shot.set_video_prompt(text)
        return text

    def review_video_prompt(self, index: int) -> str:
        """Script-supervisor pass: align names and plot with references and outline."""
        shot = self.project.shots[index]
        if shot.status != "success":
            raise ValueError(f"Shot #{shot.ordinal} has no successful video prompt to review")
        references = self.project.references
        characters = (
            "\n".join(
                f"  - {ref.tag}: the character or object shown in reference image {idx}."
                for idx, ref in enumerate(references, start=1)
            )
            if references
            else "  No specific characters defined."
        )
        prompt = load_prompt(
            "review_video_prompt",
            {"outline": self.project.outline, "characters": characters, "prompt": shot.video_prompt},
        )
        text = (self.policy.call(self.providers.language.complete, prompt) or "").strip()
        if not text:
            raise ProviderError("Model returned an empty reviewed prompt")
        shot.set_video_prompt(text)
        return text

    def review_all_video_prompts(self) -> BatchReport:
        report = BatchReport(operation="review_video_prompts")
        targets = [idx for idx in self.project.visible_indices() if self.project.shots[idx].status == "success"]
        for index in BatchThrottle.pace(targets, sleep=self._sleep, notify=self._notify):
            shot = self.project.shots[index]
            try:
                self.review_video_prompt(index)
                report.succeeded.append(shot.ordinal)
            except Exception as exc:
                report.failed[shot.ordinal] = str(exc)
        return report

    def fix_failed_video_prompts(self) -> BatchReport:
        """Rerun phase-3 generation for every visible shot whose status is ``error``."""
        report = BatchReport(operation="fix_failed_video_prompts")
        targets = [idx for idx in self.project.visible_indices() if self.project.shots[idx].status == "error"]
        throttle = self._throttle(sum(1 for index in targets if self._can_describe(index)))
        for index in targets:
            shot = self.project.shots[index]
            called = self._can_describe(index)
            try:
                shot.set_video_prompt(self._describe_motion(index))
                report.succeeded.append(shot.ordinal)
            except Exception as exc:
                shot.fail_video_prompt(f"{AUTO_FIX_FAILED}: {exc}")
                report.failed[shot.ordinal] = str(exc)
            if called:
                throttle.after_call()
        return report

    def edit_image_prompt(self, index: int, text: str) -> None:
        self.project.shots[index].image_prompt = text.strip()

    def edit_video_prompt(self, index: int, text: str) -> None:
        shot = self.project.shots[index]
        if text.strip():
            shot.set_video_prompt(text)
        else:
            shot.video_prompt = PENDING_TEXT
            shot.video_prompt_state = PromptState.PENDING

    # ------------------------------------------------------------------ image edits

    def invalidate_adjacent(self, index: int, message: str = ADJACENT_IMAGE_CHANGED) -> None:
        """Invalidate the clip starting at ``index`` and the one ending there."""
        self.project.shots[index].invalidate_video_prompt(message)
        previous = self.project.previous_visible(index)
        if previous is not None:
            self.project.shots[previous].invalidate_video_prompt(message)

    def _set_image(self, index: int, image: bytes) -> None:
        shot = self.project.shots[index]
        shot.image = image
        shot.last_error = None
        self.invalidate_adjacent(index, ADJACENT_IMAGE_CHANGED)

    def _editable(self, index: int) -> Shot:
        shot = self.project.shots[index]
        if shot.is_deleted:
            raise ValueError(f"Shot #{shot.ordinal} is deleted")
        return shot

    def regenerate_image(self, index: int) -> bytes:
        self._editable(index)
        image = self._render_image(index, self._reference_images())
        self._set_image(index, image)
        return image

    def replace_image(self, index: int, data: bytes) -> bytes:
        """Use caller supplied bytes as the shot image, cropped to the project ratio."""
        self._editable(index)
        image = self._crop(data)
        self._set_image(index, image)
        return image

    def extend_and_correct(self, index: int) -> bytes:
        """Regenerate using the previous visible shot's image as the primary reference."""
        self._editable(index)
        previous = self.project.previous_visible(index)
        if previous is None or self.project.shots[previous].image is None:
            raise ValueError("Extend-and-correct needs an image on the previous visible shot")
        conditioning = [self.project.shots[previous].image] + self._reference_images()
        image = self._render_image(index, conditioning, scene_reference=True)
        self._set_image(index, image)
        return image

    def upscale(self, index: int) -> bytes:
        """Composition-preserving re-render with the current image as sole reference."""
        shot = self._editable(index)
        if shot.image is None:
            raise ValueError(f"Shot #{shot.ordinal} has no image to upscale")
        image = self.policy.call(self.providers.image.generate, [shot.image], load_prompt("upscale_image"))
        self._set_image(index, image)
        return image

    def regenerate_all_images(self) -> BatchReport:
        return self._image_batch("regenerate_images", self.project.visible_indices(), self.regenerate_image)

    def upscale_all_images(self) -> BatchReport:
        targets = [idx for idx in self.project.visible_indices() if self.project.shots[idx].image is not None]
        return self._image_batch("upscale_images", targets, self.upscale)

    def _image_batch(self, operation: str, targets: List[int], action: Callable[[int], bytes]) -> BatchReport:
        report = BatchReport(operation=operation)
        for index in BatchThrottle.pace(targets, sleep=self._sleep, notify=self._notify):
            shot = self.project.shots[index]
            try:
                action(index)
                report.succeeded.append(shot.ordinal)
            except Exception as exc:
                shot.last_error = str(exc)
                report.failed[shot.ordinal] = str(exc)
                self._notify(f"shot #{shot.ordinal} {operation} failed: {exc}")
        return report

    # ------------------------------------------------------------------ deletion

    def delete_shot(self, index: int) -> None:
        """Soft delete; the shot's own clip and the clip ending at it become invalid."""
        shot = self.project.shots[index]
        if shot.is_deleted:
            return
        self.invalidate_adjacent(index, ADJACENT_SHOT_DELETED)
        shot.is_deleted = True
        self.project.merged_video = None

    def undo_delete(self, index: int) -> None:
        """Restore a deleted shot; the previous visible clip now ends here again."""
        shot = self.project.shots[index]
        if not shot.is_deleted:
            return
        shot.is_deleted = False
        previous = self.project.previous_visible(index)
        if previous is not None:
            self.project.shots[previous].invalidate_video_prompt(ADJACENT_SHOT_DELETED)
        self.project.merged_video = None

    def _throttle(self, total_calls: int) -> BatchThrottle:
        return BatchThrottle(total_calls, sleep=self._sleep, notify=self._notify)
