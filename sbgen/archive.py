"""Zip project archives: save, load (including the older ``project.json`` layout) and append."""

from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import MalformedProjectFile
from .modes import GenerationMode
from .types import ADJACENT_IMAGE_CHANGED, Project, PromptState, ReferenceImage, Shot, VideoAsset
from .utils.files import atomic_write, ensure_dir, mime_for_extension, sha256_hex, sniff_image_extension

MANIFEST_NAME = "manifest.json"
LEGACY_MANIFEST_NAME = "project.json"
_REQUIRED_KEYS = ("aspectRatio", "shots")


def _shot_image_name(ordinal: int) -> str:
    return f"shot_{ordinal}.png"


def _video_name(ordinal: int) -> str:
    return f"video_{ordinal}.mp4"


def build_manifest(project: Project, bundled_videos: set[int] | None = None) -> Dict[str, Any]:
    """Return the JSON manifest describing ``project``."""
    bundled_videos = bundled_videos or set()
    references = []
    for idx, reference in enumerate(project.references, start=1):
        ext = sniff_image_extension(reference.data)
        references.append({"tag": reference.tag, "filename": f"reference_image_{idx}.{ext}"})
    return {
        "aspectRatio": project.aspect_ratio,
        "outline": project.outline,
        "shotCount": project.shot_count,
        "generationMode": project.mode.value,
        "perImageOptions": {
            "independentScenesMode": project.independent_scenes,
            "facePriority": project.face_priority,
        },
        "references": references,
        "shots": [
            {
                "ordinal": shot.ordinal,
                "imagePrompt": shot.image_prompt,
                "videoPrompt": shot.video_prompt,
                "videoPromptState": shot.video_prompt_state.value,
                "isDeleted": shot.is_deleted,
            }
            for shot in project.shots
        ],
        "videos": [
            {
                "ordinal": ordinal,
                "providerLocator": asset.locator,
                "version": asset.version,
                "fileIncluded": ordinal in bundled_videos,
            }
            for ordinal, asset in sorted(project.videos.items())
        ],
    }


def save_project(project: Project, path: str | Path, *, include_videos: bool = True) -> Path:
    """Write ``project`` as a zip archive and return its path."""
    target = Path(path)
    ensure_dir(target.parent)
    bundled = set()
    if include_videos:
        bundled = {
            ordinal
            for ordinal, asset in project.videos.items()
            if asset.local_path and Path(asset.local_path).is_file()
        }
    manifest = build_manifest(project, bundled)

    temp_path = target.with_suffix(target.suffix + ".tmp")
    with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2, ensure_ascii=False))
        for entry, reference in zip(manifest["references"], project.references):
            archive.writestr(entry["filename"], reference.data)
        for shot in project.shots:
            if shot.image is not None:
                archive.writestr(_shot_image_name(shot.ordinal), shot.image)
        for ordinal in sorted(bundled):
            archive.write(project.videos[ordinal].local_path, _video_name(ordinal))
    temp_path.replace(target)
    return target


def _read_manifest(archive: zipfile.ZipFile) -> Dict[str, Any]:
    names = set(archive.namelist())
    if MANIFEST_NAME in names:
        manifest = _decode(archive, MANIFEST_NAME)
    elif LEGACY_MANIFEST_NAME in names:
        manifest = _from_legacy(_decode(archive, LEGACY_MANIFEST_NAME), names)
    else:
        raise MalformedProjectFile(f"Archive has no {MANIFEST_NAME}")

    missing = [key for key in _REQUIRED_KEYS if key not in manifest]
    if missing:
        raise MalformedProjectFile(f"Manifest is missing required keys: {', '.join(missing)}")
    if not isinstance(manifest["shots"], list):
        raise MalformedProjectFile("Manifest 'shots' must be a list")
    return manifest


def _as_int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedProjectFile(f"{what} must be an integer, got {value!r}") from exc


def _decode(archive: zipfile.ZipFile, name: str) -> Dict[str, Any]:
    try:
        payload = json.loads(archive.read(name).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedProjectFile(f"{name} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedProjectFile(f"{name} must contain a JSON object")
    return payload


def _from_legacy(data: Dict[str, Any], names: set[str]) -> Dict[str, Any]:
    """Translate the older ``project.json`` layout into the manifest shape."""
    references = data.get("initialImages")
    if not references:
        references = [{"tag": "Character 1", "filename": "initial_image.png"}]
    if "storyboard" not in data:
        raise MalformedProjectFile("Legacy project.json has no storyboard")
    shots = []
    legacy_images = {}
    for cut in data.get("storyboard") or []:
        ordinal = _as_int(cut.get("cut", len(shots) + 1), "Legacy cut number")
        shots.append(
            {
                "ordinal": ordinal,
                "imagePrompt": cut.get("image_prompt", ""),
                "videoPrompt": cut.get("video_prompt", ""),
                "isDeleted": bool(cut.get("isDeleted", False)),
            }
        )
        if f"cut_{ordinal}.png" in names:
            legacy_images[ordinal] = f"cut_{ordinal}.png"
    manifest = {
        "aspectRatio": data.get("aspectRatio"),
        "outline": data.get("outline", ""),
        "shotCount": data.get("numCuts") or len(shots),
        "generationMode": data.get("generationMode"),
        "perImageOptions": {
            "independentScenesMode": bool(data.get("isImageToVideoMode", False)),
            "facePriority": bool(data.get("prioritizeFaceShots", False)),
        },
        "references": references,
        "shots": shots,
        "_legacyImages": legacy_images,
    }
    if manifest["aspectRatio"] is None:
        del manifest["aspectRatio"]
    return manifest


def _load_references(archive: zipfile.ZipFile, manifest: Dict[str, Any]) -> List[ReferenceImage]:
    names = set(archive.namelist())
    references: List[ReferenceImage] = []
    for idx, entry in enumerate(manifest.get("references") or [], start=1):
        filename = entry.get("filename")
        if not filename or filename not in names:
            raise MalformedProjectFile(f"Reference image {filename!r} is missing from the archive")
        data = archive.read(filename)
        references.append(
            ReferenceImage(
                id=sha256_hex(data)[:12],
                data=data,
                tag=entry.get("tag") or f"Character {idx}",
                mime_type=mime_for_extension(sniff_image_extension(data)),
            )
        )
    return references


def _load_shots(archive: zipfile.ZipFile, manifest: Dict[str, Any]) -> List[Shot]:
    names = set(archive.namelist())
    legacy_images = manifest.get("_legacyImages") or {}
    shots: List[Shot] = []
    for position, entry in enumerate(manifest["shots"], start=1):
        if not isinstance(entry, dict):
            raise MalformedProjectFile(f"Shot entry {position} is not an object")
        ordinal = _as_int(entry.get("ordinal", position), f"Shot entry {position} ordinal")
        video_prompt = entry.get("videoPrompt") or ""
        state_value = entry.get("videoPromptState")
        try:
            state = PromptState(state_value) if state_value else PromptState.from_legacy_text(video_prompt)
        except ValueError as exc:
            raise MalformedProjectFile(f"Unknown videoPromptState {state_value!r}") from exc
        image_name = legacy_images.get(ordinal) or _shot_image_name(ordinal)
        image = archive.read(image_name) if image_name in names else None
        shots.append(
            Shot(
                ordinal=ordinal,
                image_prompt=entry.get("imagePrompt") or "",
                video_prompt=video_prompt,
                video_prompt_state=state,
                image=image,
                is_deleted=bool(entry.get("isDeleted", False)),
            )
        )
    return shots


def _load_videos(
    archive: zipfile.ZipFile,
    manifest: Dict[str, Any],
    extract_dir: Optional[Path],
    ordinal_map: Optional[Dict[int, int]] = None,
    require_file: bool = False,
) -> Dict[int, VideoAsset]:
    names = set(archive.namelist())
    videos: Dict[int, VideoAsset] = {}
    for entry in manifest.get("videos") or []:
        if not isinstance(entry, dict) or "ordinal" not in entry:
            raise MalformedProjectFile(f"Video entry {entry!r} has no ordinal")
        source_ordinal = _as_int(entry["ordinal"], "Video ordinal")
        ordinal = ordinal_map.get(source_ordinal, source_ordinal) if ordinal_map is not None else source_ordinal
        if ordinal_map is not None and source_ordinal not in ordinal_map:
            continue
        asset = VideoAsset(
            shot_ordinal=ordinal,
            locator=entry.get("providerLocator") or "",
            version=_as_int(entry.get("version", 1), "Video version"),
        )
        bundled_name = _video_name(source_ordinal)
        if entry.get("fileIncluded") and bundled_name in names and extract_dir is not None:
            asset.local_path = str(atomic_write(extract_dir / _video_name(ordinal), archive.read(bundled_name)))
        if require_file and not asset.local_path:
            continue
        if not asset.locator and not asset.local_path:
            continue
        videos[ordinal] = asset
    return videos


def _open(path: str | Path) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(path, "r")
    except zipfile.BadZipFile as exc:
        raise MalformedProjectFile(f"{path} is not a zip archive") from exc


def load_project(path: str | Path, *, extract_dir: str | Path | None = None) -> Project:
    """Read a project archive. Bundled videos are extracted into ``extract_dir``."""
    target_dir = ensure_dir(extract_dir) if extract_dir is not None else None
    with _open(path) as archive:
        manifest = _read_manifest(archive)
        references = _load_references(archive, manifest)
        shots = _load_shots(archive, manifest)
        videos = _load_videos(archive, manifest, target_dir)

    options = manifest.get("perImageOptions") or {}
    try:
        mode = GenerationMode.parse(manifest.get("generationMode"))
    except ValueError as exc:
        raise MalformedProjectFile(str(exc)) from exc
    return Project(
        references=references,
        aspect_ratio=manifest["aspectRatio"],
        outline=manifest.get("outline") or "",
        shot_count=_as_int(manifest.get("shotCount") or len(shots), "shotCount"),
        mode=mode,
        face_priority=bool(options.get("facePriority", False)),
        independent_scenes=bool(options.get("independentScenesMode", False)),
        shots=shots,
        videos=videos,
    )


def append_project(project: Project, path: str | Path, *, extract_dir: str | Path | None = None) -> List[int]:
    """Append the shots of another archive after ``project``'s shots.

    Incoming shots are renumbered to follow the current last ordinal; images and
    videos are only attached when their files exist in the archive. Returns the
    new ordinals.
    """
    target_dir = ensure_dir(extract_dir) if extract_dir is not None else None
    with _open(path) as archive:
        manifest = _read_manifest(archive)
        incoming = _load_shots(archive, manifest)
        start = max((shot.ordinal for shot in project.shots), default=0)
        ordinal_map: Dict[int, int] = {}
        for offset, shot in enumerate(incoming, start=1):
            ordinal_map[shot.ordinal] = start + offset
            shot.ordinal = start + offset
        videos = _load_videos(archive, manifest, target_dir, ordinal_map, require_file=True)

    visible = project.visible_indices()
    if incoming and visible:
        project.shots[visible[-1]].invalidate_video_prompt(ADJACENT_IMAGE_CHANGED)
    project.shots.extend(incoming)
    project.videos.update(videos)
    project.shot_count = len(project.shots)
    project.merged_video = None
    return [shot.ordinal for shot in incoming]
