"""Per-shot video rendering, polling and lossless concatenation."""

from __future__ import annotations

import subprocess
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from .errors import JobFailed, JobTimeout, StoryboardError
from .services.base import JobHandle, JobStatus, VideoModel
from .services.mock import MOCK_LOCATOR_PREFIX
from .types import BatchReport, Project, VideoAsset
from .utils.files import atomic_write, ensure_dir, write_text

VIDEO_MODES = ("all", "missing", "selected")


def concat_videos(sources: List[Path], output_path: Path) -> None:
    """Concatenate binary video clips with ffmpeg's concat demuxer (stream copy)."""
    resolved_sources: list[Path] = []
    missing_sources: list[str] = []
    for original in sources:
        expanded = original.expanduser()
        try:
            resolved = expanded.resolve(strict=True)
        except FileNotFoundError:
            missing_sources.append(str(expanded))
            continue
        resolved_sources.append(resolved)

    if missing_sources or not resolved_sources:
        missing = ", ".join(missing_sources) if missing_sources else "unknown sources"
        raise FileNotFoundError(f"Video clips missing for concat: {missing}")

    with tempfile.NamedTemporaryFile("w", suffix=".txt", delete=False, encoding="utf-8") as manifest:
        manifest_path = Path(manifest.name)
        for path in resolved_sources:
            line_path = str(path).replace("'", r"'\''")
            manifest.write(f"file '{line_path}'\n")

    try:
        cmd = [
            "ffmpeg",
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(manifest_path),
            "-c",
            "copy",
            str(output_path),
        ]
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise RuntimeError(
                "ffmpeg concat failed: "
                f"{result.stderr.strip() or result.stdout.strip() or 'unknown error'}"
            )
    except FileNotFoundError as exc:
        raise RuntimeError("ffmpeg is required to merge shot videos. Please install ffmpeg and retry.") from exc
    finally:
        manifest_path.unlink(missing_ok=True)


class VideoAssembler:
    """Renders transition clips for a project's shots and merges them.

    Regenerating a clip supersedes the previous :class:`VideoAsset` with a higher
    version; the superseded local file is deleted only once ``release_delay_sec``
    has passed.
    """

    def __init__(
        self,
        project: Project,
        video_model: VideoModel,
        *,
        outputs_dir: str | Path = "outputs",
        resolution: int = 512,
        poll_interval_sec: float = 2.0,
        max_poll_attempts: int = 1800,
        spacing_sec: float = 3.0,
        release_delay_sec: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.project = project
        self._video = video_model
        self._outputs_dir = ensure_dir(outputs_dir)
        self._resolution = resolution
        self._poll_interval = poll_interval_sec
        self._max_poll_attempts = max_poll_attempts
        self._spacing_sec = spacing_sec
        self._release_delay_sec = release_delay_sec
        self._sleep = sleep
        self._clock = clock
        self._notify = notify or (lambda message: None)
        self._pending_release: List[Tuple[float, Path]] = []

    # ------------------------------------------------------------------ targets

    def targets(self, mode: str = "all", selected: Iterable[int] = ()) -> List[int]:
        """Indices of the visible shots a batch in ``mode`` renders."""
        if mode not in VIDEO_MODES:
            raise ValueError(f"Unknown video mode {mode!r}; expected one of {', '.join(VIDEO_MODES)}")
        visible = self.project.visible_indices()
        if mode == "all":
            return visible
        if mode == "missing":
            return [idx for idx in visible if self.project.shots[idx].ordinal not in self.project.videos]
        chosen = set(selected)
        return [idx for idx in visible if idx in chosen]

    # ------------------------------------------------------------------ rendering

    def generate_videos(self, mode: str = "all", selected: Iterable[int] = ()) -> BatchReport:
        """Render clips for the targeted shots; untargeted clips are left untouched."""
        report = BatchReport(operation=f"generate_videos[{mode}]")
        for position, index in enumerate(self.targets(mode, selected)):
            if position:
                self._sleep(self._spacing_sec)
            ordinal = self.project.shots[index].ordinal
            try:
                asset = self.generate_video(index)
                report.succeeded.append(ordinal)
                self._notify(f"shot #{ordinal} video ready (v{asset.version})")
            except Exception as exc:
                report.failed[ordinal] = str(exc)
                self._notify(f"shot #{ordinal} video failed: {exc}")
        self.release_expired()
        return report

    def generate_video(self, index: int) -> VideoAsset:
        """Submit, wait for and store the clip starting at shot ``index``."""
        project = self.project
        shot = project.shots[index]
        if shot.is_deleted:
            raise ValueError(f"Shot #{shot.ordinal} is deleted")
        if shot.image is None:
            raise StoryboardError(f"Shot #{shot.ordinal} has no image")
        if shot.status != "success":
            raise StoryboardError(f"Shot #{shot.ordinal} has no valid video prompt")
        following = project.next_visible(index)
        end_image = None
        if following is not None:
            end_image = project.shots[following].image
            if end_image is None:
                raise StoryboardError(f"Shot #{project.shots[following].ordinal} has no image to end on")

        handle = self._video.submit(shot.image, end_image, shot.video_prompt, self._resolution, project.aspect_ratio)
        locator = self.wait_for_job(handle)

        previous = project.videos.get(shot.ordinal)
        asset = VideoAsset(
            shot_ordinal=shot.ordinal,
            locator=locator,
            version=previous.version + 1 if previous else 1,
        )
        asset.local_path = str(self._store_local(asset, self._video.fetch(locator)))
        if previous is not None:
            self._schedule_release(previous)
        project.videos[shot.ordinal] = asset
        project.merged_video = None
        return asset

    def wait_for_job(self, handle: JobHandle) -> str:
        """Poll until the job finishes; returns the output locator."""
        for attempt in range(1, self._max_poll_attempts + 1):
            status = self._video.poll(handle)
            if status.state == JobStatus.DONE and status.locator:
                return status.locator
            if status.state == JobStatus.FAILED:
                raise JobFailed(status.reason or "unknown error")
            if attempt % 30 == 0:
                self._notify(f"job {handle.job_id} still running (attempt {attempt})")
            self._sleep(self._poll_interval)
        raise JobTimeout(f"Video job {handle.job_id} not finished after {self._max_poll_attempts} polls")

    def _store_local(self, asset: VideoAsset, data: bytes) -> Path:
        ext = "txt" if asset.locator.startswith(MOCK_LOCATOR_PREFIX) else "mp4"
        path = self._outputs_dir / "videos" / f"shot_{asset.shot_ordinal:03d}_v{asset.version}.{ext}"
        return atomic_write(path, data)

    # ------------------------------------------------------------------ release

    def _schedule_release(self, asset: VideoAsset) -> None:
        if asset.local_path:
            self._pending_release.append((self._clock() + self._release_delay_sec, Path(asset.local_path)))

    def release_expired(self, *, force: bool = False) -> List[Path]:
        """Delete superseded local copies whose release delay has passed."""
        now = self._clock()
        released: List[Path] = []
        remaining: List[Tuple[float, Path]] = []
        for deadline, path in self._pending_release:
            if force or deadline <= now:
                path.unlink(missing_ok=True)
                released.append(path)
            else:
                remaining.append((deadline, path))
        self._pending_release = remaining
        return released

    # ------------------------------------------------------------------ merge

    def merge_videos(self, run_id: Optional[str] = None) -> Path:
        """Download every visible clip in shot order and concatenate them."""
        project = self.project
        clips = [
            project.videos[shot.ordinal]
            for shot in project.visible_shots()
            if shot.ordinal in project.videos
        ]
        if not clips:
            raise StoryboardError("No shot videos available to merge.")

        run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        work_dir = ensure_dir(self._outputs_dir / f"merge-{run_id}-{uuid.uuid4().hex[:6]}")
        downloaded: List[Path] = []
        for asset in clips:
            is_mock = asset.locator.startswith(MOCK_LOCATOR_PREFIX)
            target = work_dir / f"shot_{asset.shot_ordinal:03d}.{'txt' if is_mock else 'mp4'}"
            atomic_write(target, self._video.fetch(asset.locator))
            downloaded.append(target)

        binary = [path for path in downloaded if path.suffix.lower() not in {".txt", ".json"}]
        if binary:
            output_path = self._outputs_dir / f"{run_id}-final.mp4"
            concat_videos(binary, output_path)
        else:
            output_path = self._outputs_dir / f"{run_id}-final.txt"
            write_text(output_path, "\n\n".join(path.read_text(encoding="utf-8") for path in downloaded))

        project.merged_video = str(output_path)
        self.release_expired()
        return output_path
