"""Tests for per-shot video rendering and merging."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fakes import ScriptedVideoModel, SleepRecorder, make_project

from sbgen.assembly import VideoAssembler
from sbgen.errors import JobFailed, JobTimeout, StoryboardError
from sbgen.services.base import JobHandle, JobStatus


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class VideoAssemblerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.outputs = Path(self._tmp.name)
        self.sleep = SleepRecorder()
        self.clock = _Clock()

    def _assembler(self, project, video=None, **kwargs) -> VideoAssembler:
        return VideoAssembler(
            project,
            video or ScriptedVideoModel(),
            outputs_dir=self.outputs,
            sleep=self.sleep,
            clock=self.clock,
            **kwargs,
        )

    def test_generate_all_pairs_each_shot_with_next_visible(self) -> None:
        project = make_project(4, prompts=True)
        project.shots[2].is_deleted = True
        video = ScriptedVideoModel()
        assembler = self._assembler(project, video)

        report = assembler.generate_videos("all")

        self.assertEqual(report.succeeded, [1, 2, 4])
        ends = [job["end"] for job in video.submitted]
        self.assertEqual(ends, [project.shots[1].image, project.shots[3].image, None])
        self.assertEqual(self.sleep.calls, [3.0, 3.0])
        for asset in project.videos.values():
            self.assertTrue(Path(asset.local_path).is_file())
            self.assertTrue(asset.local_path.endswith("_v1.mp4"))

    def test_missing_mode_skips_rendered_shots(self) -> None:
        project = make_project(3, prompts=True)
        assembler = self._assembler(project)
        assembler.generate_video(0)

        self.assertEqual(assembler.targets("missing"), [1, 2])
        self.assertEqual(assembler.targets("selected", [2, 5]), [2])
        with self.assertRaises(ValueError):
            assembler.targets("everything")

    def test_regeneration_bumps_version_and_releases_later(self) -> None:
        project = make_project(2, prompts=True)
        assembler = self._assembler(project)
        first = assembler.generate_video(0)
        second = assembler.generate_video(0)

        self.assertEqual(second.version, 2)
        self.assertTrue(Path(first.local_path).is_file())
        self.assertEqual(assembler.release_expired(), [])

        self.clock.now += 6
        released = assembler.release_expired()

        self.assertEqual(released, [Path(first.local_path)])
        self.assertFalse(Path(first.local_path).exists())
        self.assertTrue(Path(second.local_path).is_file())

    def test_shot_without_valid_prompt_is_refused(self) -> None:
        project = make_project(2, prompts=True)
        project.shots[0].invalidate_video_prompt()
        assembler = self._assembler(project)

        with self.assertRaises(StoryboardError):
            assembler.generate_video(0)

        report = assembler.generate_videos("all")
        self.assertEqual(list(report.failed), [1])
        self.assertEqual(report.succeeded, [2])

    def test_wait_for_job_polls_until_done(self) -> None:
        video = ScriptedVideoModel([JobStatus.pending(), JobStatus.pending(), JobStatus.done("http://x/v.mp4")])
        assembler = self._assembler(make_project(1, prompts=True), video, poll_interval_sec=2.0)

        self.assertEqual(assembler.wait_for_job(JobHandle(job_id="j")), "http://x/v.mp4")
        self.assertEqual(self.sleep.calls, [2.0, 2.0])

    def test_wait_for_job_failure_and_timeout(self) -> None:
        failing = self._assembler(make_project(1), ScriptedVideoModel([JobStatus.failed("out of memory")]))
        with self.assertRaises(JobFailed):
            failing.wait_for_job(JobHandle(job_id="j"))

        stuck = ScriptedVideoModel([JobStatus.pending()] * 3)
        slow = self._assembler(make_project(1), stuck, max_poll_attempts=3)
        with self.assertRaises(JobTimeout):
            slow.wait_for_job(JobHandle(job_id="j"))

    def test_merge_concatenates_visible_clips_in_order(self) -> None:
        project = make_project(3, prompts=True)
        assembler = self._assembler(project)
        assembler.generate_videos("all")
        project.shots[1].is_deleted = True
        listed = []

        def fake_run(cmd, capture_output, text):
            manifest = Path(cmd[cmd.index("-i") + 1])
            listed.extend(manifest.read_text(encoding="utf-8").splitlines())
            Path(cmd[-1]).write_bytes(b"merged")
            return mock.Mock(returncode=0, stdout="", stderr="")

        with mock.patch("sbgen.assembly.subprocess.run", side_effect=fake_run) as run:
            output = assembler.merge_videos("run1")

        self.assertEqual(output, self.outputs / "run1-final.mp4")
        self.assertEqual(project.merged_video, str(output))
        self.assertEqual(run.call_args.args[0][:6], ["ffmpeg", "-y", "-f", "concat", "-safe", "0"])
        self.assertEqual(len(listed), 2)
        self.assertIn("shot_001.mp4", listed[0])
        self.assertIn("shot_003.mp4", listed[1])

    def test_merge_reports_ffmpeg_failure(self) -> None:
        project = make_project(1, prompts=True)
        assembler = self._assembler(project)
        assembler.generate_videos("all")

        with mock.patch(
            "sbgen.assembly.subprocess.run",
            return_value=mock.Mock(returncode=1, stdout="", stderr="Invalid data"),
        ):
            with self.assertRaises(RuntimeError) as ctx:
                assembler.merge_videos("run2")
        self.assertIn("Invalid data", str(ctx.exception))

    def test_merge_without_videos_fails(self) -> None:
        with self.assertRaises(StoryboardError):
            self._assembler(make_project(2)).merge_videos()


if __name__ == "__main__":
    unittest.main()
