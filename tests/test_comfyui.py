"""Tests for the ComfyUI workflow helpers and job polling."""

from __future__ import annotations

import random
import unittest
from unittest import mock

from sbgen.config import VideoSettings
from sbgen.errors import OutputNotFound, ProviderError, RateLimited
from sbgen.services.base import JobHandle, JobStatus
from sbgen.services.comfyui import (
    ComfyUIClient,
    ComfyUIVideoModel,
    extract_video_output,
    frame_size,
    remove_node,
)


def _response(payload=None, status: int = 200) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = payload
    response.text = "" if payload is None else str(payload)
    response.content = b"video-bytes"
    return response


def _session(queue=None, history=None) -> mock.Mock:
    """A fake ``requests.Session`` answering /queue and /history from fixed payloads."""
    session = mock.Mock()

    def get(url, timeout=None):
        if url.endswith("/queue"):
            return _response(queue or {"queue_running": [], "queue_pending": []})
        if "/history/" in url:
            return _response(history if history is not None else {})
        raise AssertionError(f"unexpected GET {url}")

    session.get.side_effect = get
    return session


class WorkflowTest(unittest.TestCase):
    def setUp(self) -> None:
        self.model = ComfyUIVideoModel(VideoSettings(), client=mock.Mock(), rng=random.Random(7))

    def test_frame_size_uses_long_edge(self) -> None:
        self.assertEqual(frame_size(512, "16:9"), (512, 288))
        self.assertEqual(frame_size(512, "9:16"), (288, 512))
        width, height = frame_size(720, "16:9")
        self.assertEqual((width % 16, height % 16), (0, 0))

    def test_transition_job_binds_both_frames(self) -> None:
        workflow = self.model.build_job("start_a.png", "end_a.png", "the dog jumps", 512, "16:9")

        self.assertEqual(workflow["6"]["inputs"]["text"], "the dog jumps")
        self.assertEqual(workflow["68"]["inputs"]["image"], "start_a.png")
        self.assertEqual(workflow["62"]["inputs"]["image"], "end_a.png")
        self.assertEqual(workflow["67"]["inputs"]["end_image"], ["62", 0])
        self.assertEqual((workflow["67"]["inputs"]["width"], workflow["67"]["inputs"]["height"]), (512, 288))
        self.assertIsInstance(workflow["3"]["inputs"]["seed"], int)

    def test_terminal_job_drops_end_frame(self) -> None:
        workflow = self.model.build_job("start_b.png", None, "closing shot", 512, "9:16")

        self.assertNotIn("62", workflow)
        self.assertNotIn("end_image", workflow["67"]["inputs"])
        self.assertEqual(workflow["68"]["inputs"]["image"], "start_b.png")
        self.assertEqual(workflow["67"]["inputs"]["start_image"], ["68", 0])

    def test_template_is_not_mutated(self) -> None:
        self.model.build_job("s.png", None, "first", 512, "16:9")
        workflow = self.model.build_job("s.png", "e.png", "second", 512, "16:9")
        self.assertIn("62", workflow)

    def test_remove_node_strips_links(self) -> None:
        workflow = {
            "1": {"inputs": {"image": "x.png"}},
            "2": {"inputs": {"source": ["1", 0], "strength": 1.0}},
        }
        remove_node(workflow, "1")
        self.assertEqual(workflow, {"2": {"inputs": {"strength": 1.0}}})


class OutputExtractionTest(unittest.TestCase):
    def test_vhs_gifs_tuple_takes_last_path(self) -> None:
        output = {"gifs": [True, ["/out/storyboard/a.png", "/out/storyboard/shot_0001.mp4"]]}
        self.assertEqual(extract_video_output(output), ("shot_0001.mp4", ""))

    def test_precedence_order(self) -> None:
        output = {
            "gifs": [{"filename": "g.mp4", "subfolder": "storyboard"}],
            "videos": [{"filename": "v.mp4"}],
        }
        self.assertEqual(extract_video_output(output), ("g.mp4", "storyboard"))
        self.assertEqual(extract_video_output({"animated": ["a.webp"], "videos": ["v.mp4"]}), ("a.webp", ""))
        self.assertEqual(extract_video_output({"filenames": [{"filename": "f.mp4"}]}), ("f.mp4", ""))
        self.assertEqual(extract_video_output({"ui": {"videos": [{"filename": "u.mp4"}]}}), ("u.mp4", ""))
        self.assertEqual(extract_video_output({"filename": "plain.mp4"}), ("plain.mp4", ""))
        self.assertIsNone(extract_video_output({"text": ["nothing"]}))


class PollingTest(unittest.TestCase):
    def test_queued_job_is_pending(self) -> None:
        client = ComfyUIClient("http://comfy.local", session=_session(queue={"queue_running": [[0, "p1"]]}))
        handle = JobHandle(job_id="p1")

        self.assertEqual(client.poll(handle, "107").state, JobStatus.PENDING)
        self.assertTrue(handle.seen_in_queue)

    def test_job_not_yet_visible_stays_pending(self) -> None:
        client = ComfyUIClient("http://comfy.local", session=_session(history={}))
        self.assertEqual(client.poll(JobHandle(job_id="p1"), "107").state, JobStatus.PENDING)

    def test_unreadable_queue_body_counts_as_not_queued(self) -> None:
        session = _session(history={})
        garbled = _response()
        garbled.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        session.get.side_effect = lambda url, timeout=None: garbled if url.endswith("/queue") else _response({})
        client = ComfyUIClient("http://comfy.local", session=session)
        handle = JobHandle(job_id="p1")

        self.assertFalse(client.in_queue("p1"))
        self.assertEqual(client.poll(handle, "107").state, JobStatus.PENDING)
        self.assertFalse(handle.seen_in_queue)

    def test_job_vanished_after_queue_fails(self) -> None:
        client = ComfyUIClient("http://comfy.local", session=_session(history={}))
        status = client.poll(JobHandle(job_id="p1", seen_in_queue=True), "107")
        self.assertEqual(status.state, JobStatus.FAILED)

    def test_finished_job_returns_view_url(self) -> None:
        history = {"p1": {"outputs": {"107": {"gifs": [{"filename": "shot.mp4", "subfolder": "sb"}]}}}}
        client = ComfyUIClient("http://comfy.local/", session=_session(history=history))

        status = client.poll(JobHandle(job_id="p1"), "107")

        self.assertEqual(status.state, JobStatus.DONE)
        self.assertEqual(status.locator, "http://comfy.local/view?filename=shot.mp4&subfolder=sb&type=output")

    def test_missing_save_node_lists_available_keys(self) -> None:
        history = {"p1": {"outputs": {"9": {"images": []}}}}
        client = ComfyUIClient("http://comfy.local", session=_session(history=history))

        with self.assertRaises(OutputNotFound) as ctx:
            client.poll(JobHandle(job_id="p1"), "107")
        self.assertEqual(ctx.exception.available_keys, ["9"])

    def test_error_status_fails_job(self) -> None:
        history = {"p1": {"outputs": {}, "status": {"status_str": "error", "messages": [["execution_error", {}]]}}}
        client = ComfyUIClient("http://comfy.local", session=_session(history=history))

        status = client.poll(JobHandle(job_id="p1"), "107")

        self.assertEqual(status.state, JobStatus.FAILED)
        self.assertIn("execution_error", status.reason)


class TransportTest(unittest.TestCase):
    def test_http_429_maps_to_rate_limited(self) -> None:
        session = mock.Mock()
        session.request.return_value = _response({"error": "busy"}, status=429)
        client = ComfyUIClient("http://comfy.local", session=session)

        with self.assertRaises(RateLimited):
            client.queue_prompt({})

    def test_missing_prompt_id_is_provider_error(self) -> None:
        session = mock.Mock()
        session.request.return_value = _response({"node_errors": {}})
        client = ComfyUIClient("http://comfy.local", session=session)

        with self.assertRaises(ProviderError):
            client.queue_prompt({})

    def test_submit_uploads_frames_and_queues(self) -> None:
        session = mock.Mock()
        session.request.side_effect = [
            _response({"name": "start_up.png"}),
            _response({"name": "end_up.png"}),
            _response({"prompt_id": "abc"}),
        ]
        model = ComfyUIVideoModel(VideoSettings(), client=ComfyUIClient("http://comfy.local", session=session))

        handle = model.submit(b"start", b"end", "motion", 512, "16:9")

        self.assertEqual(handle.job_id, "abc")
        self.assertFalse(handle.terminal)
        queued = session.request.call_args_list[2].kwargs["json"]["prompt"]
        self.assertEqual(queued["68"]["inputs"]["image"], "start_up.png")
        self.assertEqual(queued["62"]["inputs"]["image"], "end_up.png")


if __name__ == "__main__":
    unittest.main()
