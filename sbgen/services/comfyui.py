"""ComfyUI HTTP client plus video and image models driven by workflow templates."""

from __future__ import annotations

import copy
import json
import random
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests

from ..config import ImageSettings, VideoSettings
from ..errors import JobFailed, JobTimeout, OutputNotFound, ProviderError, RateLimited
from ..imaging import parse_ratio
from .base import JobHandle, JobStatus

_SEED_KEYS = ("seed", "noise_seed")
_MAX_SEED = 2**48


def load_workflow(path: str | Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        workflow = json.load(handle)
    if not isinstance(workflow, dict):
        raise ProviderError(f"Workflow {path} must be a JSON object in ComfyUI API format")
    return workflow


def frame_size(resolution: int, aspect_ratio: str) -> Tuple[int, int]:
    """Width and height with the long edge at ``resolution``, both multiples of 16."""

    def _snap(value: float) -> int:
        return max(16, int(round(value / 16.0)) * 16)

    ratio = parse_ratio(aspect_ratio)
    if ratio >= 1:
        return _snap(resolution), _snap(resolution / ratio)
    return _snap(resolution * ratio), _snap(resolution)


def _is_link(value: Any) -> bool:
    return isinstance(value, list) and len(value) == 2 and isinstance(value[1], int)


def _node_inputs(workflow: Dict[str, Any], node_id: str) -> Dict[str, Any]:
    node = workflow.get(str(node_id))
    if not isinstance(node, dict):
        raise ProviderError(f"Workflow has no node {node_id}; available nodes: {', '.join(workflow)}")
    return node.setdefault("inputs", {})


def remove_node(workflow: Dict[str, Any], node_id: str) -> None:
    """Delete ``node_id`` and every input elsewhere that links to it."""
    node_id = str(node_id)
    workflow.pop(node_id, None)
    for node in workflow.values():
        inputs = node.get("inputs") if isinstance(node, dict) else None
        if not isinstance(inputs, dict):
            continue
        for key in [key for key, value in inputs.items() if _is_link(value) and str(value[0]) == node_id]:
            del inputs[key]


def apply_resolution(workflow: Dict[str, Any], resolution: int, aspect_ratio: str) -> None:
    width, height = frame_size(resolution, aspect_ratio)
    for node in workflow.values():
        inputs = node.get("inputs") if isinstance(node, dict) else None
        if not isinstance(inputs, dict):
            continue
        if isinstance(inputs.get("resolution"), (int, float)):
            inputs["resolution"] = resolution
        if isinstance(inputs.get("width"), (int, float)) and isinstance(inputs.get("height"), (int, float)):
            inputs["width"] = width
            inputs["height"] = height


def randomize_seeds(workflow: Dict[str, Any], rng: random.Random) -> None:
    for node in workflow.values():
        inputs = node.get("inputs") if isinstance(node, dict) else None
        if not isinstance(inputs, dict):
            continue
        for key in _SEED_KEYS:
            if isinstance(inputs.get(key), int):
                inputs[key] = rng.randrange(_MAX_SEED)


def _basename(path: str) -> str:
    return path.replace("\\", "/").rsplit("/", 1)[-1]


def _file_entry(item: Any) -> Optional[Tuple[str, str]]:
    if isinstance(item, str) and item:
        return item, ""
    if isinstance(item, dict) and item.get("filename"):
        return item["filename"], item.get("subfolder") or ""
    return None


def extract_video_output(output: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Return ``(filename, subfolder)`` from a save node's output, or None.

    Layouts are checked in order: VHS ``gifs`` as ``[enabled, [paths]]``,
    ``gifs`` entries, ``animated``, ``videos``, ``filenames``, ``ui.videos``
    and finally a bare ``filename``.
    """
    gifs = output.get("gifs")
    if isinstance(gifs, list) and len(gifs) >= 2 and isinstance(gifs[1], list):
        if gifs[1]:
            return _basename(str(gifs[1][-1])), ""
        return None
    if isinstance(gifs, list) and gifs:
        return _file_entry(gifs[0])

    for key in ("animated", "videos", "filenames"):
        items = output.get(key)
        if isinstance(items, list) and items:
            return _file_entry(items[0])

    ui = output.get("ui")
    if isinstance(ui, dict):
        videos = ui.get("videos")
        if isinstance(videos, list) and videos:
            return _file_entry(videos[0])

    return _file_entry(output.get("filename"))


def extract_image_output(output: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    images = output.get("images")
    if isinstance(images, list) and images:
        return _file_entry(images[0])
    return extract_video_output(output)


class ComfyUIClient:
    """Thin wrapper over the ComfyUI REST endpoints."""

    def __init__(self, endpoint: str, *, timeout: int = 60, session: Optional[requests.Session] = None) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def url(self, path: str) -> str:
        return f"{self._endpoint}/{path.lstrip('/')}"

    def view_url(self, filename: str, subfolder: str = "") -> str:
        params = {"filename": filename}
        if subfolder:
            params["subfolder"] = subfolder
        params["type"] = "output"
        return f"{self.url('/view')}?{urlencode(params)}"

    def upload_image(self, data: bytes, filename: str) -> str:
        response = self._send(
            "POST",
            "/upload/image",
            files={"image": (filename, data, "image/png")},
            data={"overwrite": "true"},
        )
        payload = response.json()
        return payload.get("name") or filename

    def queue_prompt(self, workflow: Dict[str, Any]) -> str:
        response = self._send("POST", "/prompt", json={"prompt": workflow})
        payload = response.json()
        prompt_id = payload.get("prompt_id")
        if not prompt_id:
            raise ProviderError(f"ComfyUI did not return a prompt_id: {payload}")
        return str(prompt_id)

    def in_queue(self, prompt_id: str) -> bool:
        try:
            response = self._session.get(self.url("/queue"), timeout=self._timeout)
        except requests.RequestException:
            return False
        if not response.ok:
            return False
        try:
            payload = response.json()
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False
        for key in ("queue_running", "queue_pending"):
            for item in payload.get(key) or []:
                if isinstance(item, list) and len(item) > 1 and item[1] == prompt_id:
                    return True
        return False

    def history(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        """Return the history mapping, or None when the endpoint is unavailable."""
        try:
            response = self._session.get(self.url(f"/history/{prompt_id}"), timeout=self._timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"ComfyUI history request failed: {exc}") from exc
        if not response.ok:
            print(f"ComfyUI history returned {response.status_code}, retrying...")
            return None
        return response.json() or {}

    def download(self, url: str) -> bytes:
        response = self._send("GET", url)
        return response.content

    def poll(
        self,
        handle: JobHandle,
        save_node: str,
        extract: Callable[[Dict[str, Any]], Optional[Tuple[str, str]]] = extract_video_output,
    ) -> JobStatus:
        """One polling step for ``handle``; updates ``handle.seen_in_queue``."""
        if self.in_queue(handle.job_id):
            handle.seen_in_queue = True
            return JobStatus.pending()

        history = self.history(handle.job_id)
        if history is None:
            return JobStatus.pending()
        record = history.get(handle.job_id)
        if not record:
            if handle.seen_in_queue:
                return JobStatus.failed("job disappeared from queue and history")
            return JobStatus.pending()

        outputs = record.get("outputs") or {}
        if outputs:
            node_output = outputs.get(str(save_node))
            if node_output is None:
                raise OutputNotFound(f"Save node {save_node} produced no output; available nodes", outputs.keys())
            located = extract(node_output)
            if located is None:
                raise OutputNotFound(f"No file found in save node {save_node} output; output keys", node_output.keys())
            filename, subfolder = located
            return JobStatus.done(self.view_url(filename, subfolder))

        status = record.get("status") or {}
        if status.get("status_str") == "error":
            return JobStatus.failed(json.dumps(status.get("messages") or [], ensure_ascii=False))
        return JobStatus.pending()

    def _send(self, method: str, path_or_url: str, **kwargs: Any) -> requests.Response:
        url = path_or_url if path_or_url.startswith("http") else self.url(path_or_url)
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise ProviderError(f"ComfyUI request to {url} failed: {exc}") from exc
        if response.status_code == 429:
            raise RateLimited(f"ComfyUI rate limited (429) on {url}")
        if not response.ok:
            raise ProviderError(f"ComfyUI {method} {url} failed [{response.status_code}]: {response.text[:200]}")
        return response


class ComfyUIVideoModel:
    """First/last-frame video generation through a ComfyUI workflow template."""

    def __init__(
        self,
        settings: VideoSettings,
        *,
        client: Optional[ComfyUIClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings
        self._client = client or ComfyUIClient(settings.endpoint, timeout=settings.timeout)
        self._rng = rng or random.Random()
        self._template: Optional[Dict[str, Any]] = None

    def build_job(
        self,
        start_name: str,
        end_name: Optional[str],
        prompt: str,
        resolution: int,
        aspect_ratio: str,
    ) -> Dict[str, Any]:
        """Fill a copy of the template; ``end_name=None`` removes the end frame."""
        settings = self._settings
        workflow = copy.deepcopy(self._load_template())
        _node_inputs(workflow, settings.prompt_node)["text"] = prompt
        _node_inputs(workflow, settings.start_frame_node)["image"] = start_name
        if end_name is None:
            remove_node(workflow, settings.end_frame_node)
        else:
            _node_inputs(workflow, settings.end_frame_node)["image"] = end_name
        apply_resolution(workflow, resolution, aspect_ratio)
        randomize_seeds(workflow, self._rng)
        return workflow

    def submit(
        self,
        start_image: bytes,
        end_image: Optional[bytes],
        prompt: str,
        resolution: int,
        aspect_ratio: str = "16:9",
    ) -> JobHandle:
        token = uuid.uuid4().hex[:12]
        start_name = self._client.upload_image(start_image, f"start_{token}.png")
        end_name = None
        if end_image is not None:
            end_name = self._client.upload_image(end_image, f"end_{token}.png")
        workflow = self.build_job(start_name, end_name, prompt, resolution, aspect_ratio)
        prompt_id = self._client.queue_prompt(workflow)
        print(f"ComfyUI queued video job {prompt_id} (terminal={end_image is None})")
        return JobHandle(job_id=prompt_id, terminal=end_image is None)

    def poll(self, handle: JobHandle) -> JobStatus:
        return self._client.poll(handle, self._settings.save_video_node)

    def fetch(self, locator: str) -> bytes:
        return self._client.download(locator)

    def _load_template(self) -> Dict[str, Any]:
        if self._template is None:
            self._template = load_workflow(self._settings.workflow_path)
        return self._template


class ComfyUIImageModel:
    """Image generation through a ComfyUI workflow; polls synchronously."""

    def __init__(
        self,
        settings: ImageSettings,
        *,
        client: Optional[ComfyUIClient] = None,
        rng: Optional[random.Random] = None,
        poll_interval: float = 2.0,
        max_poll_attempts: int = 1800,
        sleep: Callable[[float], None] = time.sleep,
        aspect_ratio: str = "16:9",
    ) -> None:
        if not settings.workflow_path:
            raise ValueError("ComfyUI image provider needs image.workflow_path")
        self._settings = settings
        self._client = client or ComfyUIClient(settings.endpoint)
        self._rng = rng or random.Random()
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self._aspect_ratio = aspect_ratio
        self._template: Optional[Dict[str, Any]] = None

    def generate(self, conditioning_images: Sequence[bytes], prompt: str) -> bytes:
        settings = self._settings
        if self._template is None:
            self._template = load_workflow(settings.workflow_path)
        workflow = copy.deepcopy(self._template)
        _node_inputs(workflow, settings.prompt_node)["text"] = prompt
        if conditioning_images:
            name = self._client.upload_image(conditioning_images[0], f"ref_{uuid.uuid4().hex[:12]}.png")
            _node_inputs(workflow, settings.load_image_node)["image"] = name
        else:
            remove_node(workflow, settings.load_image_node)
        apply_resolution(workflow, settings.resolution, self._aspect_ratio)
        randomize_seeds(workflow, self._rng)

        handle = JobHandle(job_id=self._client.queue_prompt(workflow))
        for _ in range(self._max_poll_attempts):
            status = self._client.poll(handle, settings.save_image_node, extract_image_output)
            if status.state == JobStatus.DONE:
                return self._client.download(status.locator)
            if status.state == JobStatus.FAILED:
                raise JobFailed(status.reason or "unknown error")
            self._sleep(self._poll_interval)
        raise JobTimeout(f"ComfyUI image job {handle.job_id} not ready after {self._max_poll_attempts} attempts")


__all__ = [
    "ComfyUIClient",
    "ComfyUIVideoModel",
    "ComfyUIImageModel",
    "extract_video_output",
    "extract_image_output",
    "frame_size",
    "remove_node",
    "apply_resolution",
    "randomize_seeds",
    "load_workflow",
]
