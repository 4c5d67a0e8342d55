"""Per-run prompt, response and event logs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .files import ensure_dir, write_json, write_text


@dataclass(slots=True)
class StepLogPaths:
    prompt_path: Path
    response_path: Path


class RunLogger:
    """Persists prompts and responses under ``runs/<run_id>``.

    Steps that call a model more than once (one call per shot) pass a suffixed
    step name such as ``SynthesizeImages-3`` so each call keeps its own files.
    Progress messages go to stdout and to ``runs/<run_id>/events.log``.
    """

    def __init__(self, base_dir: str | Path = "runs", *, echo: bool = True) -> None:
        self._base_dir = ensure_dir(base_dir)
        self._echo = echo

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def run_dir(self, run_id: str) -> Path:
        return ensure_dir(self._base_dir / run_id)

    def step_paths(self, run_id: str, step_name: str) -> StepLogPaths:
        """Return the paths used for logging a specific step."""
        run_root = self.run_dir(run_id)
        prompt_path = run_root / f"{step_name}-prompt.txt"
        response_path = run_root / f"{step_name}-response.json"
        return StepLogPaths(prompt_path=prompt_path, response_path=response_path)

    def log_prompt(self, run_id: str, step_name: str, prompt: str) -> None:
        paths = self.step_paths(run_id, step_name)
        write_text(paths.prompt_path, prompt)

    def log_response(self, run_id: str, step_name: str, response: Any) -> None:
        paths = self.step_paths(run_id, step_name)
        write_json(paths.response_path, response)

    def log_event(self, run_id: str, step_name: str, message: str) -> None:
        """Print a progress line and append it to the run's event log."""
        line = f"[{step_name}] {message}"
        if self._echo:
            print(line)
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        with open(self.run_dir(run_id) / "events.log", "a", encoding="utf-8") as handle:
            handle.write(f"{stamp} {line}\n")
