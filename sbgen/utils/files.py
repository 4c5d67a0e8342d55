"""File system helpers shared across the generator."""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpg"),
    (b"GIF8", "gif"),
    (b"RIFF", "webp"),
)


def ensure_dir(path: str | Path) -> Path:
    """Create the directory if it does not exist."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def read_binary(path: str | Path) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def write_text(path: str | Path, content: str) -> Path:
    """Write UTF-8 text to disk."""
    target = Path(path)
    ensure_dir(target.parent)
    target.write_text(content, encoding="utf-8")
    return target


def write_json(path: str | Path, data: Any) -> Path:
    """Serialize a Python object as JSON to disk."""
    payload = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    return write_text(path, payload)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sniff_image_extension(data: bytes, default: str = "png") -> str:
    """Guess an image extension from its magic bytes."""
    for signature, ext in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return ext
    return default


def mime_for_extension(ext: str) -> str:
    ext = ext.lower().lstrip(".")
    if ext in {"jpg", "jpeg"}:
        return "image/jpeg"
    return f"image/{ext}"


def atomic_write(path: str | Path, content: bytes) -> Path:
    """Write binary content to disk atomically."""
    target = Path(path)
    ensure_dir(target.parent)
    temp_path = target.with_suffix(target.suffix + ".tmp")
    with open(temp_path, "wb") as handle:
        handle.write(content)
    os.replace(temp_path, target)
    return target
