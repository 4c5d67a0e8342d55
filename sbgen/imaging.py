"""Pillow helpers for reference preparation and aspect-ratio cropping."""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import NormalizationError
from .utils.files import sniff_image_extension

MAX_REFERENCE_DIM = 4096
DEFAULT_MAX_WIDTH = 1024


def parse_ratio(ratio: str) -> float:
    """Return ``W/H`` for a ``"W:H"`` string."""
    try:
        left, right = ratio.split(":", 1)
        width, height = float(left), float(right)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Aspect ratio must look like 'W:H', got {ratio!r}") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"Aspect ratio must be positive, got {ratio!r}")
    return width / height


def crop_box(width: int, height: int, ratio: str) -> Tuple[int, int, int, int]:
    """Largest centered box of ``ratio`` inside a ``width`` x ``height`` image.

    Sizes within one pixel of the target count as already matching, so
    cropping an already-cropped image is a no-op.
    """
    target = parse_ratio(ratio)
    if abs(width - height * target) < 1 or abs(height - width / target) < 1:
        return (0, 0, width, height)
    if width / height > target:
        new_width = max(1, round(height * target))
        left = (width - new_width) // 2
        return (left, 0, left + new_width, height)
    new_height = max(1, round(width / target))
    top = (height - new_height) // 2
    return (0, top, width, top + new_height)


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise NormalizationError(f"Cannot decode image bytes: {exc}") from exc
    if getattr(image, "n_frames", 1) > 1:
        image.seek(0)
    image = ImageOps.exif_transpose(image)
    if image.mode not in {"RGB", "RGBA"}:
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    return image


def image_size(data: bytes) -> Tuple[int, int]:
    return _open(data).size


def crop_to_ratio(data: bytes, ratio: str, max_width: int = DEFAULT_MAX_WIDTH) -> bytes:
    """Center-crop ``data`` to ``ratio`` and return PNG bytes.

    The output width is capped at ``max_width``; the height follows the ratio.
    Raises :class:`NormalizationError` when the bytes are not a decodable image.
    """
    image = _open(data)
    box = crop_box(image.width, image.height, ratio)
    if box != (0, 0, image.width, image.height):
        image = image.crop(box)

    if max_width and image.width > max_width:
        scaled_height = max(1, round(image.height * max_width / image.width))
        image = image.resize((max_width, scaled_height), Image.LANCZOS)

    output = BytesIO()
    image.save(output, format="PNG", optimize=True)
    return output.getvalue()


def prepare_reference(raw_bytes: bytes) -> Tuple[bytes, str]:
    """Convert large or exotic uploads into safe reference images.

    Returns ``(payload, ext)``. Bytes Pillow cannot decode are passed through
    unchanged with an extension guessed from their signature.
    """
    try:
        image = _open(raw_bytes)
    except NormalizationError:
        return raw_bytes, sniff_image_extension(raw_bytes)

    if max(image.size) > MAX_REFERENCE_DIM:
        image.thumbnail((MAX_REFERENCE_DIM, MAX_REFERENCE_DIM), Image.LANCZOS)

    has_alpha = "A" in image.getbands()
    format_ = "PNG" if has_alpha else "JPEG"
    ext = "png" if has_alpha else "jpg"

    output = BytesIO()
    save_kwargs = {"format": format_, "optimize": True}
    if format_ == "JPEG":
        save_kwargs["quality"] = 90
    image.save(output, **save_kwargs)
    return output.getvalue(), ext


def solid_png(width: int, height: int, color: Tuple[int, int, int]) -> bytes:
    """Render a flat-colour PNG; used by the offline providers and tests."""
    output = BytesIO()
    Image.new("RGB", (width, height), color).save(output, format="PNG")
    return output.getvalue()
