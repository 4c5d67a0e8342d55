"""Gemini language and image clients built on the google-genai SDK."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from google import genai
from google.genai import errors, types

from ..errors import BlockedBySafety, EmptyResponse, ProviderError, RateLimited
from ..utils.files import mime_for_extension, sniff_image_extension

_SAFETY_REASONS = {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    name = getattr(value, "name", None)
    return str(name or value)


def _image_parts(images: Sequence[bytes]) -> list:
    return [
        types.Part.from_bytes(data=data, mime_type=mime_for_extension(sniff_image_extension(data)))
        for data in images
    ]


def _translate_api_error(exc: errors.APIError) -> ProviderError:
    if getattr(exc, "code", None) == 429:
        return RateLimited(f"Gemini quota exceeded (429): {exc}")
    return ProviderError(f"Gemini API error: {exc}")


def _block_reason(response: Any) -> Optional[str]:
    """Return the prompt-level block reason or the first candidate's finish reason."""
    feedback = getattr(response, "prompt_feedback", None)
    reason = _enum_name(getattr(feedback, "block_reason", None)) if feedback else None
    if reason:
        return reason
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        return _enum_name(getattr(candidates[0], "finish_reason", None))
    return None


class _GeminiClientMixin:
    _api_key: Optional[str]
    _client: Any

    def _resolve_client(self):
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise ValueError("Gemini API key is missing; cannot call service.")
        self._client = genai.Client(api_key=self._api_key)
        return self._client


class GeminiLanguageModel(_GeminiClientMixin):
    """Text generation with optional image parts and structured JSON output."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash", client: Any = None) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client

    def complete(
        self,
        prompt: str,
        *,
        json_mode: bool = False,
        schema: Optional[Mapping[str, Any]] = None,
        images: Sequence[bytes] = (),
    ) -> str:
        client = self._resolve_client()
        parts = _image_parts(images)
        parts.append(types.Part.from_text(text=prompt))
        config = None
        if json_mode:
            config = types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=dict(schema) if schema else None,
            )
        try:
            response = client.models.generate_content(model=self._model, contents=parts, config=config)
        except errors.APIError as exc:
            raise _translate_api_error(exc) from exc

        text = response.text
        if not text or not text.strip():
            raise EmptyResponse(_block_reason(response))
        return text


class GeminiImageModel(_GeminiClientMixin):
    """Reference-conditioned image generation."""

    def __init__(
        self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash-image", client: Any = None
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client

    def generate(self, conditioning_images: Sequence[bytes], prompt: str) -> bytes:
        client = self._resolve_client()
        parts = _image_parts(conditioning_images)
        parts.append(types.Part.from_text(text=prompt))
        try:
            response = client.models.generate_content(
                model=self._model,
                contents=parts,
                config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
            )
        except errors.APIError as exc:
            raise _translate_api_error(exc) from exc

        candidates = getattr(response, "candidates", None) or []
        if candidates and candidates[0].content and candidates[0].content.parts:
            for part in candidates[0].content.parts:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    return inline.data

        reason = _block_reason(response)
        if reason in _SAFETY_REASONS:
            raise BlockedBySafety(reason)
        raise EmptyResponse(reason)
