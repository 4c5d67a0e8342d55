"""OpenAI-compatible chat completions client (text only)."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import openai
from openai import OpenAI

from ..errors import EmptyResponse, ProviderError, RateLimited

_COMPLETIONS_SUFFIX = "/chat/completions"


def _base_url(endpoint: Optional[str]) -> Optional[str]:
    """Accept either a base URL or a full ``.../chat/completions`` endpoint."""
    if not endpoint:
        return None
    url = endpoint.rstrip("/")
    if url.endswith(_COMPLETIONS_SUFFIX):
        url = url[: -len(_COMPLETIONS_SUFFIX)]
    return url


class OpenAICompatibleLanguageModel:
    """Chat-completions backend for local or hosted OpenAI-style servers.

    Image conditioning is not sent; these servers are treated as text-only.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: int = 120,
        client: Any = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = _base_url(endpoint)
        self._model = model
        self._timeout = timeout
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
        request: dict = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.7,
            "timeout": self._timeout,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}
        try:
            response = client.chat.completions.create(**request)
        except openai.RateLimitError as exc:
            raise RateLimited(f"OpenAI-compatible endpoint rate limited (429): {exc}") from exc
        except openai.APIStatusError as exc:
            if exc.status_code == 429:
                raise RateLimited(str(exc)) from exc
            raise ProviderError(f"OpenAI-compatible API error [{exc.status_code}]: {exc}") from exc
        except openai.APIError as exc:
            raise ProviderError(f"OpenAI-compatible API error: {exc}") from exc

        text = self._extract_text(response)
        if not text or not text.strip():
            raise EmptyResponse(self._finish_reason(response))
        return text

    def _resolve_client(self):
        if self._client is not None:
            return self._client
        self._client = OpenAI(api_key=self._api_key or "EMPTY", base_url=self._base_url)
        return self._client

    @staticmethod
    def _extract_text(response) -> str | None:
        """Extract assistant text content from OpenAI-compatible responses."""
        choices = getattr(response, "choices", None)
        if not choices and isinstance(response, dict):
            choices = response.get("choices")
        if isinstance(choices, list) and choices:
            choice = choices[0]
            message = getattr(choice, "message", None)
            if message is None and isinstance(choice, dict):
                message = choice.get("message")
            if message:
                content = getattr(message, "content", None)
                if content is None and isinstance(message, dict):
                    content = message.get("content")
                if isinstance(content, str):
                    return content
        return None

    @staticmethod
    def _finish_reason(response) -> str | None:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return None
        choice = choices[0]
        message = getattr(choice, "message", None)
        refusal = getattr(message, "refusal", None) if message is not None else None
        return refusal or getattr(choice, "finish_reason", None)
