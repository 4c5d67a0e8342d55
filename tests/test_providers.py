"""Tests for the provider adapters and the provider factory."""

from __future__ import annotations

import unittest
from types import SimpleNamespace

from fakes import png
from google.genai import errors

from sbgen.config import PipelineConfig, ProviderConfig
from sbgen.errors import BlockedBySafety, EmptyResponse, RateLimited
from sbgen.services.base import build_providers
from sbgen.services.comfyui import ComfyUIVideoModel
from sbgen.services.gemini import GeminiImageModel, GeminiLanguageModel
from sbgen.services.mock import MockLanguageModel
from sbgen.services.openai_compat import OpenAICompatibleLanguageModel, _base_url


class _FakeGeminiClient:
    def __init__(self, response=None, error=None) -> None:
        self.requests = []
        self._response = response
        self._error = error
        self.models = self

    def generate_content(self, *, model, contents, config=None):
        self.requests.append({"model": model, "contents": contents, "config": config})
        if self._error is not None:
            raise self._error
        return self._response


def _image_response(data=None, finish_reason=None, block_reason=None):
    parts = [SimpleNamespace(inline_data=SimpleNamespace(data=data))] if data else []
    candidate = SimpleNamespace(content=SimpleNamespace(parts=parts), finish_reason=finish_reason)
    feedback = SimpleNamespace(block_reason=block_reason) if block_reason else None
    return SimpleNamespace(candidates=[candidate], prompt_feedback=feedback, text=None)


class GeminiTest(unittest.TestCase):
    def test_image_bytes_are_returned(self) -> None:
        client = _FakeGeminiClient(_image_response(data=b"image-bytes"))
        model = GeminiImageModel(client=client)

        self.assertEqual(model.generate([png()], "a dog"), b"image-bytes")
        self.assertEqual(len(client.requests[0]["contents"]), 2)

    def test_safety_finish_reason_raises_blocked(self) -> None:
        model = GeminiImageModel(client=_FakeGeminiClient(_image_response(finish_reason="IMAGE_SAFETY")))
        with self.assertRaises(BlockedBySafety) as ctx:
            model.generate([], "a dog")
        self.assertEqual(ctx.exception.reason, "IMAGE_SAFETY")

    def test_prompt_block_reason_takes_precedence(self) -> None:
        response = _image_response(finish_reason="STOP", block_reason=SimpleNamespace(name="PROHIBITED_CONTENT"))
        with self.assertRaises(BlockedBySafety):
            GeminiImageModel(client=_FakeGeminiClient(response)).generate([], "x")

    def test_no_image_without_safety_is_empty(self) -> None:
        model = GeminiImageModel(client=_FakeGeminiClient(_image_response(finish_reason="STOP")))
        with self.assertRaises(EmptyResponse):
            model.generate([], "x")

    def test_quota_error_maps_to_rate_limited(self) -> None:
        error = errors.ClientError(429, {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}})
        model = GeminiLanguageModel(client=_FakeGeminiClient(error=error))
        with self.assertRaises(RateLimited):
            model.complete("hello")

    def test_json_mode_requests_structured_output(self) -> None:
        client = _FakeGeminiClient(SimpleNamespace(text='[{"image_prompt": "a"}]'))
        model = GeminiLanguageModel(client=client)

        text = model.complete("draft", json_mode=True, schema={"type": "ARRAY"})

        self.assertEqual(text, '[{"image_prompt": "a"}]')
        self.assertEqual(client.requests[0]["config"].response_mime_type, "application/json")

    def test_missing_key_is_reported(self) -> None:
        with self.assertRaises(ValueError):
            GeminiLanguageModel(api_key=None).complete("hello")


class _FakeCompletions:
    def __init__(self, response) -> None:
        self.response = response
        self.requests = []

    def create(self, **request):
        self.requests.append(request)
        return self.response


def _openai_client(content, finish_reason="stop"):
    message = SimpleNamespace(content=content, refusal=None)
    response = SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])
    completions = _FakeCompletions(response)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class OpenAICompatibleTest(unittest.TestCase):
    def test_base_url_accepts_full_endpoint(self) -> None:
        self.assertEqual(_base_url("http://localhost:1234/v1/chat/completions"), "http://localhost:1234/v1")
        self.assertEqual(_base_url("http://localhost:1234/v1/"), "http://localhost:1234/v1")
        self.assertIsNone(_base_url(None))

    def test_json_mode_sets_response_format(self) -> None:
        client, completions = _openai_client('{"shots": []}')
        model = OpenAICompatibleLanguageModel(model="local-model", client=client)

        self.assertEqual(model.complete("draft", json_mode=True, images=[b"ignored"]), '{"shots": []}')
        request = completions.requests[0]
        self.assertEqual(request["response_format"], {"type": "json_object"})
        self.assertEqual(request["messages"], [{"role": "user", "content": "draft"}])

    def test_empty_content_raises_with_reason(self) -> None:
        client, _ = _openai_client("", finish_reason="length")
        with self.assertRaises(EmptyResponse) as ctx:
            OpenAICompatibleLanguageModel(client=client).complete("hello")
        self.assertEqual(ctx.exception.reason, "length")


class FactoryTest(unittest.TestCase):
    def test_mock_generation_uses_offline_providers(self) -> None:
        providers = build_providers(PipelineConfig(enable_mock_generation=True))
        self.assertIsInstance(providers.language, MockLanguageModel)

    def test_live_settings_select_adapters(self) -> None:
        settings = ProviderConfig.from_dict(
            {
                "languageModel": {"provider": "openai_compatible", "endpoint": "http://llm.local/v1", "model": "m"},
                "imageModel": {"provider": "gemini", "apiKey": "key"},
            }
        )
        providers = build_providers(PipelineConfig(enable_mock_generation=False, providers=settings))

        self.assertIsInstance(providers.language, OpenAICompatibleLanguageModel)
        self.assertIsInstance(providers.image, GeminiImageModel)
        self.assertIsInstance(providers.video, ComfyUIVideoModel)

    def test_unknown_provider_is_rejected(self) -> None:
        settings = ProviderConfig.from_dict({"language": {"provider": "carrier-pigeon"}})
        with self.assertRaises(ValueError):
            build_providers(PipelineConfig(enable_mock_generation=False, providers=settings))


if __name__ == "__main__":
    unittest.main()
