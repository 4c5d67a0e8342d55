"""Tests for the retry policy and batch pacing."""

from __future__ import annotations

import unittest

from fakes import ScriptedImageModel, ScriptedLanguageModel, SleepRecorder, png

from sbgen.errors import BlockedBySafety, ProviderError, RateLimited
from sbgen.retry import BatchThrottle, RetryPolicy, is_rate_limited
from sbgen.types import Shot


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class RetryPolicyTest(unittest.TestCase):
    def setUp(self) -> None:
        self.sleep = SleepRecorder()
        self.language = ScriptedLanguageModel()
        self.policy = RetryPolicy(self.language, sleep=self.sleep)

    def test_rate_limit_waits_then_retries_once(self) -> None:
        outcomes = [RateLimited("quota"), "ok"]

        def flaky() -> str:
            item = outcomes.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        self.assertEqual(self.policy.call(flaky), "ok")
        self.assertEqual(self.sleep.calls, [60.0])

    def test_second_rate_limit_propagates(self) -> None:
        calls = []

        def always_limited() -> str:
            calls.append(1)
            raise RateLimited("quota")

        with self.assertRaises(RateLimited):
            self.policy.call(always_limited)
        self.assertEqual(len(calls), 2)

    def test_other_errors_are_not_retried(self) -> None:
        calls = []

        def broken() -> str:
            calls.append(1)
            raise ProviderError("bad request")

        with self.assertRaises(ProviderError):
            self.policy.call(broken)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleep.calls, [])

    def test_is_rate_limited_recognizes_status_codes(self) -> None:
        self.assertTrue(is_rate_limited(_StatusError(429)))
        self.assertFalse(is_rate_limited(_StatusError(500)))
        self.assertTrue(is_rate_limited(RuntimeError("Resource exhausted: quota exceeded")))

    def test_safety_block_rewrites_prompt_once(self) -> None:
        image = png()
        model = ScriptedImageModel([BlockedBySafety("SAFETY"), image])
        self.language.responses = ['"a friendly dog sits in a sunny park"']
        shot = Shot(ordinal=1, image_prompt="a dog bites a man")

        result = self.policy.generate_shot_image(model, [], shot, lambda scene: f"render: {scene}")

        self.assertEqual(result, image)
        self.assertEqual(shot.image_prompt, "a friendly dog sits in a sunny park")
        self.assertEqual(model.calls[1]["prompt"], "render: a friendly dog sits in a sunny park")
        self.assertIn("a dog bites a man", self.language.calls[0]["prompt"])

    def test_second_safety_block_raises_the_first(self) -> None:
        first = BlockedBySafety("first")
        model = ScriptedImageModel([first, BlockedBySafety("second")])
        self.language.responses = ["a calmer scene"]
        shot = Shot(ordinal=1, image_prompt="violent scene")

        with self.assertRaises(BlockedBySafety) as ctx:
            self.policy.generate_shot_image(model, [], shot, lambda scene: scene)
        self.assertIs(ctx.exception, first)
        self.assertEqual(len(model.calls), 2)
        self.assertEqual(len(self.language.calls), 1)
        self.assertEqual(shot.image_prompt, "a calmer scene")
        self.assertEqual(model.calls[1]["prompt"], "a calmer scene")

    def test_block_after_rate_limit_is_not_rewritten(self) -> None:
        model = ScriptedImageModel([RateLimited("429"), BlockedBySafety("SAFETY")])
        shot = Shot(ordinal=2, image_prompt="scene")

        with self.assertRaises(BlockedBySafety):
            self.policy.generate_shot_image(model, [], shot, lambda scene: scene)
        self.assertEqual(len(model.calls), 2)
        self.assertEqual(self.language.calls, [])
        self.assertEqual(shot.image_prompt, "scene")
        self.assertEqual(self.sleep.calls, [60.0])

    def test_rate_limit_cooldown_is_announced(self) -> None:
        messages = []
        policy = RetryPolicy(self.language, sleep=self.sleep, cooldown_sec=5.0, notify=messages.append)
        outcomes = [_StatusError(429), "ok"]

        def flaky() -> str:
            item = outcomes.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        self.assertEqual(policy.call(flaky), "ok")
        self.assertEqual(self.sleep.calls, [5.0])
        self.assertEqual(len(messages), 1)
        self.assertIn("attempt 1", messages[0])

    def test_failed_rewrite_raises_the_block(self) -> None:
        model = ScriptedImageModel([BlockedBySafety("IMAGE_SAFETY")])
        self.language.responses = [""]
        shot = Shot(ordinal=3, image_prompt="scene")

        with self.assertRaises(BlockedBySafety):
            self.policy.generate_shot_image(model, [], shot, lambda scene: scene)
        self.assertEqual(shot.image_prompt, "scene")
        self.assertEqual(len(model.calls), 1)

    def test_image_rate_limit_cools_down(self) -> None:
        image = png()
        model = ScriptedImageModel([RateLimited("429"), image])
        shot = Shot(ordinal=1, image_prompt="scene")

        self.assertEqual(self.policy.generate_shot_image(model, [], shot, lambda scene: scene), image)
        self.assertEqual(self.sleep.calls, [60.0])


class BatchThrottleTest(unittest.TestCase):
    def _run(self, total: int) -> list:
        sleep = SleepRecorder()
        throttle = BatchThrottle(total, sleep=sleep)
        for _ in range(total):
            throttle.after_call()
        return sleep.calls

    def test_no_pause_when_nothing_follows(self) -> None:
        self.assertEqual(self._run(9), [])
        self.assertEqual(self._run(18), [60.0])

    def test_pauses_after_every_ninth_call(self) -> None:
        self.assertEqual(self._run(10), [60.0])
        self.assertEqual(self._run(20), [60.0, 60.0])

    def test_pace_yields_every_item(self) -> None:
        sleep = SleepRecorder()
        items = list(BatchThrottle.pace(range(12), sleep=sleep))
        self.assertEqual(items, list(range(12)))
        self.assertEqual(sleep.calls, [60.0])


if __name__ == "__main__":
    unittest.main()
