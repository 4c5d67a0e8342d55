"""Retry, prompt sanitization and batch pacing around unreliable backends."""

from __future__ import annotations

import time
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from .errors import BlockedBySafety, EmptyResponse, RateLimited
from .services.base import ImageModel, LanguageModel
from .types import Shot
from .utils.prompts import load_prompt

T = TypeVar("T")

MAX_ATTEMPTS = 2
RATE_LIMIT_COOLDOWN_SEC = 60.0
BATCH_SIZE = 9
BATCH_COOLDOWN_SEC = 60.0

Sleep = Callable[[float], None]
Notify = Callable[[str], None]


def is_rate_limited(exc: BaseException) -> bool:
    """Recognize quota / HTTP 429 failures from any provider."""
    if isinstance(exc, RateLimited):
        return True
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if value == 429 or value == "429":
            return True
    message = str(exc)
    return "429" in message or "quota" in message.lower()


class RetryPolicy:
    """Wraps provider calls with the bounded rate-limit and safety retries.

    Every operation gets at most :data:`MAX_ATTEMPTS` attempts. A rate limit
    waits out the cooldown before the second attempt. A safety block on the
    first image attempt asks the language model for a compliant rewrite of the
    shot's prompt, stores it on the shot and tries once more.
    """

    def __init__(
        self,
        language: LanguageModel,
        *,
        sleep: Sleep = time.sleep,
        cooldown_sec: float = RATE_LIMIT_COOLDOWN_SEC,
        notify: Optional[Notify] = None,
    ) -> None:
        self._language = language
        self._sleep = sleep
        self._cooldown_sec = cooldown_sec
        self._notify = notify or (lambda message: None)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke ``func`` retrying once after a rate-limit cooldown."""
        return self._retrying(is_rate_limited)(func, *args, **kwargs)

    def generate_shot_image(
        self,
        image_model: ImageModel,
        conditioning: Sequence[bytes],
        shot: Shot,
        compose: Callable[[str], str],
    ) -> bytes:
        """Generate the image for ``shot`` with the rate-limit and safety retries.

        ``compose`` turns the shot's scene description into the final image prompt.
        """
        prompt = compose(shot.image_prompt)
        first_block: Optional[BlockedBySafety] = None
        rewritten = False

        def retryable(exc: BaseException) -> bool:
            if isinstance(exc, BlockedBySafety):
                return rewritten and exc is first_block
            return is_rate_limited(exc)

        for attempt in self._retrying(retryable):
            with attempt:
                try:
                    return image_model.generate(conditioning, prompt)
                except BlockedBySafety as blocked:
                    if first_block is not None:
                        raise first_block from blocked
                    first_block = blocked
                    if attempt.retry_state.attempt_number >= MAX_ATTEMPTS:
                        raise
                    self._notify(f"shot #{shot.ordinal} blocked ({blocked.reason}); rewriting prompt")
                    try:
                        sanitized = self.sanitize(shot.image_prompt)
                    except Exception as exc:
                        raise blocked from exc
                    shot.image_prompt = sanitized
                    prompt = compose(sanitized)
                    rewritten = True
                    raise
        raise AssertionError("retry loop ended without a result")

    def sanitize(self, image_prompt: str) -> str:
        """Ask the language model for a policy-compliant rewrite of ``image_prompt``."""
        text = self._language.complete(load_prompt("sanitize_image_prompt", {"prompt": image_prompt}))
        rewritten = (text or "").strip().strip('"')
        if not rewritten:
            raise EmptyResponse("sanitized prompt was empty")
        return rewritten

    def _retrying(self, retryable: Callable[[BaseException], bool]) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=self._wait,
            retry=retry_if_exception(retryable),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        # A safety rewrite retries straight away.
        if isinstance(retry_state.outcome.exception(), BlockedBySafety):
            return 0.0
        return self._cooldown_sec

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        if isinstance(exc, BlockedBySafety):
            return
        self._notify(
            f"rate limited on attempt {retry_state.attempt_number} ({exc}); "
            f"waiting {self._cooldown_sec:.0f}s before retrying"
        )


class BatchThrottle:
    """Pauses after every ``batch_size`` provider calls unless nothing follows.

    With 20 calls and a batch size of 9 the pauses fall after calls 9 and 18.
    """

    def __init__(
        self,
        total_calls: int,
        *,
        sleep: Sleep = time.sleep,
        batch_size: int = BATCH_SIZE,
        cooldown_sec: float = BATCH_COOLDOWN_SEC,
        notify: Optional[Notify] = None,
    ) -> None:
        self._total = total_calls
        self._sleep = sleep
        self._batch_size = batch_size
        self._cooldown_sec = cooldown_sec
        self._notify = notify or (lambda message: None)
        self._calls = 0

    @property
    def calls(self) -> int:
        return self._calls

    def after_call(self) -> None:
        self._calls += 1
        if self._calls % self._batch_size == 0 and self._calls < self._total:
            self._notify(
                f"{self._calls}/{self._total} calls done; pausing {self._cooldown_sec:.0f}s for the API quota"
            )
            self._sleep(self._cooldown_sec)

    @classmethod
    def pace(cls, items: Iterable[T], **kwargs: Any) -> Iterator[T]:
        """Yield ``items``, treating each one as a single provider call."""
        materialized = list(items)
        throttle = cls(len(materialized), **kwargs)
        for item in materialized:
            yield item
            throttle.after_call()
