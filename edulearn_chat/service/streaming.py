"""Resumable completion streaming with bounded retry.

State machine per request::

    Idle -> Streaming -> Completed
                      -> Retrying -> Streaming
                      -> Failed | Cancelled | TimedOut

Every retry restarts generation from scratch. Text already sent to the
client is never retracted; a visible notice is appended instead.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from edulearn_chat.logging import get_logger
from edulearn_chat.service.history import Turn
from edulearn_chat.service.model_backend import CompletionBackend

logger = get_logger(__name__)

MAX_RETRIES = 2
DEFAULT_BACKOFF_MS = 1000  # doubles each retry: 1s, 2s
DEFAULT_STREAM_TIMEOUT_SECONDS = 120.0

TRANSIENT_MESSAGE_MARKERS = ("network", "timeout", "econnreset")
TRANSIENT_STATUS_CODES = frozenset({429, 503})

RETRY_NOTICE = "\n\n_[Connection interrupted. Retrying ({attempt}/{max_retries})...]_\n\n"
FAILURE_NOTICE = "\n\n_[Unable to complete response. Please try again.]_"


class RetryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    retry_count: int
    delay_ms: int = 0


class StreamTimeoutError(Exception):
    """The chat stream ran past its wall-clock deadline."""


@dataclass
class StreamSession:
    full_response: str = ""
    retry_count: int = 0
    outcome: Optional[StreamOutcome] = None
    error: Optional[BaseException] = None
    notices: list[str] = field(default_factory=list)


def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by an engine error, if any."""
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def is_transient_error(error: BaseException) -> bool:
    message = str(error).lower()
    if any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS):
        return True
    return error_status(error) in TRANSIENT_STATUS_CODES


def decide(
    retry_count: int,
    error: BaseException,
    *,
    max_retries: int = MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BACKOFF_MS,
) -> RetryDecision:
    """Next action after an attempt failed with ``error``.

    ``retry_count`` is the number of retries already spent.
    """
    if is_transient_error(error) and retry_count < max_retries:
        next_count = retry_count + 1
        return RetryDecision(
            RetryAction.RETRY,
            next_count,
            delay_ms=base_delay_ms * (2 ** (next_count - 1)),
        )
    return RetryDecision(RetryAction.FAIL, retry_count)


class CompletionStream:
    """Turns a completion backend into a client byte stream.

    ``on_finish`` is called exactly once with the session when the stream
    reaches any terminal state. It must not block; submit detached work
    from it instead.
    """

    def __init__(
        self,
        backend: CompletionBackend,
        system_prompt: str,
        history: Sequence[Turn],
        current: Turn,
        *,
        max_retries: int = MAX_RETRIES,
        base_delay_ms: int = DEFAULT_BACKOFF_MS,
        timeout_seconds: float = DEFAULT_STREAM_TIMEOUT_SECONDS,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        on_finish: Optional[Callable[[StreamSession], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.system_prompt = system_prompt
        self.history = list(history)
        self.current = current
        self.max_retries = max(0, max_retries)
        self.base_delay_ms = base_delay_ms
        self.timeout_seconds = timeout_seconds
        self._is_disconnected = is_disconnected
        self._on_finish = on_finish
        self._sleep = sleep
        self.session = StreamSession()
        self._finished = False

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        try:
            return await self._is_disconnected()
        except Exception as exc:
            logger.debug("disconnect_probe_failed", error=str(exc))
            return False

    async def _attempt(self, deadline: float) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        if loop.time() >= deadline:
            raise StreamTimeoutError(f"chat stream exceeded {self.timeout_seconds}s")
        chunks = self.backend.stream_completion(
            self.system_prompt, self.history, self.current
        ).__aiter__()
        try:
            while True:
                # Deadline covers the pull only, never the consumer side of a yield
                scope = asyncio.timeout_at(deadline)
                try:
                    async with scope:
                        text = await chunks.__anext__()
                except StopAsyncIteration:
                    return
                except TimeoutError as exc:
                    # Engine-side timeouts go through the retry classifier
                    if not scope.expired():
                        raise
                    raise StreamTimeoutError(
                        f"chat stream exceeded {self.timeout_seconds}s"
                    ) from exc
                if text:
                    yield text
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    def _notice(self, text: str) -> bytes:
        self.session.notices.append(text)
        return text.encode("utf-8")

    def _finish(self, outcome: StreamOutcome, error: Optional[BaseException] = None) -> None:
        if self._finished:
            return
        self._finished = True
        self.session.outcome = outcome
        self.session.error = error
        log_fn = logger.info if outcome == StreamOutcome.COMPLETED else logger.warning
        log_fn(
            "chat_stream_finished",
            outcome=outcome.value,
            retries=self.session.retry_count,
            response_chars=len(self.session.full_response),
            error=str(error) if error else None,
        )
        if self._on_finish is not None:
            try:
                self._on_finish(self.session)
            except Exception as exc:
                logger.error("chat_stream_finish_hook_failed", error=str(exc))

    async def __aiter__(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        try:
            while True:
                if await self._client_gone():
                    self._finish(StreamOutcome.CANCELLED)
                    return
                try:
                    async with contextlib.aclosing(self._attempt(deadline)) as attempt:
                        async for text in attempt:
                            self.session.full_response += text
                            yield text.encode("utf-8")
                            if await self._client_gone():
                                self._finish(StreamOutcome.CANCELLED)
                                return
                except StreamTimeoutError as exc:
                    logger.error(
                        "chat_stream_timeout",
                        timeout_seconds=self.timeout_seconds,
                        retries=self.session.retry_count,
                    )
                    yield self._notice(FAILURE_NOTICE)
                    self._finish(StreamOutcome.TIMED_OUT, exc)
                    raise
                except Exception as exc:
                    if await self._client_gone():
                        self._finish(StreamOutcome.CANCELLED, exc)
                        return
                    decision = decide(
                        self.session.retry_count,
                        exc,
                        max_retries=self.max_retries,
                        base_delay_ms=self.base_delay_ms,
                    )
                    if decision.action == RetryAction.FAIL:
                        logger.error(
                            "chat_stream_failed",
                            retries=self.session.retry_count,
                            transient=is_transient_error(exc),
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )
                        yield self._notice(FAILURE_NOTICE)
                        self._finish(StreamOutcome.FAILED, exc)
                        raise
                    self.session.retry_count = decision.retry_count
                    logger.warning(
                        "chat_stream_retry",
                        retry=decision.retry_count,
                        max_retries=self.max_retries,
                        retry_delay_ms=decision.delay_ms,
                        error=str(exc),
                    )
                    yield self._notice(
                        RETRY_NOTICE.format(
                            attempt=decision.retry_count, max_retries=self.max_retries
                        )
                    )
                    remaining = deadline - loop.time()
                    await self._sleep(max(0.0, min(decision.delay_ms / 1000.0, remaining)))
                    continue
                self._finish(StreamOutcome.COMPLETED)
                return
        finally:
            # Consumer went away (GeneratorExit / task cancellation)
            if not self._finished:
                self._finish(StreamOutcome.CANCELLED)
