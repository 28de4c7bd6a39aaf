from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from edulearn_chat.config import ModelBackend, Settings
from edulearn_chat.logging import get_logger
from edulearn_chat.service.history import InlineDataPart, TextPart, Turn

logger = get_logger(__name__)


class UpstreamError(Exception):
    """Failure reported by a completion engine, normalized across SDKs."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CompletionBackend(Protocol):
    """Interface for pluggable completion engines.

    ``stream_completion`` returns an async iterator of text chunks. Each call
    starts a fresh generation, which is what the retry loop relies on.
    """

    name: str
    model: str

    def stream_completion(
        self,
        system_prompt: str,
        history: Sequence[Turn],
        current: Turn,
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class GeminiBackend:
    """Streams from Google Gemini through the google-genai SDK."""

    name = "gemini"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str],
        max_output_tokens: int = 4000,
        client: Optional[genai.Client] = None,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.client = client or genai.Client(api_key=api_key)

    @staticmethod
    def _to_content(turn: Turn) -> genai_types.Content:
        parts: List[genai_types.Part] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                parts.append(genai_types.Part.from_text(text=part.text))
            elif isinstance(part, InlineDataPart):
                parts.append(
                    genai_types.Part.from_bytes(
                        data=base64.b64decode(part.data), mime_type=part.mime_type
                    )
                )
        return genai_types.Content(role=turn.role, parts=parts)

    @staticmethod
    def _chunk_text(chunk: Any) -> str:
        try:
            return chunk.text or ""
        except (AttributeError, ValueError) as exc:
            # Chunks without text parts (e.g. safety metadata) are skipped
            logger.debug("gemini_chunk_without_text", error=str(exc))
            return ""

    async def stream_completion(
        self,
        system_prompt: str,
        history: Sequence[Turn],
        current: Turn,
    ) -> AsyncIterator[str]:
        contents = [self._to_content(turn) for turn in history]
        contents.append(self._to_content(current))
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=self.max_output_tokens,
        )
        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=self.model, contents=contents, config=config
            )
            async for chunk in stream:
                text = self._chunk_text(chunk)
                if text:
                    yield text
        except genai_errors.APIError as exc:
            raise UpstreamError(str(exc), status_code=exc.code) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(f"network error: {exc}") from exc

    async def close(self) -> None:
        return None


class OpenAICompatibleBackend:
    """Streams from an OpenAI-style chat completions endpoint."""

    name = "openai"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        max_output_tokens: int = 4000,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @staticmethod
    def _to_message(turn: Turn) -> dict:
        role = "user" if turn.role == "user" else "assistant"
        if all(isinstance(p, TextPart) for p in turn.parts):
            return {"role": role, "content": turn.text}
        content: List[dict] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif part.mime_type.startswith("image/"):
                content.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
                    }
                )
            else:
                content.append(
                    {
                        "type": "file",
                        "file": {
                            "filename": "attachment",
                            "file_data": f"data:{part.mime_type};base64,{part.data}",
                        },
                    }
                )
        return {"role": role, "content": content}

    async def stream_completion(
        self,
        system_prompt: str,
        history: Sequence[Turn],
        current: Turn,
    ) -> AsyncIterator[str]:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(self._to_message(turn) for turn in history)
        messages.append(self._to_message(current))
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_output_tokens,
                stream=True,
            )
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                text = getattr(choices[0].delta, "content", None)
                if text:
                    yield text
        except APITimeoutError as exc:
            raise UpstreamError(f"timeout: {exc}") from exc
        except APIConnectionError as exc:
            raise UpstreamError(f"network error: {exc}") from exc
        except APIStatusError as exc:
            raise UpstreamError(str(exc), status_code=exc.status_code) from exc

    async def close(self) -> None:
        await self.client.close()


class StubBackend:
    """Deterministic backend for TEST_MODE and local smoke runs."""

    name = "stub"
    STUB_RESPONSE = "This is a stub tutor response. What have you tried so far?"

    def __init__(self, model: str = "stub", *, chunk_delay_seconds: float = 0.0) -> None:
        self.model = model
        self.chunk_delay_seconds = chunk_delay_seconds

    async def stream_completion(
        self,
        system_prompt: str,
        history: Sequence[Turn],
        current: Turn,
    ) -> AsyncIterator[str]:
        words = self.STUB_RESPONSE.split(" ")
        for idx, word in enumerate(words):
            if self.chunk_delay_seconds:
                await asyncio.sleep(self.chunk_delay_seconds)
            yield word if idx == len(words) - 1 else f"{word} "

    async def close(self) -> None:
        return None


@dataclass(frozen=True)
class BackendPlug:
    """Describes a pluggable completion backend."""

    key: str
    label: str
    description: str
    factory: Callable[[Settings], CompletionBackend]

    def build_backend(self, settings: Settings) -> CompletionBackend:
        return self.factory(settings)


def _build_gemini(settings: Settings) -> CompletionBackend:
    return GeminiBackend(
        settings.model_name,
        api_key=settings.gemini_api_key,
        max_output_tokens=settings.max_output_tokens,
    )


def _build_openai(settings: Settings) -> CompletionBackend:
    return OpenAICompatibleBackend(
        settings.model_name,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        max_output_tokens=settings.max_output_tokens,
    )


def _build_stub(settings: Settings) -> CompletionBackend:
    return StubBackend(settings.model_name)


_GEMINI_PLUG = BackendPlug(
    key="gemini",
    label="Google Gemini",
    description="Streams generate_content from the Gemini API with a system instruction.",
    factory=_build_gemini,
)

BUILTIN_BACKEND_PLUGS: Dict[str, BackendPlug] = {
    ModelBackend.GEMINI.value: _GEMINI_PLUG,
    ModelBackend.GOOGLE.value: _GEMINI_PLUG,
    ModelBackend.OPENAI.value: BackendPlug(
        key="openai",
        label="OpenAI / compatible API",
        description="Streams OpenAI-style chat completions.",
        factory=_build_openai,
    ),
    ModelBackend.STUB.value: BackendPlug(
        key="stub",
        label="Stub",
        description="Canned response for tests and offline development.",
        factory=_build_stub,
    ),
}


def build_backend(settings: Settings) -> Optional[CompletionBackend]:
    """Build the configured backend, or None when its API key is missing.

    A missing key is reported per request as a configuration error rather
    than failing application startup.
    """
    if settings.engine_requires_api_key and not settings.engine_api_key:
        logger.warning(
            "completion_backend_unconfigured",
            backend=settings.model_backend.value,
            message="API key missing; chat requests will fail with a configuration error",
        )
        return None
    plug = BUILTIN_BACKEND_PLUGS[settings.model_backend.value]
    backend = plug.build_backend(settings)
    logger.info("completion_backend_ready", backend=plug.key, model=backend.model)
    return backend
