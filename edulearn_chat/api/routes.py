from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from edulearn_chat.api.error_handling import INTERNAL_ERROR_MESSAGE, error_response
from edulearn_chat.api.schemas import ChatHealth, ChatRequest
from edulearn_chat.logging import get_logger, sanitize_error_message
from edulearn_chat.service.auth import Identity
from edulearn_chat.service.errors import (
    BadRequestError,
    ConfigurationError,
    QuotaExceededError,
    RateLimitedError,
    ServiceError,
)
from edulearn_chat.service.history import split_conversation
from edulearn_chat.service.prompts import generate_system_prompt
from edulearn_chat.service.quota import RateLimitResult
from edulearn_chat.service.runtime import Runtime, get_runtime
from edulearn_chat.service.streaming import CompletionStream, StreamOutcome, StreamSession
from edulearn_chat.service.tokenizer_utils import estimate_tokens

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"
ATTACHMENTS_ONLY_TEXT = "Sent attachments"


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return get_runtime().verifier.verify(authorization)


async def _enforce_rate_limit(runtime: Runtime, user_id: str) -> RateLimitResult:
    """Count the request and raise 429 with ``resetTime`` when over budget."""
    result = await runtime.quota.check_rate_limit(user_id)
    if not result.allowed:
        raise RateLimitedError(
            result.message or "Rate limit exceeded",
            detail={"resetTime": result.reset_time_iso},
            headers=result.headers(),
        )
    return result


async def _enforce_token_quota(runtime: Runtime, user_id: str) -> None:
    if not await runtime.quota.check_token_quota(user_id):
        logger.info("chat_token_quota_exhausted", user_id=user_id)
        raise QuotaExceededError("Daily token quota exceeded. Please try again tomorrow.")


async def _parse_chat_request(request: Request) -> ChatRequest:
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BadRequestError("Request body must be valid JSON") from exc
    try:
        return ChatRequest.model_validate(raw)
    except PydanticValidationError as exc:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors(include_url=False, include_input=False)
        ]
        raise BadRequestError("Invalid request body", detail={"details": errors}) from exc


def _attachment_payloads(message: Any) -> Optional[list[dict]]:
    if not message.attachments:
        return None
    return [attachment.model_dump(exclude_none=True) for attachment in message.attachments]


@router.post("/chat")
async def chat(
    request: Request,
    identity: Identity = Depends(get_identity),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user_id = identity.user_id

    # Gates run before the body is read so rejected callers cost nothing
    rate = await _enforce_rate_limit(runtime, user_id)

    try:
        await _enforce_token_quota(runtime, user_id)
        body = await _parse_chat_request(request)

        backend = runtime.backend
        if backend is None:
            raise ConfigurationError("Chat service is not configured. Please contact support.")

        system_prompt = generate_system_prompt(
            body.user_profile.role, body.user_profile.learning_style
        )
        history, current = split_conversation(body.messages)
        last_message = body.messages[-1]
        session_id = body.session_id

        if session_id:
            runtime.tasks.submit(
                runtime.activity_logger.log_turn(
                    session_id,
                    "user",
                    current.text or ATTACHMENTS_ONLY_TEXT,
                    _attachment_payloads(last_message),
                    authorization,
                ),
                name="activity_log_user_turn",
            )

        def on_finish(session: StreamSession) -> None:
            tokens = estimate_tokens(current.text, session.full_response)
            runtime.tasks.submit(
                runtime.quota.track_token_usage(user_id, tokens),
                name="track_token_usage",
            )
            if session.outcome == StreamOutcome.COMPLETED and session.full_response and session_id:
                runtime.tasks.submit(
                    runtime.activity_logger.log_turn(
                        session_id, "bot", session.full_response, None, authorization
                    ),
                    name="activity_log_bot_turn",
                )

        stream = CompletionStream(
            backend,
            system_prompt,
            history,
            current,
            max_retries=runtime.settings.chat_max_retries,
            base_delay_ms=runtime.settings.chat_retry_base_delay_ms,
            timeout_seconds=runtime.settings.chat_stream_timeout_seconds,
            is_disconnected=request.is_disconnected,
            on_finish=on_finish,
        )
    except ServiceError as exc:
        # The request already counted against the window
        exc.headers = {**rate.headers(), **exc.headers}
        raise
    except Exception as exc:
        logger.exception(
            "chat_setup_failed",
            exc_info=exc,
            user_id=user_id,
            error_type=type(exc).__name__,
        )
        return error_response(
            500,
            INTERNAL_ERROR_MESSAGE,
            code="server_error",
            detail={"details": sanitize_error_message(str(exc))},
            headers=rate.headers(),
        )

    logger.info(
        "chat_stream_started",
        user_id=user_id,
        backend=backend.name,
        history_turns=len(history),
        current_parts=len(current.parts),
        rate_remaining=rate.remaining,
    )
    return StreamingResponse(stream, media_type=STREAM_MEDIA_TYPE, headers=rate.headers())


@router.get("/chat/health", response_model=ChatHealth)
async def chat_health() -> JSONResponse:
    body = ChatHealth(timestamp=datetime.now(timezone.utc))
    return JSONResponse(content=body.model_dump(mode="json"))
