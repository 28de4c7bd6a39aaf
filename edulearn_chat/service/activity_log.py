from __future__ import annotations

from typing import Any, Literal, Optional

import httpx

from edulearn_chat.logging import get_logger

logger = get_logger(__name__)

Sender = Literal["user", "bot"]


class ActivityLogger:
    """Persists chat turns through the LMS backend's ``/chatbot/log`` endpoint.

    Best effort: every failure is logged and swallowed.
    """

    def __init__(
        self,
        backend_url: str,
        *,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = f"{backend_url.rstrip('/')}/chatbot/log"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def log_turn(
        self,
        session_id: str,
        sender: Sender,
        text: str,
        attachments: Optional[list[Any]],
        authorization: Optional[str],
    ) -> bool:
        """POST one turn; returns True when the backend accepted it."""
        headers = {"Content-Type": "application/json"}
        if authorization:
            headers["Authorization"] = authorization
        payload = {
            "sessionId": session_id,
            "sender": sender,
            "text": text,
            "attachments": attachments,
        }
        try:
            response = await self.client.post(self.endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "activity_log_failed",
                session_id=session_id,
                sender=sender,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.debug("activity_log_written", session_id=session_id, sender=sender)
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
