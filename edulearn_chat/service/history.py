"""Conversation history normalization.

Completion engines such as Gemini require strict user/model alternation and a
history that opens on a user turn. Client message lists give neither
guarantee, so they are reshaped here before any engine call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Literal, Sequence, Tuple, Union

from edulearn_chat.service.errors import BadRequestError

TurnRole = Literal["user", "model"]


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class InlineDataPart:
    data: str  # base64 payload
    mime_type: str


Part = Union[TextPart, InlineDataPart]


@dataclass
class Turn:
    role: TurnRole
    parts: List[Part] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def message_parts(message: Any) -> List[Part]:
    """Text part for non-empty content, then one inline part per attachment payload."""
    parts: List[Part] = []
    content = _field(message, "content")
    if content:
        parts.append(TextPart(text=content))
    for attachment in _field(message, "attachments") or []:
        data = _field(attachment, "base64")
        if not data:
            continue
        mime_type = _field(attachment, "type") or "application/octet-stream"
        parts.append(InlineDataPart(data=data, mime_type=mime_type))
    return parts


def to_turn(message: Any) -> Turn:
    role: TurnRole = "user" if _field(message, "role") == "user" else "model"
    return Turn(role=role, parts=message_parts(message))


def coalesce_turns(turns: Iterable[Turn]) -> List[Turn]:
    """Merge adjacent same-role turns by concatenating their parts.

    Empty turns are dropped. The input turns are not mutated, and running
    this on its own output is a no-op.
    """
    merged: List[Turn] = []
    for turn in turns:
        if not turn.parts:
            continue
        if merged and merged[-1].role == turn.role:
            merged[-1].parts.extend(turn.parts)
        else:
            merged.append(Turn(role=turn.role, parts=list(turn.parts)))
    return merged


def trim_leading_non_user(turns: Sequence[Turn]) -> List[Turn]:
    start = 0
    while start < len(turns) and turns[start].role != "user":
        start += 1
    return list(turns[start:])


def normalize_history(messages: Sequence[Any]) -> List[Turn]:
    """Normalize prior messages (everything except the current turn)."""
    raw = [to_turn(m) for m in messages]
    return trim_leading_non_user(coalesce_turns(t for t in raw if t.parts))


def build_current_turn(message: Any) -> Turn:
    """Build the current user turn, rejecting messages with nothing to send."""
    parts = message_parts(message)
    if not parts:
        raise BadRequestError("Message cannot be empty")
    return Turn(role="user", parts=parts)


def split_conversation(messages: Sequence[Any]) -> Tuple[List[Turn], Turn]:
    """Return ``(history, current_turn)`` for a client message list."""
    if not messages:
        raise BadRequestError("messages must contain at least one message")
    return normalize_history(messages[:-1]), build_current_turn(messages[-1])
