from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConversationError
from .models import Attachment, ChatMessage

DEFAULT_MIME_TYPE = "image/png"


@dataclass(frozen=True)
class InlineData:
    """Base64 payload and MIME type unpacked from a data URI."""
    data: str
    mime_type: str

    def to_part(self) -> Dict[str, Any]:
        return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}


@dataclass
class BuiltConversation:
    """Sanitized request: prior turns in provider shape plus the pending user turn."""
    history: List[Dict[str, Any]]
    user_parts: List[Dict[str, Any]]


def to_gemini_role(role: str) -> str:
    """Map an application role onto Gemini's vocabulary (only assistant changes)."""
    if role == "assistant":
        return "model"
    return role


def split_data_uri(data_uri: str) -> str:
    """Return the base64 payload of a data URI; raw base64 passes through."""
    if "," in data_uri:
        return data_uri.split(",", 1)[1]
    return data_uri


def decode_inline_data(data: str) -> bytes:
    """Decode a base64 payload; malformed input is a ConversationError."""
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise ConversationError("attachment is not valid base64") from exc


def extract_inline_data(attachment: Optional[Attachment]) -> Optional[InlineData]:
    """Purpose: Unpack an attachment into inline data for the upstream request.
    Inputs/Outputs: Input is an optional Attachment; output is InlineData or None.
    Failure Modes: Missing attachment or empty data URI yields None; a payload
        that is not base64 raises ConversationError.
    Testing Notes: Both `data:image/jpeg;base64,AAAA` and bare `AAAA` give data "AAAA".
    """
    if attachment is None or not attachment.data_uri:
        return None
    data = split_data_uri(attachment.data_uri)
    decode_inline_data(data)
    return InlineData(
        data=data,
        mime_type=attachment.mime_type or DEFAULT_MIME_TYPE,
    )


def message_parts(message: ChatMessage) -> List[Dict[str, Any]]:
    # Text first, then the attachment, skipping whichever is empty.
    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"text": message.content})
    inline = extract_inline_data(message.attachment)
    if inline:
        parts.append(inline.to_part())
    return parts


def sanitize_and_build(messages: Sequence[ChatMessage]) -> BuiltConversation:
    """Purpose: Turn a raw message list into Gemini history plus the final user turn.
    Inputs/Outputs: Input is the ordered conversation; output is a BuiltConversation.
    Side Effects / State: None; the input sequence is not mutated.
    Failure Modes: ConversationError when no user message exists or the last
        message is not from the user.
    """
    start = 0
    while start < len(messages) and to_gemini_role(messages[start].role) != "user":
        start += 1
    sanitized = list(messages[start:])
    if not sanitized:
        raise ConversationError("no user messages provided")
    last = sanitized[-1]
    if to_gemini_role(last.role) != "user":
        raise ConversationError("last message must be from user")

    history = [
        {"role": to_gemini_role(message.role), "parts": message_parts(message)}
        for message in sanitized[:-1]
    ]
    return BuiltConversation(history=history, user_parts=message_parts(last))
