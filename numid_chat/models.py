from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system", "function"]


class Attachment(BaseModel):
    """Inline file attached to a message as a data URI."""
    model_config = ConfigDict(populate_by_name=True)

    data_uri: Optional[str] = Field(default=None, alias="dataUri")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ChatMessage(BaseModel):
    """One conversation turn as sent by the browser."""
    role: Role
    content: str = ""
    attachment: Optional[Attachment] = None


class ChatRequest(BaseModel):
    """Request payload for the chat and chat-stream APIs."""
    messages: List[ChatMessage]
    model: Optional[str] = None


class ChatResponse(BaseModel):
    reply: str


class VisionRequest(BaseModel):
    """Request payload for describing an image."""
    model_config = ConfigDict(populate_by_name=True)

    data_uri: Optional[str] = Field(default=None, alias="dataUri")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    prompt: str = "Describe this image in detail."
    model: Optional[str] = None


class VisionResponse(BaseModel):
    text: str


class SvgRequest(BaseModel):
    prompt: Optional[str] = None
    model: Optional[str] = None


class Session(BaseModel):
    """Persisted chat session as kept in client storage."""
    id: str
    title: str = "New chat"
    messages: List[ChatMessage] = Field(default_factory=list)
