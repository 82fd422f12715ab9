from __future__ import annotations

import base64
import json
import logging
import mimetypes
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

import httpx

from .models import Attachment, ChatMessage

logger = logging.getLogger("numid.client")


class ChatClientError(Exception):
    """The API answered with an error status or an error event."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_sse(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Purpose: Decode Server-Sent-Events lines into (event, data) pairs.
    Inputs/Outputs: Input is an iterable of lines without terminators; yields one
        pair per blank-line-terminated event. The event name defaults to "message".
    Failure Modes: None; comment lines and unknown fields are ignored.
    """
    event = "message"
    data: List[str] = []
    for line in lines:
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


def attachment_from_file(path: Path) -> Attachment:
    """Read an image file into a data-URI attachment."""
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return Attachment(data_uri=f"data:{mime_type};base64,{encoded}", mime_type=mime_type)


def _decode_data(data: str) -> str:
    # Frames carry JSON strings; tolerate plain text from older servers.
    try:
        value = json.loads(data)
    except json.JSONDecodeError:
        return data
    return value if isinstance(value, str) else str(value)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


class ChatClient:
    """HTTP client for the chat API, streaming first with a JSON fallback."""

    def __init__(
        self,
        base_url: str,
        model: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.model = model
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ChatClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _body(self, messages: Sequence[ChatMessage]) -> dict:
        body: dict = {"messages": [message.model_dump(by_alias=True, exclude_none=True) for message in messages]}
        if self.model:
            body["model"] = self.model
        return body

    def send(self, messages: Sequence[ChatMessage], on_fragment: Optional[Callable[[str], None]] = None) -> str:
        """Purpose: Get the assistant reply for a conversation.
        Inputs/Outputs: Input is the full message list and an optional callback that
            receives the accumulated text after each fragment; returns the reply.
        Failure Modes: ChatClientError on error responses or error events. When the
            server does not answer with an event stream, falls back to /api/chat.
        """
        with self._http.stream(
            "POST",
            "/api/chat-stream",
            json=self._body(messages),
            headers={"Accept": "text/event-stream"},
        ) as response:
            content_type = response.headers.get("content-type", "")
            if response.is_success and "text/event-stream" in content_type:
                return self._consume(response.iter_lines(), on_fragment)
            response.read()
            if response.status_code == 400:
                raise ChatClientError(self._stream_error(response), status_code=400)
            logger.info("stream unavailable (HTTP %s), falling back to /api/chat", response.status_code)
        reply = self.chat(messages)
        if on_fragment:
            on_fragment(reply)
        return reply

    @staticmethod
    def _stream_error(response: httpx.Response) -> str:
        if "text/event-stream" in response.headers.get("content-type", ""):
            for event, data in parse_sse(response.text.splitlines()):
                if event == "error":
                    return _decode_data(data)
        return _error_message(response)

    @staticmethod
    def _consume(lines: Iterable[str], on_fragment: Optional[Callable[[str], None]]) -> str:
        # The accumulated fragments are authoritative; the done payload is not used.
        accumulated = ""
        for event, data in parse_sse(lines):
            if event == "message":
                accumulated += _decode_data(data)
                if on_fragment:
                    on_fragment(accumulated)
            elif event == "done":
                return accumulated
            elif event == "error":
                raise ChatClientError(_decode_data(data))
        # No terminal event: the connection dropped mid-reply.
        raise ChatClientError("stream ended before completion")

    def chat(self, messages: Sequence[ChatMessage]) -> str:
        response = self._http.post("/api/chat", json=self._body(messages))
        if not response.is_success:
            raise ChatClientError(_error_message(response), status_code=response.status_code)
        return str(response.json().get("reply", ""))

    def describe_image(self, attachment: Attachment, prompt: Optional[str] = None) -> str:
        body: dict = {"dataUri": attachment.data_uri, "mimeType": attachment.mime_type}
        if prompt:
            body["prompt"] = prompt
        if self.model:
            body["model"] = self.model
        response = self._http.post("/api/vision/describe", json=body)
        if not response.is_success:
            raise ChatClientError(_error_message(response), status_code=response.status_code)
        return str(response.json().get("text", ""))

    def generate_svg(self, prompt: str) -> str:
        body: dict = {"prompt": prompt}
        if self.model:
            body["model"] = self.model
        response = self._http.post("/api/images/svg", json=body)
        if not response.is_success:
            raise ChatClientError(_error_message(response), status_code=response.status_code)
        return response.text
