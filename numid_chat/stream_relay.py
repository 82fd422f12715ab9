from __future__ import annotations

import enum
import json
import logging
import queue
import threading
from typing import Callable, Iterator, Optional, Protocol, Tuple

logger = logging.getLogger("numid.relay")

_PUT_TIMEOUT = 0.1


class UpstreamStream(Protocol):
    def __iter__(self) -> Iterator[str]: ...

    def final_text(self) -> str: ...


class RelayState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


def format_event(data: str, event: Optional[str] = None) -> str:
    """Frame one SSE event whose data line is the JSON-encoded text."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"


def error_event(message: str) -> str:
    return format_event(message, event="error")


class StreamRelay:
    """Relay an upstream fragment stream to Server-Sent-Events frames.

    A producer thread drains the upstream into a bounded queue; `frames()` is the
    consumer side handed to the HTTP response. Fragments keep their arrival order.
    The relay ends with exactly one `done` or `error` frame.
    """

    def __init__(
        self,
        open_stream: Callable[[], UpstreamStream],
        queue_size: int = 64,
        label: str = "",
    ) -> None:
        self._open_stream = open_stream
        self._queue_size = queue_size
        self._label = label
        self.state = RelayState.IDLE
        self.accumulated = ""
        self.final_text: Optional[str] = None

    def frames(self) -> Iterator[str]:
        if self.state is not RelayState.IDLE:
            raise RuntimeError("relay already started")
        self.state = RelayState.STREAMING
        channel: "queue.Queue[Tuple[str, str]]" = queue.Queue(maxsize=self._queue_size)
        stop = threading.Event()
        producer = threading.Thread(
            target=self._produce,
            args=(channel, stop),
            name=f"numid-relay-{self._label or 'stream'}",
            daemon=True,
        )
        producer.start()
        try:
            while True:
                kind, payload = channel.get()
                if kind == "fragment":
                    self.accumulated += payload
                    yield format_event(payload)
                elif kind == "done":
                    self.final_text = payload
                    self.state = RelayState.DONE
                    if payload != self.accumulated:
                        logger.warning(
                            "stream=%s final text differs from streamed fragments (%d vs %d chars)",
                            self._label,
                            len(payload),
                            len(self.accumulated),
                        )
                    yield format_event(payload, event="done")
                    return
                else:
                    self.state = RelayState.ERROR
                    yield error_event(payload)
                    return
        finally:
            # Consumer gone or finished: let a blocked producer give up.
            stop.set()
            if self.state is RelayState.STREAMING:
                logger.info("stream=%s closed by client after %d chars", self._label, len(self.accumulated))

    def _produce(self, channel: "queue.Queue[Tuple[str, str]]", stop: threading.Event) -> None:
        def put(item: Tuple[str, str]) -> bool:
            while not stop.is_set():
                try:
                    channel.put(item, timeout=_PUT_TIMEOUT)
                    return True
                except queue.Full:
                    continue
            return False

        try:
            upstream = self._open_stream()
            for fragment in upstream:
                if stop.is_set():
                    return
                if fragment and not put(("fragment", fragment)):
                    return
            put(("done", upstream.final_text()))
        except Exception as exc:
            logger.exception("stream=%s upstream failed", self._label)
            put(("error", str(exc) or "Internal Server Error"))
