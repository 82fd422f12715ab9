from __future__ import annotations

import json
import logging
import secrets
import string
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .models import ChatMessage, Session

logger = logging.getLogger("numid.sessions")

SESSIONS_KEY = "gemini_chat_sessions_v1"
NEW_CHAT_TITLE = "New chat"
GREETING = "Hi! Ask me anything."
TITLE_LENGTH = 40

_ID_ALPHABET = string.digits + string.ascii_lowercase


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...


class MemoryStorage:
    """In-process key-value storage."""

    def __init__(self, items: Optional[Dict[str, str]] = None) -> None:
        self.items: Dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value


class FileStorage:
    """Key-value storage kept as one JSON object file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        data = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return data

    def get_item(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        try:
            data = self._read()
        except (OSError, json.JSONDecodeError):
            data = {}
        data[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def generate_id() -> str:
    """Eight random base-36 characters."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def load_sessions(storage: KeyValueStorage) -> List[Session]:
    """Purpose: Rehydrate the saved session list.
    Inputs/Outputs: Input is the storage backend; output is the ordered session list.
    Failure Modes: Never raises. Missing, unreadable or non-list blobs give [];
        entries that do not validate are skipped.
    """
    try:
        raw = storage.get_item(SESSIONS_KEY)
        if not raw:
            return []
        parsed = json.loads(raw)
    except Exception as exc:
        logger.debug("ignoring unreadable session storage: %s", exc)
        return []
    if not isinstance(parsed, list):
        return []
    sessions: List[Session] = []
    for entry in parsed:
        try:
            sessions.append(Session.model_validate(entry))
        except ValidationError:
            logger.debug("skipping malformed session entry")
    return sessions


def save_sessions(storage: KeyValueStorage, sessions: List[Session]) -> None:
    """Rewrite the whole session list; write failures are swallowed."""
    try:
        blob = json.dumps(
            [session.model_dump(by_alias=True, exclude_none=True) for session in sessions],
            ensure_ascii=False,
        )
        storage.set_item(SESSIONS_KEY, blob)
    except Exception as exc:
        logger.debug("session save failed: %s", exc)


def new_session() -> Session:
    return Session(
        id=generate_id(),
        title=NEW_CHAT_TITLE,
        messages=[ChatMessage(role="assistant", content=GREETING)],
    )


class SessionBook:
    """Session list plus the active session, persisted after every change."""

    def __init__(self, storage: KeyValueStorage) -> None:
        """Purpose: Load sessions from storage, starting a fresh one when empty.
        Inputs/Outputs: Input is a key-value storage backend; no return.
        Side Effects / State: Reads storage; the first session becomes active.
        Failure Modes: None; storage problems degrade to a single new session.
        """
        self._storage = storage
        self.sessions: List[Session] = load_sessions(storage) or [new_session()]
        self.active_id: Optional[str] = self.sessions[0].id

    @property
    def active(self) -> Session:
        for session in self.sessions:
            if session.id == self.active_id:
                return session
        if not self.sessions:
            self.new_session()
        return self.sessions[0]

    def save(self) -> None:
        save_sessions(self._storage, self.sessions)

    def new_session(self) -> Session:
        session = new_session()
        self.sessions.insert(0, session)
        self.active_id = session.id
        self.save()
        return session

    def select(self, session_id: str) -> Session:
        for session in self.sessions:
            if session.id == session_id:
                self.active_id = session_id
                return session
        raise KeyError(session_id)

    def delete(self, session_id: str) -> None:
        self.sessions = [session for session in self.sessions if session.id != session_id]
        if session_id == self.active_id:
            self.active_id = self.sessions[0].id if self.sessions else None
        self.save()

    def append_message(self, message: ChatMessage) -> None:
        session = self.active
        session.messages.append(message)
        self.derive_title(session)
        self.save()

    def replace_last_assistant(self, content: str) -> None:
        """Update the trailing assistant message in place, appending one if needed."""
        session = self.active
        if session.messages and session.messages[-1].role == "assistant":
            session.messages[-1].content = content
        else:
            session.messages.append(ChatMessage(role="assistant", content=content))
        self.save()

    @staticmethod
    def derive_title(session: Session) -> None:
        # Title follows the first user message while it still has the placeholder.
        if session.title != NEW_CHAT_TITLE:
            return
        for message in session.messages:
            if message.role == "user":
                session.title = message.content[:TITLE_LENGTH] or NEW_CHAT_TITLE
                return
