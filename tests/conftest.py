from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from numid_chat.app import create_app, get_gemini
from numid_chat.config import Settings
from numid_chat.errors import UpstreamError


class FakeStream:
    def __init__(self, fragments, final=None, fail_at=None):
        self.fragments = list(fragments)
        self.final = final
        self.fail_at = fail_at

    def __iter__(self):
        for index, fragment in enumerate(self.fragments):
            if self.fail_at is not None and index == self.fail_at:
                raise UpstreamError("quota exceeded")
            yield fragment

    def final_text(self):
        if self.final is None:
            return "".join(self.fragments)
        return self.final


class FakeGemini:
    """Records calls and answers with canned text."""

    def __init__(self):
        self.calls = []
        self.reply = "Hello"
        self.stream = FakeStream(["Hel", "lo"], "Hello")
        self.generated = "<svg viewBox='0 0 1 1'></svg>"
        self.error = None

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if self.error:
            raise self.error

    def send_chat(self, history, user_parts, model=None, system_instruction=None):
        self._record("send_chat", history=history, user_parts=user_parts, model=model, system_instruction=system_instruction)
        return self.reply

    def stream_chat(self, history, user_parts, model=None, system_instruction=None):
        self._record("stream_chat", history=history, user_parts=user_parts, model=model, system_instruction=system_instruction)
        return self.stream

    def generate_content(self, contents, model=None, system_instruction=None):
        self._record("generate_content", contents=contents, model=model, system_instruction=system_instruction)
        return self.reply

    def generate_text(self, prompt, model=None, system_instruction=None):
        self._record("generate_text", prompt=prompt, model=model, system_instruction=system_instruction)
        return self.generated


def make_settings(tmp_path: Path, api_key: str = "test-key") -> Settings:
    return Settings(
        gemini_api_key=api_key,
        default_model="gemini-2.5-flash",
        system_prompt="You are a test assistant.",
        stream_queue_size=4,
        host="127.0.0.1",
        port=3001,
        log_level="INFO",
        sessions_path=tmp_path / "storage.json",
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
def api(settings, fake_gemini):
    application = create_app(settings)
    application.dependency_overrides[get_gemini] = lambda: fake_gemini
    with TestClient(application) as client:
        yield client
