import json

from numid_chat.models import Attachment, ChatMessage, Session
from numid_chat.session_store import (
    GREETING,
    NEW_CHAT_TITLE,
    SESSIONS_KEY,
    FileStorage,
    MemoryStorage,
    SessionBook,
    generate_id,
    load_sessions,
    save_sessions,
)


class BrokenStorage:
    def get_item(self, key):
        raise OSError("storage unavailable")

    def set_item(self, key, value):
        raise OSError("quota exceeded")


def sample_sessions():
    return [
        Session(
            id="abc12345",
            title="hello there",
            messages=[
                ChatMessage(role="assistant", content=GREETING),
                ChatMessage(role="user", content="hello there", attachment=Attachment(dataUri="data:image/png;base64,QUJD", mimeType="image/png")),
                ChatMessage(role="assistant", content="Hi!"),
            ],
        ),
        Session(id="def67890", title=NEW_CHAT_TITLE, messages=[]),
    ]


def test_load_returns_empty_for_bad_blobs():
    assert load_sessions(MemoryStorage()) == []
    assert load_sessions(MemoryStorage({SESSIONS_KEY: "{not json"})) == []
    assert load_sessions(MemoryStorage({SESSIONS_KEY: json.dumps({"id": "x"})})) == []
    assert load_sessions(BrokenStorage()) == []


def test_load_skips_malformed_entries():
    blob = json.dumps([{"id": "ok", "title": "t", "messages": []}, {"title": "no id"}, 3])
    sessions = load_sessions(MemoryStorage({SESSIONS_KEY: blob}))
    assert [session.id for session in sessions] == ["ok"]


def test_save_then_load_round_trips():
    storage = MemoryStorage()
    save_sessions(storage, sample_sessions())

    assert load_sessions(storage) == sample_sessions()
    raw = json.loads(storage.items[SESSIONS_KEY])
    assert raw[0]["messages"][1]["attachment"] == {"dataUri": "data:image/png;base64,QUJD", "mimeType": "image/png"}

    save_sessions(storage, load_sessions(storage))
    assert json.loads(storage.items[SESSIONS_KEY]) == raw


def test_save_swallows_write_failures():
    save_sessions(BrokenStorage(), sample_sessions())


def test_file_storage_persists(tmp_path):
    path = tmp_path / "nested" / "storage.json"
    save_sessions(FileStorage(path), sample_sessions())

    assert path.exists()
    assert load_sessions(FileStorage(path)) == sample_sessions()


def test_corrupt_file_degrades_to_empty(tmp_path):
    path = tmp_path / "storage.json"
    path.write_text("garbage", encoding="utf-8")
    assert load_sessions(FileStorage(path)) == []


def test_generate_id_shape():
    value = generate_id()
    assert len(value) == 8
    assert value.isalnum() and value == value.lower()


def test_book_starts_with_fresh_session():
    book = SessionBook(MemoryStorage())
    assert len(book.sessions) == 1
    assert book.active.title == NEW_CHAT_TITLE
    assert book.active.messages == [ChatMessage(role="assistant", content=GREETING)]


def test_book_titles_from_first_user_message_and_saves():
    storage = MemoryStorage()
    book = SessionBook(storage)
    book.append_message(ChatMessage(role="user", content="x" * 60))
    book.append_message(ChatMessage(role="user", content="second"))

    assert book.active.title == "x" * 40
    assert load_sessions(storage)[0].title == "x" * 40


def test_book_streaming_updates_last_assistant():
    storage = MemoryStorage()
    book = SessionBook(storage)
    book.append_message(ChatMessage(role="user", content="hi"))
    book.append_message(ChatMessage(role="assistant", content=""))
    book.replace_last_assistant("Hel")
    book.replace_last_assistant("Hello")

    assert [message.content for message in book.active.messages] == [GREETING, "hi", "Hello"]
    assert load_sessions(storage)[0].messages[-1].content == "Hello"


def test_book_new_select_delete():
    book = SessionBook(MemoryStorage())
    first = book.active
    second = book.new_session()

    assert book.sessions[0] is second
    assert book.active_id == second.id
    book.select(first.id)
    assert book.active is first

    book.delete(first.id)
    assert book.active_id == second.id
    book.delete(second.id)
    assert book.sessions == []
    assert book.active_id is None


def test_book_rehydrates_saved_sessions():
    storage = MemoryStorage()
    save_sessions(storage, sample_sessions())
    book = SessionBook(storage)
    assert book.active_id == "abc12345"
    assert len(book.sessions) == 2
