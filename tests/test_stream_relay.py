import json
import logging
import time

import pytest
from conftest import FakeStream

from numid_chat.stream_relay import RelayState, StreamRelay, format_event


def data_payloads(frames):
    return [json.loads(frame.split("data: ", 1)[1]) for frame in frames if frame.startswith("data: ")]


def test_format_event_encodes_json():
    assert format_event("Hel") == 'data: "Hel"\n\n'
    assert format_event('say "hi"\n', event="done") == 'event: done\ndata: "say \\"hi\\"\\n"\n\n'


def test_fragments_then_done():
    relay = StreamRelay(lambda: FakeStream(["Hel", "lo"], "Hello"))
    assert relay.state is RelayState.IDLE

    frames = list(relay.frames())

    assert frames == ['data: "Hel"\n\n', 'data: "lo"\n\n', 'event: done\ndata: "Hello"\n\n']
    assert "".join(data_payloads(frames)) == "Hello"
    assert relay.state is RelayState.DONE
    assert relay.accumulated == "Hello"
    assert relay.final_text == "Hello"


def test_empty_fragments_are_not_framed():
    frames = list(StreamRelay(lambda: FakeStream(["", "a", ""], "a")).frames())
    assert frames == ['data: "a"\n\n', 'event: done\ndata: "a"\n\n']


def test_failure_mid_stream_ends_with_error_frame():
    relay = StreamRelay(lambda: FakeStream(["Hel", "lo"], fail_at=1))

    frames = list(relay.frames())

    assert frames == ['data: "Hel"\n\n', 'event: error\ndata: "quota exceeded"\n\n']
    assert relay.state is RelayState.ERROR


def test_failure_opening_upstream_is_an_error_frame():
    def open_stream():
        raise RuntimeError("API key not valid")

    relay = StreamRelay(open_stream)
    assert list(relay.frames()) == ['event: error\ndata: "API key not valid"\n\n']
    assert relay.state is RelayState.ERROR


def test_divergent_final_text_is_logged_not_reconciled(caplog):
    relay = StreamRelay(lambda: FakeStream(["Hel", "lo"], "Hello!"), label="t1")
    with caplog.at_level(logging.WARNING, logger="numid.relay"):
        frames = list(relay.frames())
    assert frames[-1] == 'event: done\ndata: "Hello!"\n\n'
    assert relay.accumulated == "Hello"
    assert "differs" in caplog.text


def test_order_is_preserved_through_small_queue():
    fragments = [f"{i}," for i in range(200)]
    frames = list(StreamRelay(lambda: FakeStream(fragments), queue_size=2).frames())
    assert data_payloads(frames)[:-1] == fragments


def test_relay_runs_once():
    relay = StreamRelay(lambda: FakeStream(["a"]))
    list(relay.frames())
    with pytest.raises(RuntimeError):
        next(relay.frames())


def test_consumer_close_stops_producer():
    pulled = []

    class Endless:
        def __iter__(self):
            while True:
                pulled.append(1)
                yield "x"

        def final_text(self):
            return ""

    frames = StreamRelay(Endless, queue_size=2).frames()
    assert next(frames) == 'data: "x"\n\n'
    frames.close()

    time.sleep(0.5)
    count = len(pulled)
    time.sleep(0.3)
    assert len(pulled) == count
    assert count < 50


def test_format_event_escapes_line_separators():
    frame = format_event("a\u2028b\x85c")
    assert frame == 'data: "a\\u2028b\\u0085c"\n\n'
    assert frame.splitlines() == ['data: "a\\u2028b\\u0085c"', ""]
