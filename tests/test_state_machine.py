import threading
import time

import pytest
import requests

from src.bizflow.core.state_machine import (
    TURN_TRANSITIONS,
    Conversation,
    TurnState,
    is_valid_transition,
)
from src.bizflow.services.relay_client import FALLBACK_MESSAGE, RelayClient


GREETING = "안녕하세요! 무엇을 도와드릴까요?"


def _conversation(session, **kwargs):
    client = RelayClient("http://relay.test", session=session, timeout=(1, 2))
    return Conversation(client, greeting=GREETING, **kwargs)


class Recorder:
    def __init__(self, expected_fragments=0):
        self.events = []
        self.fragments = threading.Event()
        self._expected = expected_fragments

    def __call__(self, kind, value):
        self.events.append((kind, value))
        if kind == "fragment" and len(self.fragment_values()) >= self._expected:
            self.fragments.set()

    def fragment_values(self):
        return [v for k, v in self.events if k == "fragment"]

    def states(self):
        return [v for k, v in self.events if k == "state"]


@pytest.mark.parametrize(
    "current,target,ok",
    [
        (TurnState.IDLE, TurnState.SENDING, True),
        (TurnState.SENDING, TurnState.STREAMING, True),
        (TurnState.SENDING, TurnState.ERRORED, True),
        (TurnState.STREAMING, TurnState.CANCELLED, True),
        (TurnState.CANCELLED, TurnState.IDLE, True),
        (TurnState.IDLE, TurnState.STREAMING, False),
        (TurnState.SENDING, TurnState.CANCELLED, False),
        (TurnState.SETTLED, TurnState.SENDING, False),
    ],
)
def test_transitions(current, target, ok):
    assert is_valid_transition(current, target) is ok


def test_every_terminal_state_returns_to_idle():
    for state in (TurnState.SETTLED, TurnState.CANCELLED, TurnState.ERRORED):
        assert TURN_TRANSITIONS[state] == [TurnState.IDLE]


def test_turn_settles_and_replays_history_without_greeting(fakes):
    session = fakes.Session(
        fakes.Response([fakes.event("안녕"), fakes.event("하세요"), fakes.done]),
        fakes.Response([fakes.done]),
    )
    conv = _conversation(session, page="/invoices")
    recorder = Recorder()
    conv.subscribe(recorder)

    handle = conv.send("  부가세 계산해줘  ")
    assert handle is not None
    assert conv.wait(2)
    assert conv.state is TurnState.SETTLED
    assert recorder.states() == [TurnState.SENDING, TurnState.STREAMING, TurnState.SETTLED]
    assert recorder.fragment_values() == ["안녕", "하세요"]
    assert [t.role for t in conv.turns] == ["assistant", "user", "assistant"]
    assert conv.turns[-1].content == "안녕하세요"

    first = session.calls[0][1]["json"]
    assert first == {"messages": [{"role": "user", "content": "부가세 계산해줘"}], "currentPage": "/invoices"}

    assert conv.send("고마워") is not None
    assert conv.wait(2)
    second = session.calls[1][1]["json"]["messages"]
    assert second == [
        {"role": "user", "content": "부가세 계산해줘"},
        {"role": "assistant", "content": "안녕하세요"},
        {"role": "user", "content": "고마워"},
    ]
    assert recorder.states()[3:5] == [TurnState.IDLE, TurnState.SENDING]


def test_send_while_streaming_is_ignored(fakes):
    response = fakes.Response(live=True)
    session = fakes.Session(response)
    conv = _conversation(session)
    recorder = Recorder(expected_fragments=1)
    conv.subscribe(recorder)

    conv.send("첫 질문")
    response.push(fakes.event("안"))
    assert recorder.fragments.wait(2)
    assert conv.state is TurnState.STREAMING

    assert conv.send("두 번째 질문") is None
    assert len(session.calls) == 1
    assert conv.state is TurnState.STREAMING
    assert [t.content for t in conv.turns if t.role == "user"] == ["첫 질문"]

    response.push(fakes.event("녕"))
    response.end()
    assert conv.wait(2)
    assert conv.turns[-1].content == "안녕"
    assert conv.state is TurnState.SETTLED


def test_cancel_keeps_partial_content(fakes):
    response = fakes.Response(live=True)
    conv = _conversation(fakes.Session(response))
    recorder = Recorder(expected_fragments=2)
    conv.subscribe(recorder)

    conv.send("질문")
    response.push(fakes.event("안"))
    response.push(fakes.event("녕"))
    assert recorder.fragments.wait(2)

    assert conv.cancel() is True
    assert conv.state is TurnState.CANCELLED
    assert conv.wait(2)
    assert conv.turns[-1].content == "안녕"
    assert conv.state is TurnState.CANCELLED
    assert response.closed
    assert conv.cancel() is False


def test_cancel_and_send_guards_when_idle(fakes):
    conv = _conversation(fakes.Session())
    assert conv.cancel() is False
    assert conv.send("   ") is None
    assert conv.state is TurnState.IDLE
    assert conv.wait(0.1)


def test_failure_before_streaming_uses_fallback_then_allows_retry(fakes):
    session = fakes.Session(requests.ConnectionError("down"), fakes.Response([fakes.event("ok"), fakes.done]))
    conv = _conversation(session)

    conv.send("질문")
    assert conv.wait(2)
    assert conv.state is TurnState.ERRORED
    assert conv.turns[-1].content == FALLBACK_MESSAGE

    conv.send("다시")
    assert conv.wait(2)
    assert conv.state is TurnState.SETTLED
    replay = session.calls[1][1]["json"]["messages"]
    assert replay[1] == {"role": "assistant", "content": FALLBACK_MESSAGE}


def test_segments_withhold_links_until_settled(fakes):
    response = fakes.Response(live=True)
    conv = _conversation(fakes.Session(response))
    recorder = Recorder(expected_fragments=1)
    conv.subscribe(recorder)

    conv.send("어디서 발행해?")
    response.push(fakes.event("여기: [[세금계산서 발행하기|/invoices/new]]"))
    assert recorder.fragments.wait(2)
    turn_id = conv.turns[-1].id
    assert [s.kind for s in conv.segments(turn_id)] == ["text"]

    response.end()
    assert conv.wait(2)
    assert [s.kind for s in conv.segments(turn_id)] == ["text", "link"]

    with pytest.raises(KeyError):
        conv.segments("missing")


def test_cancel_while_listener_reads_segments(fakes):
    response = fakes.Response(live=True)
    conv = _conversation(fakes.Session(response))
    in_listener = threading.Event()
    rendered = []

    def render(kind, value):
        if kind != "fragment":
            return
        in_listener.set()
        time.sleep(0.3)
        rendered.append(conv.segments(conv.turns[-1].id))

    conv.subscribe(render)
    conv.send("질문")
    response.push(fakes.event("안녕"))
    assert in_listener.wait(2)

    result = []
    canceller = threading.Thread(target=lambda: result.append(conv.cancel()), name="cancel")
    canceller.start()
    canceller.join(3)
    assert not canceller.is_alive()
    assert result == [True]

    assert conv.wait(3)
    assert conv.state is TurnState.CANCELLED
    assert conv.turns[-1].content == "안녕"
    assert len(rendered) == 1


def test_listener_can_cancel_from_fragment_callback(fakes):
    response = fakes.Response(live=True)
    conv = _conversation(fakes.Session(response))
    outcomes = []

    def stop_on_first(kind, value):
        if kind == "fragment" and not outcomes:
            outcomes.append(conv.cancel())

    conv.subscribe(stop_on_first)
    conv.send("질문")
    response.push(fakes.event("안"))
    response.push(fakes.event("녕"))

    assert conv.wait(3)
    assert outcomes == [True]
    assert conv.state is TurnState.CANCELLED
    assert conv.turns[-1].content == "안"
    assert response.closed
