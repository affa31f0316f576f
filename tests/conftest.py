import json
import queue
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


_PROVIDER_ENV = [
    "XAI_API_KEY",
    "XAI_MODEL",
    "XAI_BASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "LOCAL_API_KEY",
    "LOCAL_MODEL",
    "LOCAL_BASE_URL",
    "BIZFLOW_MODEL_PROVIDER",
    "BIZFLOW_ENABLE_LOCAL_PROVIDER",
    "BIZFLOW_LLM_TEMPERATURE",
    "BIZFLOW_LLM_MAX_TOKENS",
    "BIZFLOW_LLM_CONNECT_TIMEOUT",
    "BIZFLOW_LLM_READ_TIMEOUT",
]


@pytest.fixture(autouse=True)
def _clean_provider_env(monkeypatch):
    """Every test starts without upstream credentials or tunables."""
    for key in _PROVIDER_ENV:
        monkeypatch.delenv(key, raising=False)


_CLOSED = object()


class FakeStreamResponse:
    """Minimal stand-in for a streamed ``requests.Response``.

    With ``live=True`` chunks are delivered as the test pushes them, so a test
    can interleave assertions with delivery; ``close()`` ends the stream.
    """

    def __init__(self, chunks=(), status_code=200, body=None, live=False):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._body = body
        self._chunks = list(chunks)
        self._queue = queue.Queue() if live else None
        self.closed = False

    @property
    def text(self):
        return self._body or ""

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return json.loads(self._body)

    def push(self, chunk):
        self._queue.put(chunk)

    def end(self):
        self._queue.put(_CLOSED)

    def close(self):
        self.closed = True
        if self._queue is not None:
            self._queue.put(_CLOSED)

    def iter_content(self, chunk_size=None):
        if self._queue is None:
            for chunk in self._chunks:
                if self.closed:
                    return
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
            return
        while True:
            item = self._queue.get(timeout=5)
            if item is _CLOSED or self.closed:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def upstream_frame(content):
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]}, ensure_ascii=False)}\n\n".encode("utf-8")


def relay_event(content):
    return f"data: {json.dumps({'content': content}, ensure_ascii=False)}\n\n".encode("utf-8")


@pytest.fixture
def fakes():
    class _Fakes:
        Response = FakeStreamResponse
        Session = FakeSession
        frame = staticmethod(upstream_frame)
        event = staticmethod(relay_event)
        done = b"data: [DONE]\n\n"

    return _Fakes
