"""Client side of the relay protocol.

``RelayClient.send`` posts the conversation to ``/api/chat`` and reads the
event stream on a daemon thread, appending every ``content`` fragment to the
pending assistant turn as soon as it arrives. The accumulated text can be
pulled at any time (``StreamHandle.text``) or pushed to subscribers.
"""

from __future__ import annotations

import logging
import os
from threading import Event, RLock, Thread
from typing import Callable, Dict, List, Optional, Tuple

import requests

from ..domain.chat_models import ConversationTurn
from .relay import build_session
from .streaming import DONE_SENTINEL, SSELineDecoder, data_payload, load_frame

LOG = logging.getLogger("bizflow.client")

FALLBACK_MESSAGE = "죄송합니다. 일시적인 오류가 발생했습니다. 다시 시도해주세요."

FragmentListener = Callable[[str], None]
HandleCallback = Callable[["StreamHandle"], None]


def _env_timeout(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


class RelayClientError(Exception):
    """The relay answered with a non-2xx status before streaming."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StreamHandle:
    """One in-flight relay stream feeding a single assistant turn.

    ``outcome`` is ``None`` while the stream runs and one of ``settled``,
    ``cancelled`` or ``errored`` once it has ended.
    """

    def __init__(
        self,
        target: ConversationTurn,
        *,
        on_open: Optional[HandleCallback] = None,
        on_fragment: Optional[FragmentListener] = None,
        on_finish: Optional[HandleCallback] = None,
    ) -> None:
        self.target = target
        self.outcome: Optional[str] = None
        self.error: Optional[Exception] = None
        self._on_open = on_open
        self._on_finish = on_finish
        self._listeners: List[FragmentListener] = [on_fragment] if on_fragment else []
        self._response: Optional[requests.Response] = None
        self._cancelled = False
        self._done = Event()
        self._lock = RLock()

    @property
    def text(self) -> str:
        return self.target.content

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def subscribe(self, listener: FragmentListener) -> Callable[[], None]:
        """Register ``listener`` for every later fragment; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def cancel(self) -> bool:
        """Stop reading and tear down the connection. Content received so far stays."""
        with self._lock:
            if self._done.is_set() or self._cancelled:
                return False
            self._cancelled = True
            response = self._response
        if response is not None:
            response.close()
        LOG.debug("relay_client_cancelled", extra={"turn": self.target.id, "chars": len(self.target.content)})
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def start(self, session: requests.Session, url: str, payload: Dict, timeout: Tuple[float, float]) -> None:
        Thread(target=self._run, args=(session, url, payload, timeout), daemon=True).start()

    # --- worker thread ---
    def _run(self, session: requests.Session, url: str, payload: Dict, timeout: Tuple[float, float]) -> None:
        response: Optional[requests.Response] = None
        try:
            response = session.post(url, json=payload, stream=True, timeout=timeout)
            with self._lock:
                self._response = response
                cancelled = self._cancelled
            if cancelled:
                self.outcome = "cancelled"
                return
            if not response.ok:
                raise RelayClientError(_error_message(response), response.status_code)
            if self._on_open:
                self._on_open(self)
            self._read(response)
            self.outcome = "cancelled" if self._cancelled else "settled"
        except Exception as exc:
            if self._cancelled:
                # closing the response under the reader surfaces here
                self.outcome = "cancelled"
            else:
                self._fail(exc)
        finally:
            if response is not None:
                response.close()
            try:
                if self._on_finish:
                    self._on_finish(self)
            finally:
                self._done.set()

    def _read(self, response: requests.Response) -> None:
        decoder = SSELineDecoder()
        for chunk in response.iter_content(chunk_size=None):
            if self._cancelled:
                return
            if not chunk:
                continue
            for line in decoder.feed(chunk):
                if self._handle_line(line):
                    return
        for line in decoder.flush():
            if self._handle_line(line):
                return

    def _handle_line(self, line: str) -> bool:
        """Apply one event line; returns True once the terminal event is seen."""
        data = data_payload(line)
        if data is None:
            return False
        if data == DONE_SENTINEL:
            return True
        frame = load_frame(data)
        if frame is None:
            return False
        fragment = frame.get("content")
        if not isinstance(fragment, str) or not fragment:
            return False
        with self._lock:
            if self._cancelled:
                return True
            self.target.append(fragment)
            listeners = list(self._listeners)
        # listeners may call back into the conversation; run them unlocked
        for listener in listeners:
            listener(fragment)
        return False

    def _fail(self, exc: Exception) -> None:
        self.error = exc
        self.outcome = "errored"
        with self._lock:
            if not self.target.content:
                self.target.content = FALLBACK_MESSAGE
        LOG.warning(
            "relay_client_error err=%s",
            exc,
            extra={"turn": self.target.id, "status": getattr(exc, "status_code", None)},
        )


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return f"HTTP {response.status_code}"


class RelayClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        session: Optional[requests.Session] = None,
        timeout: Optional[Tuple[float, float]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or build_session()
        self.timeout = timeout or (
            _env_timeout("BIZFLOW_LLM_CONNECT_TIMEOUT", 5.0),
            _env_timeout("BIZFLOW_RELAY_READ_TIMEOUT", 60.0),
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def build_request(self, history: List[Dict[str, str]], page_context: Optional[str] = None) -> Dict:
        payload: Dict = {"messages": [{"role": m["role"], "content": m["content"]} for m in history]}
        if page_context:
            payload["currentPage"] = page_context
        return payload

    def send(
        self,
        history: List[Dict[str, str]],
        page_context: Optional[str],
        target: ConversationTurn,
        *,
        on_open: Optional[HandleCallback] = None,
        on_fragment: Optional[FragmentListener] = None,
        on_finish: Optional[HandleCallback] = None,
    ) -> StreamHandle:
        """Start streaming the reply to ``history`` into ``target`` and return at once."""
        handle = StreamHandle(target, on_open=on_open, on_fragment=on_fragment, on_finish=on_finish)
        handle.start(self.session, self.endpoint, self.build_request(history, page_context), self.timeout)
        return handle
