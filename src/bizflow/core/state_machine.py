from __future__ import annotations

import logging
import uuid
from enum import Enum
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional, Tuple

from ..domain.chat_models import ConversationTurn, MarkupSegment
from ..services.markup import visible_segments
from ..services.relay_client import RelayClient, StreamHandle

LOG = logging.getLogger("bizflow.conversation")


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    ERRORED = "errored"


# Per-conversation turn lifecycle
TURN_TRANSITIONS: Dict[TurnState, List[TurnState]] = {
    TurnState.IDLE: [TurnState.SENDING],
    TurnState.SENDING: [TurnState.STREAMING, TurnState.ERRORED],
    TurnState.STREAMING: [TurnState.SETTLED, TurnState.CANCELLED, TurnState.ERRORED],
    TurnState.SETTLED: [TurnState.IDLE],
    TurnState.CANCELLED: [TurnState.IDLE],
    TurnState.ERRORED: [TurnState.IDLE],
}

TERMINAL_STATES = (TurnState.SETTLED, TurnState.CANCELLED, TurnState.ERRORED)
ACTIVE_STATES = (TurnState.SENDING, TurnState.STREAMING)

_OUTCOME_STATES = {
    "settled": TurnState.SETTLED,
    "cancelled": TurnState.CANCELLED,
    "errored": TurnState.ERRORED,
}


def is_valid_transition(current: TurnState, target: TurnState) -> bool:
    return target in TURN_TRANSITIONS.get(current, [])


class InvalidTransition(RuntimeError):
    pass


Event = Tuple[str, object]
Listener = Callable[[str, object], None]


class Conversation:
    """Ordered turns plus the single in-flight stream that may be feeding the last one.

    At most one stream exists at a time: :meth:`send` is ignored while a turn
    is sending or streaming. Listeners receive ``("fragment", text)`` and
    ``("state", TurnState)`` notifications, possibly from the reader thread.
    """

    def __init__(
        self,
        client: RelayClient,
        *,
        greeting: Optional[str] = None,
        page: Optional[str] = None,
        surface: Optional[str] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.client = client
        self.page = page
        self.surface = surface
        self.state = TurnState.IDLE
        self.turns: List[ConversationTurn] = []
        self._greeting_id: Optional[str] = None
        self._pending: Optional[ConversationTurn] = None
        self._handle: Optional[StreamHandle] = None
        self._listeners: List[Listener] = []
        self._lock = RLock()
        # listeners are notified from the reader thread; kept apart from _lock
        self._listeners_lock = Lock()
        if greeting:
            seed = ConversationTurn(role="assistant", content=greeting)
            self.turns.append(seed)
            self._greeting_id = seed.id

    # --- observation ---
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, events: List[Event]) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for kind, value in events:
            for listener in listeners:
                listener(kind, value)

    @property
    def pending(self) -> Optional[ConversationTurn]:
        return self._pending

    @property
    def handle(self) -> Optional[StreamHandle]:
        return self._handle

    def get_turn(self, turn_id: str) -> Optional[ConversationTurn]:
        with self._lock:
            for turn in self.turns:
                if turn.id == turn_id:
                    return turn
        return None

    def replay_history(self) -> List[Dict[str, str]]:
        """Turns sent upstream: everything except the seed greeting and the in-flight reply."""
        with self._lock:
            skip = {self._greeting_id, self._pending.id if self._pending else None}
            return [t.as_history() for t in self.turns if t.id not in skip]

    def segments(self, turn_id: str) -> List[MarkupSegment]:
        turn = self.get_turn(turn_id)
        if turn is None:
            raise KeyError(turn_id)
        with self._lock:
            settled = not (turn is self._pending and self.state in ACTIVE_STATES)
        return visible_segments(turn.content, settled)

    # --- transitions ---
    def _transition(self, target: TurnState, events: List[Event]) -> None:
        if not is_valid_transition(self.state, target):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        LOG.debug("turn_transition %s -> %s", self.state.value, target.value, extra={"conversation": self.id})
        self.state = target
        events.append(("state", target))

    def send(self, text: str, page: Optional[str] = None) -> Optional[StreamHandle]:
        """Start a new turn. Returns ``None`` (and does nothing) while a turn is active or for blank text."""
        content = text.strip()
        events: List[Event] = []
        with self._lock:
            if not content or self.state in ACTIVE_STATES:
                return None
            if self.state in TERMINAL_STATES:
                self._transition(TurnState.IDLE, events)
            self._transition(TurnState.SENDING, events)
            if page is not None:
                self.page = page
            self.turns.append(ConversationTurn(role="user", content=content))
            history = self.replay_history()
            pending = ConversationTurn(role="assistant")
            self.turns.append(pending)
            self._pending = pending
        self._emit(events)
        handle = self.client.send(
            history,
            self.page,
            pending,
            on_open=self._on_open,
            on_fragment=self._on_fragment,
            on_finish=self._on_finish,
        )
        with self._lock:
            if self._pending is pending:
                self._handle = handle
        return handle

    def cancel(self) -> bool:
        """Abort the streaming turn, keeping whatever text already arrived."""
        events: List[Event] = []
        with self._lock:
            if self.state is not TurnState.STREAMING or self._handle is None:
                return False
            handle = self._handle
            self._transition(TurnState.CANCELLED, events)
            self._pending = None
        handle.cancel()
        self._emit(events)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current stream (if any) has ended."""
        handle = self._handle
        if handle is None:
            return True
        return handle.wait(timeout)

    # --- reader-thread callbacks ---
    def _owns(self, handle: StreamHandle) -> bool:
        return self._pending is not None and handle.target is self._pending

    def _on_open(self, handle: StreamHandle) -> None:
        events: List[Event] = []
        with self._lock:
            if self._owns(handle) and self.state is TurnState.SENDING:
                self._handle = handle
                self._transition(TurnState.STREAMING, events)
        self._emit(events)

    def _on_fragment(self, fragment: str) -> None:
        self._emit([("fragment", fragment)])

    def _on_finish(self, handle: StreamHandle) -> None:
        events: List[Event] = []
        with self._lock:
            if not self._owns(handle):
                return
            self._handle = handle
            target = _OUTCOME_STATES.get(handle.outcome or "", TurnState.ERRORED)
            if not is_valid_transition(self.state, target):
                target = TurnState.ERRORED
            self._transition(target, events)
            self._pending = None
        self._emit(events)
