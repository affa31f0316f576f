from __future__ import annotations

import logging
import os
from threading import RLock
from typing import Callable, Dict, List, Optional

import requests

from ..core.state_machine import Conversation
from ..domain.chat_models import LinkSegment
from ..services.prompts import get_surface
from ..services.relay_client import RelayClient

LOG = logging.getLogger("bizflow.conversation")


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._by_surface: Dict[str, List[str]] = {}
        self._lock = RLock()

    def add(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self._conversations[conversation.id] = conversation
            if conversation.surface:
                self._by_surface.setdefault(conversation.surface, []).append(conversation.id)
        return conversation

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def latest_for_surface(self, surface: str) -> Optional[Conversation]:
        with self._lock:
            ids = self._by_surface.get(surface) or []
            return self._conversations.get(ids[-1]) if ids else None

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            return list(self._conversations.values())

    def count(self) -> int:
        with self._lock:
            return len(self._conversations)

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            conversation = self._conversations.pop(conversation_id, None)
            if conversation is None:
                return False
            if conversation.surface:
                ids = self._by_surface.get(conversation.surface, [])
                if conversation_id in ids:
                    ids.remove(conversation_id)
            return True


class ChatContext:
    """Application-wide chat state: the conversations plus whether the chat panel is open.

    Built once at the application root and handed to whatever needs it.
    """

    def __init__(self, client: RelayClient, store: Optional[InMemoryConversationStore] = None) -> None:
        self.client = client
        self.store = store or InMemoryConversationStore()
        self.panel_open = False
        self.current_page: Optional[str] = None
        self._lock = RLock()

    # --- panel ---
    def open_panel(self) -> None:
        with self._lock:
            self.panel_open = True

    def close_panel(self) -> None:
        with self._lock:
            self.panel_open = False

    def toggle_panel(self) -> bool:
        with self._lock:
            self.panel_open = not self.panel_open
            return self.panel_open

    # --- conversations ---
    def new_conversation(self, surface: str = "widget") -> Conversation:
        chat_surface = get_surface(surface)
        if chat_surface is None:
            raise ValueError(f"Unknown chat surface: {surface}")
        conversation = Conversation(self.client, greeting=chat_surface.greeting, page=self.current_page, surface=surface)
        LOG.debug("conversation_created", extra={"conversation": conversation.id, "surface": surface})
        return self.store.add(conversation)

    def conversation(self, surface: str = "widget") -> Conversation:
        """The surface's current conversation, seeded with its greeting on first use."""
        with self._lock:
            existing = self.store.latest_for_surface(surface)
            return existing if existing is not None else self.new_conversation(surface)

    def set_page(self, route: Optional[str]) -> None:
        with self._lock:
            self.current_page = route
            for conversation in self.store.list_conversations():
                conversation.page = route

    def follow_link(self, segment: LinkSegment, navigate: Callable[[str], None]) -> str:
        """Navigate to the link's route and close the chat panel."""
        navigate(segment.target)
        self.set_page(segment.target)
        self.close_panel()
        return segment.target


def create_chat_context(
    base_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> ChatContext:
    url = base_url or os.getenv("BIZFLOW_RELAY_URL", "http://localhost:8000")
    return ChatContext(RelayClient(url, session=session))
