from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class ConversationTurn(BaseModel):
    """One message in a conversation.

    ``content`` of an in-flight assistant turn only ever grows through
    :meth:`append`; ``id`` and ``timestamp`` are fixed at creation.
    """

    id: str = Field(default_factory=_new_id)
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=_now)

    def append(self, fragment: str) -> None:
        self.content += fragment

    def as_history(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


# --- relay wire models ---
class RelayMessage(BaseModel):
    role: Role
    content: str


class RelayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[RelayMessage] = Field(default_factory=list)
    current_page: Optional[str] = Field(default=None, alias="currentPage")


class RelayError(BaseModel):
    error: str


# --- markup segments ---
class TextSegment(BaseModel):
    kind: Literal["text"] = "text"
    value: str
    source: str


class LinkSegment(BaseModel):
    kind: Literal["link"] = "link"
    label: str
    target: str
    source: str


class CalcRow(BaseModel):
    label: str
    value: str


class CalcSegment(BaseModel):
    kind: Literal["calc"] = "calc"
    rows: List[CalcRow] = Field(default_factory=list)
    total: CalcRow
    source: str


class ChecklistSegment(BaseModel):
    kind: Literal["checklist"] = "checklist"
    items: List[str] = Field(default_factory=list)
    source: str


MarkupSegment = Annotated[
    Union[TextSegment, LinkSegment, CalcSegment, ChecklistSegment],
    Field(discriminator="kind"),
]


class MarkupRequest(BaseModel):
    content: str
    settled: bool = True


class MarkupResponse(BaseModel):
    segments: List[MarkupSegment]


# --- chat surfaces / page catalogue ---
class ChatSurface(BaseModel):
    name: str
    title: str
    greeting: str
    quick_questions: List[str] = []


class PageContext(BaseModel):
    route: str
    label: str
    description: str
