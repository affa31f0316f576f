"""Inline directive parser for assistant messages.

Assistant output may embed three directives alongside plain text::

    [[세금계산서 발행하기|/invoices/new]]
    {{calc|공급가액:5,000,000원|부가세(10%):500,000원|합계:5,500,000원}}
    {{checklist|사업자등록증 확인|거래처 등록|세금계산서 발행}}

:func:`parse_markup` turns a buffer into an ordered list of typed segments.
It is a pure function and never raises: a directive whose closing delimiter
has not arrived yet simply does not match and stays in the surrounding text.
"""

from __future__ import annotations

import re
from typing import Callable, List, Tuple

from ..domain.chat_models import (
    CalcRow,
    CalcSegment,
    ChecklistSegment,
    LinkSegment,
    MarkupSegment,
    TextSegment,
)

CALC_PATTERN = re.compile(r"\{\{calc\|(.+?)\}\}")
CHECKLIST_PATTERN = re.compile(r"\{\{checklist\|(.+?)\}\}")
LINK_PATTERN = re.compile(r"\[\[(.+?)\|(.+?)\]\]")


def _calc_segment(match: "re.Match[str]") -> MarkupSegment:
    rows: List[CalcRow] = []
    for entry in match.group(1).split("|"):
        # Only the text up to the second colon is kept; colons inside values are unsupported.
        parts = entry.split(":")
        label = parts[0].strip()
        value = parts[1].strip() if len(parts) > 1 else ""
        rows.append(CalcRow(label=label, value=value))
    total = rows.pop()
    return CalcSegment(rows=rows, total=total, source=match.group(0))


def _checklist_segment(match: "re.Match[str]") -> MarkupSegment:
    items = [item.strip() for item in match.group(1).split("|")]
    return ChecklistSegment(items=items, source=match.group(0))


def _link_segment(match: "re.Match[str]") -> MarkupSegment:
    return LinkSegment(label=match.group(1), target=match.group(2), source=match.group(0))


# Scan order doubles as the tie-break when two matches share a start offset.
_DIRECTIVES: Tuple[Tuple["re.Pattern[str]", Callable[["re.Match[str]"], MarkupSegment]], ...] = (
    (CALC_PATTERN, _calc_segment),
    (CHECKLIST_PATTERN, _checklist_segment),
    (LINK_PATTERN, _link_segment),
)


def _text(value: str) -> TextSegment:
    return TextSegment(value=value, source=value)


def scan_directives(content: str) -> List[Tuple[int, int, MarkupSegment]]:
    """Return ``(start, end, segment)`` for every directive match, sorted by start."""
    matches: List[Tuple[int, int, MarkupSegment]] = []
    for pattern, build in _DIRECTIVES:
        for match in pattern.finditer(content):
            matches.append((match.start(), match.end(), build(match)))
    matches.sort(key=lambda m: m[0])
    return matches


def parse_markup(content: str) -> List[MarkupSegment]:
    """Split ``content`` into text, link, calc and checklist segments in source order."""
    segments: List[MarkupSegment] = []
    cursor = 0
    for start, end, segment in scan_directives(content):
        if start < cursor:
            # overlaps a directive already emitted
            continue
        if start > cursor:
            segments.append(_text(content[cursor:start]))
        segments.append(segment)
        cursor = end
    if cursor < len(content):
        segments.append(_text(content[cursor:]))
    if not segments:
        segments.append(_text(content))
    return segments


def visible_segments(content: str, settled: bool) -> List[MarkupSegment]:
    """Segments a renderer should commit to for a turn in the given state.

    Directive affordances (link buttons, cards) are withheld until the turn has
    settled; only the text around them is shown while it is still streaming.
    """
    segments = parse_markup(content)
    if settled:
        return segments
    return [segment for segment in segments if segment.kind == "text"]


def segment_source(segments: List[MarkupSegment]) -> str:
    return "".join(segment.source for segment in segments)
