"""Line-oriented server-sent-event helpers shared by the relay and its client."""

from __future__ import annotations

import codecs
import json
from typing import Any, Dict, List, Optional, Union

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SSELineDecoder:
    """Reassemble newline-delimited lines from arbitrarily split network chunks.

    Bytes are decoded incrementally so a multibyte character cut in half by a
    chunk boundary is held back until its remaining bytes arrive. The partial
    last line is kept in the buffer until a newline completes it.

    Callers feed it from ``iter_content(chunk_size=None)`` rather than
    ``iter_lines()``, which buffers reads and would hold fragments back.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def flush(self) -> List[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [rest] if rest.strip() else []


def data_payload(line: str) -> Optional[str]:
    """Return the payload of a ``data: `` line, or ``None`` for anything else."""
    trimmed = line.strip()
    if not trimmed or not trimmed.startswith(DATA_PREFIX):
        return None
    return trimmed[len(DATA_PREFIX):]


def load_frame(payload: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def format_event(payload: Dict[str, Any]) -> str:
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n"


def content_event(fragment: str) -> str:
    return format_event({"content": fragment})
