"""Streaming relay between the chat UI and the upstream chat-completion API.

The relay opens one streaming request upstream per caller request and
re-frames the provider's ``data: {choices: [{delta: {content}}]}`` lines into
the simpler ``data: {"content": ...}`` events the UI consumes, ending every
stream with ``data: [DONE]``. There is a single attempt per request: no
retries, no backoff, and a dropped upstream connection looks exactly like a
finished one to the caller.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter

from ..observability.metrics import RELAY_FRAGMENTS, RELAY_MALFORMED_FRAMES, record_relay_outcome
from .model_router import ModelRouter, ProviderSelection
from .prompts import build_system_prompt
from .streaming import DONE_FRAME, DONE_SENTINEL, SSELineDecoder, content_event, data_payload, load_frame

LOG = logging.getLogger("bizflow.relay")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class ConfigurationError(RuntimeError):
    """No upstream credential is configured; nothing was sent upstream."""


class UpstreamRejection(Exception):
    """The upstream provider answered the streaming request with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"API error: {status_code}")
        self.status_code = status_code
        self.body = body


@dataclass
class UpstreamStream:
    response: requests.Response
    provider: str
    model: str


def build_session() -> requests.Session:
    session = requests.Session()
    # Single attempt: failures go straight back to the caller.
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


_session: Optional[requests.Session] = None


def get_session() -> requests.Session:
    global _session
    if _session is None:
        _session = build_session()
    return _session


def _timeouts() -> tuple[float, float]:
    # The read timeout is the idle limit between upstream chunks.
    return (
        float(_env_int("BIZFLOW_LLM_CONNECT_TIMEOUT", 5)),
        float(_env_int("BIZFLOW_LLM_READ_TIMEOUT", 60)),
    )


def build_upstream_payload(
    selection: ProviderSelection,
    history: List[Dict[str, str]],
    current_page: Optional[str] = None,
) -> Dict[str, Any]:
    messages = [{"role": "system", "content": build_system_prompt(current_page)}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    return {
        "model": selection.model,
        "messages": messages,
        "temperature": _env_float("BIZFLOW_LLM_TEMPERATURE", 0.7),
        "max_tokens": _env_int("BIZFLOW_LLM_MAX_TOKENS", 1024),
        "stream": True,
    }


def open_upstream_stream(
    history: List[Dict[str, str]],
    current_page: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> UpstreamStream:
    """Send the streaming chat-completion request and return the open response.

    Raises :class:`ConfigurationError` before any network traffic when no
    provider credential is set, and :class:`UpstreamRejection` (after logging
    the upstream body) when the provider answers with a non-2xx status.
    """

    router = ModelRouter(env=env)
    selection = router.maybe_select_provider()
    if selection is None:
        raise ConfigurationError("API key not configured")
    api_key = router.api_key(selection)

    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    url = f"{router.base_url(selection)}/chat/completions"
    payload = build_upstream_payload(selection, history, current_page)
    LOG.debug(
        "relay_upstream_request",
        extra={"provider": selection.name, "model": selection.model, "turns": len(history), "page": current_page},
    )
    resp = (session or get_session()).post(
        url,
        json=payload,
        headers=headers,
        timeout=_timeouts(),
        stream=True,
    )
    if not resp.ok:
        try:
            body = resp.text
        finally:
            resp.close()
        LOG.error(
            "relay_upstream_rejected status=%s body=%s",
            resp.status_code,
            body,
            extra={"provider": selection.name, "model": selection.model},
        )
        raise UpstreamRejection(resp.status_code, body)
    return UpstreamStream(response=resp, provider=selection.name, model=selection.model)


def extract_fragment(frame: Dict[str, Any]) -> str:
    """Return ``choices[0].delta.content`` or an empty string when absent."""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    delta = first.get("delta") if isinstance(first.get("delta"), dict) else {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def reframe_lines(lines: List[str]) -> Iterator[str]:
    """Turn complete upstream lines into downstream content events."""
    for line in lines:
        data = data_payload(line)
        if data is None or data == DONE_SENTINEL:
            continue
        frame = load_frame(data)
        if frame is None:
            RELAY_MALFORMED_FRAMES.inc()
            continue
        fragment = extract_fragment(frame)
        if fragment:
            RELAY_FRAGMENTS.inc()
            yield content_event(fragment)


def relay_events(upstream: UpstreamStream) -> Iterator[str]:
    """Forward upstream fragments as they arrive, always finishing with ``[DONE]``.

    If the consumer stops iterating (caller disconnected) the generator is
    closed, the upstream connection is released and nothing more is emitted.
    """

    decoder = SSELineDecoder()
    outcome = "completed"
    try:
        for chunk in upstream.response.iter_content(chunk_size=None):
            if not chunk:
                continue
            yield from reframe_lines(decoder.feed(chunk))
        yield from reframe_lines(decoder.flush())
    except GeneratorExit:
        record_relay_outcome("disconnected")
        raise
    except Exception as exc:
        outcome = "interrupted"
        LOG.warning(
            "relay_stream_interrupted err=%s",
            exc,
            extra={"provider": upstream.provider, "model": upstream.model},
        )
    finally:
        upstream.response.close()
    record_relay_outcome(outcome)
    yield DONE_FRAME
