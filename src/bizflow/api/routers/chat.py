from __future__ import annotations

import logging
from typing import List

import requests
from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from ...domain.chat_models import (
    ChatSurface,
    MarkupRequest,
    MarkupResponse,
    PageContext,
    RelayError,
    RelayRequest,
)
from ...observability.metrics import record_relay_outcome
from ...services.markup import visible_segments
from ...services.prompts import CHAT_SURFACES, get_surface, list_page_contexts
from ...services.relay import ConfigurationError, UpstreamRejection, open_upstream_stream, relay_events
from ...services.streaming import SSE_HEADERS

LOG = logging.getLogger("bizflow.relay")

router = APIRouter(prefix="/chat", tags=["chat"])


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(RelayError(error=message).model_dump(), status_code=status_code)


@router.post(
    "",
    response_class=StreamingResponse,
    responses={500: {"model": RelayError}, 502: {"model": RelayError}},
)
def relay_chat(req: RelayRequest):
    history = [m.model_dump() for m in req.messages]
    try:
        upstream = open_upstream_stream(history, req.current_page)
    except ConfigurationError as exc:
        record_relay_outcome("misconfigured")
        return _error(str(exc), 500)
    except UpstreamRejection as exc:
        record_relay_outcome("rejected")
        return _error(f"API error: {exc.status_code}", exc.status_code)
    except requests.RequestException as exc:
        record_relay_outcome("unreachable")
        LOG.exception("relay_upstream_unreachable err=%s", exc)
        return _error("Internal server error", 500)
    except Exception as exc:
        record_relay_outcome("failed")
        LOG.exception("relay_upstream_setup_failed err=%s", exc)
        return _error("Internal server error", 500)

    return StreamingResponse(
        relay_events(upstream),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/pages", response_model=List[PageContext])
def list_pages() -> List[PageContext]:
    return list_page_contexts()


@router.get("/surfaces", response_model=List[ChatSurface])
def list_surfaces() -> List[ChatSurface]:
    return list(CHAT_SURFACES.values())


@router.get("/surfaces/{name}", response_model=ChatSurface, responses={404: {"model": RelayError}})
def read_surface(name: str):
    surface = get_surface(name)
    if surface is None:
        return _error("Surface not found", 404)
    return surface


@router.post("/markup", response_model=MarkupResponse)
def parse_markup_route(req: MarkupRequest) -> MarkupResponse:
    return MarkupResponse(segments=visible_segments(req.content, req.settled))
