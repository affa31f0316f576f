from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from ..observability.metrics import metrics_middleware_factory
from ..services.model_router import ModelRouter

load_dotenv()  # Load environment variables from .env if present (XAI_API_KEY, OPENAI_API_KEY, etc.)

app = FastAPI(title="BizFlow Assistant API", version="0.1.0")

logging.basicConfig(level=logging.INFO)
LOG = logging.getLogger("bizflow.api")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers; /api/chat is the path the front-end calls
app.include_router(chat_router)
app.include_router(chat_router, prefix="/api")


def _cors_origins() -> list[str]:
    raw = os.getenv("BIZFLOW_CORS_ORIGINS", "http://localhost:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    LOG.info("invalid_request path=%s errors=%d", request.url.path, len(exc.errors()))
    return JSONResponse({"error": "Invalid request body"}, status_code=422)


def _health_payload() -> dict:
    selection = ModelRouter().maybe_select_provider()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "llm": selection.name if selection else "unconfigured",
        },
    }


@app.get("/")
def root():
    return {"name": "BizFlow Assistant API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health_payload()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# API-prefixed convenience routes (kept alongside non-prefixed routes)
@app.get("/api")
def api_root():
    return {"name": "BizFlow Assistant API", "version": "0.1.0"}


@app.get("/api/health")
def api_health():
    return _health_payload()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "src.bizflow.api.main:app",
        host=os.getenv("BIZFLOW_HOST", "127.0.0.1"),
        port=int(os.getenv("BIZFLOW_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
