from __future__ import annotations

from datetime import UTC, datetime
import os
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.generate import router as generate_router
from ..domain.errors import SpinError
from ..infrastructure.conversation_store import get_conversation_store
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # ANTHROPIC_API_KEY, MONGO_URL, REDIS_URL, ... from .env if present

APP_NAME = "Spin Code Generation API"
APP_VERSION = "0.1.0"

app = FastAPI(title=APP_NAME, version=APP_VERSION)

app.middleware("http")(metrics_middleware_factory())

app.include_router(generate_router)
# Same router under /api, matching the browser client's /api/anthropic path
app.include_router(generate_router, prefix="/api")

_origins = os.getenv("SPIN_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SpinError)
async def spin_error_handler(request: Request, exc: SpinError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def _health() -> dict:
    store = get_conversation_store()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": type(store).__name__,
            "llm": "configured" if os.getenv("ANTHROPIC_API_KEY") else "missing_api_key",
        },
    }


@app.get("/")
def root():
    return {"name": APP_NAME, "version": APP_VERSION}


@app.get("/health")
def health():
    return _health()


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
