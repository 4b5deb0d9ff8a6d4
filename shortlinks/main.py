"""FastAPI application entry point for the short-link service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │ lifespan()   │
    │ startup:     │
    │ init_db()    │
    │ manager.     │
    │ initialize() │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    │ requests     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ shutdown:    │
    │ cleanup()    │
    │ close_db()   │
    └──────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn shortlinks.main:app --host 0.0.0.0 --port 8080

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8080/api/shorten \
         -H "Content-Type: application/json" \
         -d '{"longUrl": "https://example.com", "customAlias": "launch"}'

    curl -i http://localhost:8080/launch

Key Behaviours
===============
- Database tables are created automatically on startup.
- Prometheus metrics are exposed at /metrics.
- Domain errors are rendered by shortlinks.exception_handlers.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from shortlinks.config import get_settings
from shortlinks.database import close_db, init_db
from shortlinks.dependencies import _service_manager
from shortlinks.exception_handlers import setup_exception_handlers
from shortlinks.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short-link service with custom aliases, rate limiting and click analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
