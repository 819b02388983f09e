"""FastAPI application entry point for the link redirect service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │  uvicorn     │
    │  startup     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ init_db()    │
    │ services up  │  (Redis clients, Kafka producer, ClickHouse facade)
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ shutdown:    │
    │ services down│  (producer flushed and stopped)
    │ close_db()   │
    └──────────────┘

How to Use
===========
**Step 1 — Run the API**::
    uvicorn linkapp.main:app --host 0.0.0.0 --port 8080

**Step 2 — Run the click ingestion worker**::
    python -m services.ingestion.worker

**Step 3 — Make API calls**::
    curl -i http://localhost:8080/abc123
    curl http://localhost:8080/api/stats/abc123
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from linkapp.config import get_settings
from linkapp.database import close_db, init_db
from linkapp.dependencies import _service_manager
from linkapp.routes import router

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
    description="Short link redirects with click analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
