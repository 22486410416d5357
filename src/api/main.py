"""
FastAPI application entry point.

Hosts the webhook endpoint and the admin API of the automation hub.
Optional API key authentication covers the admin routes; webhook sources
authenticate their own deliveries.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI

from src import __version__
from src.infra.config import HubSettings
from .routers import escalations, runs, scheduler, webhooks
from ._hub_state import init_hub_service, shutdown_hub_service
from .dependencies.auth import verify_api_key, API_AUTH_ENABLED


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the hub from the environment (HUB_BOOTSTRAP) and starts the
    scheduler unless HUB_AUTOSTART=false. Stops it gracefully on shutdown.
    """
    # Startup
    settings = HubSettings.from_env()
    service = init_hub_service(settings)
    if settings.autostart:
        if not service.is_running:
            service.start()
    else:
        logger.info("HUB_AUTOSTART=false; start the scheduler with POST /scheduler/start")

    yield

    # Shutdown - stop in-flight runs at an item boundary
    shutdown_hub_service()

# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "webhooks",
        "description": "Inbound webhook deliveries - authenticated per source, deduplicated by delivery id",
    },
    {
        "name": "runs",
        "description": "Run history - one record per workflow execution",
    },
    {
        "name": "escalations",
        "description": "Escalation records - one open external task per escalation key",
    },
    {
        "name": "scheduler",
        "description": "Scheduler control plane - start, stop, status and manual triggers",
    },
]

app = FastAPI(
    title="Automation Hub API",
    lifespan=lifespan,
    description="""
## Automation Hub API

Scheduled and webhook-triggered workflows with durable watermarks and
escalation to a task tracker.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` and `/webhooks/*`
require an `X-API-Key` header matching the `API_KEY` environment variable.
Webhook sources are authenticated by their signatures
(`WEBHOOK_SECRET_<SOURCE>`).

### Usage
```bash
# Start server
uvicorn src.api.main:app --host 127.0.0.1 --port 8000

# Scheduler status (with auth)
curl http://localhost:8000/scheduler/status -H "X-API-Key: your-api-key"
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)

# Health check - NO authentication (operational endpoints)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


# Webhooks authenticate per source, never with the admin key
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Include admin routers WITH authentication dependency (when enabled)
auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []

app.include_router(
    runs.router, prefix="/runs", tags=["runs"], dependencies=auth_dependency
)
app.include_router(
    escalations.router, prefix="/escalations", tags=["escalations"], dependencies=auth_dependency
)
app.include_router(
    scheduler.router, prefix="/scheduler", tags=["scheduler"], dependencies=auth_dependency
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
