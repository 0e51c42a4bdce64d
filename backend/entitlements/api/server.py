import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from entitlements.api import subscriptions
from entitlements.services.scheduler import start_scheduler, stop_scheduler

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - start and stop the expiry sweep."""
    # Startup
    log.info("Starting background scheduler...")
    start_scheduler()
    yield
    # Shutdown
    log.info("Stopping background scheduler...")
    stop_scheduler()


description = """
Grants and revokes the Pro entitlement from App Store and Google Play
subscriptions: receipt verification, restore, status, cancellation and
storefront server notifications.
"""

tags_metadata = [
    {"name": "subscriptions", "description": "Plans, receipt verification, status, cancellation and storefront webhooks"},
]

app = FastAPI(
    title="Entitlements API",
    description=description,
    version="1.0.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Configure CORS for local web clients
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router)


@app.get("/")
def root():
    return {"message": "Entitlements API is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"ok": True}
