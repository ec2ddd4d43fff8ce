from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from escrowguard.api.middleware import AuditMiddleware
from escrowguard.api.v1.router import v1_router
from escrowguard.api.v1.websocket import router as ws_router
from escrowguard.common.logging import get_logger, setup_logging
from escrowguard.config import settings
from escrowguard.integrations import AIClient, EmailClient, StripeClient

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("EscrowGuard API starting (env=%s)", settings.APP_ENV)
    yield


app = FastAPI(
    title="EscrowGuard API",
    description="Escrow-backed dispute resolution for service bookings",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
origins = settings.ALLOWED_ORIGINS.split(",") if settings.ALLOWED_ORIGINS != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(AuditMiddleware)

# API routes
app.include_router(v1_router, prefix="/api/v1")
app.include_router(ws_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "escrowguard",
        "version": "1.0.0",
        "env": settings.APP_ENV,
    }


@app.get("/health/integrations")
async def integrations_health():
    """Reachability of the payment processor, the AI provider and e-mail."""
    checks = {}
    for client in (StripeClient(), AIClient(), EmailClient()):
        checks[client.name] = await client.health_check()
    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "integrations": checks,
    }
