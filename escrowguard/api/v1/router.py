from fastapi import APIRouter

from escrowguard.api.v1.disputes import router as disputes_router
from escrowguard.api.v1.escrow import router as escrow_router
from escrowguard.api.v1.webhooks import router as webhooks_router

v1_router = APIRouter()

v1_router.include_router(disputes_router)
v1_router.include_router(escrow_router)
v1_router.include_router(webhooks_router)
