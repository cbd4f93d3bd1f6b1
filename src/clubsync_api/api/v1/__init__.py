from fastapi import APIRouter

from .endpoints import crm_sync, health, membership

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(membership.router)
router.include_router(crm_sync.router)
