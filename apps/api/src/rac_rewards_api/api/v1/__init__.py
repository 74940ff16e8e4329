from fastapi import APIRouter

from .endpoints import health, membership_admin, memberships, observability

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(memberships.router)
router.include_router(membership_admin.router)
router.include_router(observability.router)
