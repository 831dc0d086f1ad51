"""Main API routes for QA Access."""

from fastapi import APIRouter

from .admin import router as admin_router
from .audits import router as audits_router
from .credits import router as credits_router
from .me import router as me_router

# Main API router
router = APIRouter()

router.include_router(me_router, tags=["identity"])
router.include_router(audits_router, tags=["audits"])
router.include_router(credits_router, tags=["credits"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
