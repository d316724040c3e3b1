from fastapi import APIRouter

from app.api.routes.info import router as _info_routes
from app.api.v1 import api_v1_router

info_router = APIRouter(prefix="/api")
info_router.include_router(_info_routes)

__all__ = ["api_v1_router", "info_router"]
