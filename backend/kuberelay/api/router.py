from fastapi import APIRouter

from kuberelay.api.routes import watch

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(watch.router)
