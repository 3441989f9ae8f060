from fastapi import APIRouter

from lawcrm.api.routes.calendar import router as calendar_router
from lawcrm.api.routes.health import router as health_router
from lawcrm.api.routes.history import router as history_router
from lawcrm.api.routes.meetings import router as meetings_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes used by the current CRM frontend.
api_router.include_router(meetings_router)
api_router.include_router(history_router)
api_router.include_router(calendar_router)

v1_router.include_router(meetings_router)
v1_router.include_router(history_router)
v1_router.include_router(calendar_router)
api_router.include_router(v1_router)
