from app.routers.deals import router as deals_router
from app.routers.workflows import router as workflows_router
from app.routers.offers import router as offers_router
from app.routers.tasks import router as tasks_router
from app.routers.settings import router as settings_router
from app.routers.websocket import router as ws_router

__all__ = [
    "deals_router",
    "workflows_router",
    "offers_router",
    "tasks_router",
    "settings_router",
    "ws_router",
]
