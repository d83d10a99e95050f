from quota_app.routers.health_api import router as health_router
from quota_app.routers.refresh_api import router as refresh_router

__all__ = ["health_router", "refresh_router"]
