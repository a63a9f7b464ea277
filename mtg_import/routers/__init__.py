from mtg_import.routers.health import router as health_router
from mtg_import.routers.imports import router as imports_router
from mtg_import.routers.sets import router as sets_router

__all__ = ["health_router", "imports_router", "sets_router"]
