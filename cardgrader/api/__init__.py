from cardgrader.api.cards import credentials_router
from cardgrader.api.cards import router as cards_router
from cardgrader.api.health import router as health_router

__all__ = [
    "cards_router",
    "credentials_router",
    "health_router",
]
