from cardvault.api.admin import router as admin_router
from cardvault.api.collection import router as collection_router
from cardvault.api.grading import router as grading_router
from cardvault.api.health import router as health_router
from cardvault.api.market import router as market_router
from cardvault.api.supply import router as supply_router
from cardvault.api.trades import router as trades_router

__all__ = [
    "admin_router",
    "collection_router",
    "grading_router",
    "health_router",
    "market_router",
    "supply_router",
    "trades_router",
]
