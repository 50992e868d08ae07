"""
API Routers package
"""
from alert_engine.routers.webhook import router as webhook_router
from alert_engine.routers.rules import router as rules_router
from alert_engine.routers.alert_groups import router as alert_groups_router
from alert_engine.routers.metrics import router as metrics_router

__all__ = [
    "webhook_router",
    "rules_router",
    "alert_groups_router",
    "metrics_router",
]
