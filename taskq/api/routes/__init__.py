"""
API routes module.
"""

from taskq.api.routes.health import router as health_router
from taskq.api.routes.tasks import router as tasks_router

__all__ = ["tasks_router", "health_router"]
