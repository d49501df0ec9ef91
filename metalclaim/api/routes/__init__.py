"""HTTP API routes."""
from metalclaim.api.routes.coordination import router as coordination_router
from metalclaim.api.routes.hosts import router as hosts_router
from metalclaim.api.routes.machines import router as machines_router

__all__ = ["coordination_router", "hosts_router", "machines_router"]
