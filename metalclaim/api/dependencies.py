"""FastAPI dependencies."""
from fastapi import HTTPException

from metalclaim.controller import Controller

# Set by the application lifespan
controller: Controller | None = None


def get_controller() -> Controller:
    """Dependency for the running controller."""
    if controller is None:
        raise HTTPException(status_code=503, detail="Controller not started")
    return controller
