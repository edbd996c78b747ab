"""API routers for fundflow."""

from . import approvals
from . import health

__all__ = [
    "approvals",
    "health",
]
