"""API routers, one per resource."""

from .admin import router as admin_router
from .candidates import router as candidates_router
from .results import router as results_router
from .settings import router as settings_router
from .voters import router as voters_router
from .votes import router as votes_router

__all__ = [
    'admin_router',
    'candidates_router',
    'results_router',
    'settings_router',
    'voters_router',
    'votes_router',
]
