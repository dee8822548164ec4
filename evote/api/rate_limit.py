"""Request rate limiting shared by the API routers."""
from slowapi import Limiter
from slowapi.util import get_remote_address

from evote.api.config import Settings, settings

limiter = Limiter(key_func=get_remote_address)

# slowapi evaluates callable limits per request, so this follows configure()
_cast_vote_limit = settings.RATE_LIMIT


def configure(app_settings: Settings):
    """Apply the rate limits of the app being built."""
    global _cast_vote_limit
    _cast_vote_limit = app_settings.RATE_LIMIT


def cast_vote_limit() -> str:
    return _cast_vote_limit
