"""Bearer token verification for voter and admin routes."""
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from evote.shared.models import Voter

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class AuthError(Exception):
    """Authentication or authorization failure, rendered as 401/403."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


async def get_current_voter(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Voter:
    """
    Resolve the voter named by the bearer token's `id` claim.

    Issuing tokens belongs to the identity provider; this only verifies the
    signature and loads the voter record.
    """
    if credentials is None:
        raise AuthError(401, "Not authorized to access this route")

    settings = request.app.state.settings
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
        voter_id = int(payload["id"])
    except (JWTError, KeyError, TypeError, ValueError) as e:
        logger.info(f"Rejected bearer token: {e}")
        raise AuthError(401, "Not authorized to access this route")

    voter = await request.app.state.voters.find(voter_id)
    if voter is None:
        raise AuthError(401, "User not found")
    return voter


async def require_admin(voter: Voter = Depends(get_current_voter)) -> Voter:
    if not voter.is_admin:
        raise AuthError(403, "User role user is not authorized to access this route")
    return voter
