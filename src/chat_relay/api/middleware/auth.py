"""Authentication for Supabase-issued session JWTs."""

from typing import Optional

import jwt
from fastapi import Depends, Request
from pydantic import BaseModel

from ...config.settings import Settings
from ...errors import Unauthenticated
from ...logging import anonymize_user_id, get_logger

logger = get_logger(__name__)


class Caller(BaseModel):
    """Identity resolved from the session token."""

    id: str
    email: Optional[str] = None
    role: Optional[str] = None


class SupabaseAuth:
    """Verifies HS256 access tokens signed with the project's JWT secret."""

    def __init__(self, jwt_secret: Optional[str], audience: str = "authenticated",
                 cookie_name: str = "sb-access-token"):
        self.jwt_secret = jwt_secret
        self.audience = audience
        self.cookie_name = cookie_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseAuth":
        return cls(
            jwt_secret=settings.supabase_jwt_secret,
            audience=settings.jwt_audience,
            cookie_name=settings.auth_cookie_name,
        )

    def extract_token(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.lower().startswith("bearer "):
            return auth_header.split(" ", 1)[1].strip() or None
        return request.cookies.get(self.cookie_name)

    def verify_token(self, token: str) -> Optional[Caller]:
        """Return the caller for a valid token, or None."""
        if not self.jwt_secret:
            logger.warning("auth_not_configured")
            return None

        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience=self.audience,
            )
        except jwt.ExpiredSignatureError:
            logger.info("auth_token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.info("auth_token_invalid", error=str(e))
            return None

        user_id = payload.get("sub")
        if not user_id:
            logger.info("auth_token_invalid", error="missing sub claim")
            return None

        return Caller(id=user_id, email=payload.get("email"), role=payload.get("role"))

    def resolve(self, request: Request) -> Optional[Caller]:
        token = self.extract_token(request)
        if not token:
            return None
        caller = self.verify_token(token)
        if caller:
            logger.debug("auth_resolved", user=anonymize_user_id(caller.id))
        return caller


def get_auth(request: Request) -> SupabaseAuth:
    return request.app.state.services.auth


async def get_current_user_optional(
    request: Request,
    auth: SupabaseAuth = Depends(get_auth),
) -> Optional[Caller]:
    """
    Optional user authentication - returns None if no valid token was provided.

    The relay endpoint uses this so that the orchestrator decides when to reject.
    """
    return auth.resolve(request)


async def require_auth(caller: Optional[Caller] = Depends(get_current_user_optional)) -> Caller:
    """Dependency that requires authentication."""
    if caller is None:
        raise Unauthenticated()
    return caller
