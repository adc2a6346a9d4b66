"""Bearer-token authentication for FastAPI.

Tokens are not verified against an identity provider. Any bearer token of at
least MIN_TOKEN_LENGTH characters is accepted and the user id is its first
USER_ID_LENGTH characters, so the same token always maps to the same user.
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

_bearer_scheme = HTTPBearer(auto_error=False)

MIN_TOKEN_LENGTH = 10
USER_ID_LENGTH = 10


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity derived from the bearer token."""

    user_id: str
    token: str


def user_from_token(token: str) -> AuthenticatedUser:
    token = token.strip()
    if len(token) < MIN_TOKEN_LENGTH:
        raise HTTPException(status_code=401, detail="Authentication token is invalid")
    return AuthenticatedUser(user_id=token[:USER_ID_LENGTH], token=token)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency returning the authenticated caller.

    Usage::

        @router.get("/protected")
        async def protected(user: AuthenticatedUser = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = user_from_token(credentials.credentials)

    # For downstream use (error handlers, log context)
    request.state.user_id = user.user_id
    return user
