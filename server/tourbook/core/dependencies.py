"""FastAPI dependencies for authentication and the payment gateway."""

from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError

from ..services.payment_gateway import PaymentGateway
from ..services.stripe_gateway import StripePaymentGateway
from .config import settings
from .exceptions import AuthenticationError, AuthorizationError
from .security import ADMIN_ROLE, is_admin


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> dict:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        dict: User information from validated token

    Raises:
        AuthenticationError: If token is invalid or missing
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format")

    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        # PyJWT enforces "exp" when present
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    return {
        "user_id": str(user_id),
        "email": payload.get("email"),
        "name": payload.get("name") or payload.get("username"),
        "roles": payload.get("roles", []),
    }


async def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """Allow only callers carrying the admin role."""
    if not is_admin(current_user):
        raise AuthorizationError(
            "Administrator role required",
            required_permissions=[ADMIN_ROLE],
        )
    return current_user


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    """Return the process-wide payment processor client."""
    return StripePaymentGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )
