"""
Authentication for FastAPI endpoints.

Practitioner endpoints verify a Supabase JWT via auth.get_user(). The
Pagar.me webhook authenticates with HTTP Basic credentials configured in the
provider dashboard, or with the account's secret key as a Bearer token.
"""

import base64
import binascii
import hmac
from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from evidens.config import PagarmeConfig

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


class WebhookAuthResult(BaseModel):
    """Outcome of checking a webhook Authorization header."""

    success: bool
    method: str
    details: str


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Serviço de autenticação indisponível")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Token inválido ou expirado")
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Token inválido ou expirado")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


def _matches(given: str, expected: str) -> bool:
    return bool(expected) and hmac.compare_digest(given.encode(), expected.encode())


def authenticate_webhook(authorization: str | None, config: PagarmeConfig) -> WebhookAuthResult:
    """Check a webhook Authorization header against the configured credentials."""
    if not authorization:
        return WebhookAuthResult(
            success=False, method="none", details="Missing authorization header"
        )

    if authorization.startswith("Basic "):
        try:
            decoded = base64.b64decode(authorization[len("Basic "):], validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            return WebhookAuthResult(
                success=False, method="basic", details=f"Failed to decode: {e}"
            )
        username, _, password = decoded.partition(":")
        if _matches(username, config.webhook_user) and _matches(password, config.webhook_password):
            return WebhookAuthResult(success=True, method="basic", details="Valid credentials")
        return WebhookAuthResult(success=False, method="basic", details="Invalid credentials")

    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
        if _matches(token, config.secret_key):
            return WebhookAuthResult(success=True, method="bearer", details="Valid API key")
        return WebhookAuthResult(success=False, method="bearer", details="Invalid API key")

    return WebhookAuthResult(
        success=False, method="unknown", details="Unsupported authentication method"
    )
