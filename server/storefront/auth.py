"""
Storefront Server Authentication

Cognito bearer-token authentication with:
- Per-route admin gating (group membership "admin")
- A skip-auth escape hatch for diagnostics, honoured outside production only
- An optional variant for endpoints that also serve anonymous callers
"""

import logging
from typing import Optional

from fastapi import Request

from .errors import AppError, ConfigurationError, ForbiddenError, UnauthorizedError
from .identity import Authenticator, AuthFailure, AuthFailureKind, Identity, build_authenticator
from .settings import settings

logger = logging.getLogger(__name__)


def get_authenticator(request: Request) -> Authenticator:
    """Authenticator selected at startup (built on first use if startup was skipped)."""
    authenticator = getattr(request.app.state, "authenticator", None)
    if authenticator is None:
        authenticator = build_authenticator(settings)
        request.app.state.authenticator = authenticator
    return authenticator


def _bind_identity(request: Request, identity: Identity) -> None:
    request.state.user = identity


class AuthGate:
    """
    FastAPI dependency enforcing authentication on a route.

    Failures never escape as raw exceptions: missing, malformed or invalid
    credentials become 401, a misconfigured verifier becomes 500, and the
    admin check (403) only runs once the caller is authenticated.
    """

    def __init__(self, require_admin: bool = False, skip_auth: bool = False):
        self.require_admin = require_admin
        self.skip_auth = skip_auth

    async def __call__(self, request: Request) -> Optional[Identity]:
        if request.method == "OPTIONS":
            return None

        if self.skip_auth and not settings.is_production:
            return None

        authenticator = get_authenticator(request)
        try:
            identity = await authenticator.authenticate(request.headers.get("Authorization"))
        except AuthFailure as e:
            logger.warning(f"Authentication failed ({e.kind.value}): {e.message}")
            if e.kind == AuthFailureKind.MISCONFIGURED:
                raise ConfigurationError(
                    "Authentication service not configured",
                    public_message="Authentication service not configured",
                    details={"reason": e.message},
                ) from e
            raise UnauthorizedError("Authentication required") from e
        except Exception as e:
            logger.exception("Unexpected authentication error")
            raise AppError("Authentication failed", title="Internal Server Error") from e

        if self.require_admin and not identity.is_admin:
            raise ForbiddenError("Admin access required")

        _bind_identity(request, identity)
        return identity


class OptionalAuthGate:
    """
    Resolve the caller if they sent credentials; otherwise treat them as
    anonymous. A header that fails verification also yields anonymous.
    """

    async def __call__(self, request: Request) -> Optional[Identity]:
        header = request.headers.get("Authorization")
        if not header:
            return None

        try:
            identity = await get_authenticator(request).authenticate(header)
        except AuthFailure as e:
            logger.warning(f"Optional authentication failed: {e.message}")
            return None

        _bind_identity(request, identity)
        return identity


get_current_user = AuthGate()
get_admin_user = AuthGate(require_admin=True)
get_diagnostics_user = AuthGate(skip_auth=True)
get_optional_user = OptionalAuthGate()
