"""
Bearer token verification against a Cognito user pool.

A request moves through: header present -> token extracted -> signing key
resolved -> signature and claims verified. Any failing step rejects the
token with an AuthFailure whose kind tells the gate how to respond.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import jwt
from pydantic import BaseModel

from .cache import Cache, MemoryCache
from .settings import Settings

logger = logging.getLogger(__name__)


ACCEPTED_TOKEN_USES = ("id", "access")
ALLOWED_ALGORITHMS = ["RS256"]
ADMIN_GROUP = "admin"


class AuthFailureKind(str, Enum):
    MISSING_HEADER = "missing_header"
    MALFORMED_HEADER = "malformed_header"
    VERIFICATION_FAILED = "verification_failed"
    KEY_RESOLUTION_FAILED = "key_resolution_failed"
    MISCONFIGURED = "misconfigured"


class AuthFailure(Exception):
    def __init__(self, kind: AuthFailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class Identity(BaseModel):
    """
    Caller identity rebuilt from a verified token on every request.
    """
    user_id: str
    username: str
    email: Optional[str] = None
    groups: List[str] = []
    is_admin: bool = False
    token_use: Optional[str] = None
    client_id: Optional[str] = None


def extract_token(header_value: Optional[str]) -> str:
    """Return the token from an `Authorization: Bearer <token>` value."""
    if not header_value:
        raise AuthFailure(AuthFailureKind.MISSING_HEADER, "No authorization header found")

    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthFailure(
            AuthFailureKind.MALFORMED_HEADER,
            "Invalid authorization header format. Expected: Bearer <token>",
        )
    return parts[1]


def derive_identity(claims: Dict[str, Any]) -> Identity:
    groups = claims.get("cognito:groups") or []
    if isinstance(groups, str):
        groups = [groups]
    subject = claims["sub"]
    aud = claims.get("aud") or claims.get("client_id")
    return Identity(
        user_id=subject,
        username=claims.get("username") or claims.get("cognito:username") or subject,
        email=claims.get("email"),
        groups=list(groups),
        is_admin=ADMIN_GROUP in groups,
        token_use=claims.get("token_use"),
        client_id=aud if isinstance(aud, str) else None,
    )


class KeySetProvider:
    """
    Resolves signing keys by `kid` from the issuer's JWKS endpoint.

    Keys are cached individually so a rotated-in key only costs one fetch.
    """

    def __init__(
        self,
        jwks_url: str,
        cache: Cache,
        ttl: float = 600,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.jwks_url = jwks_url
        self.cache = cache
        self.ttl = ttl
        self.timeout = timeout
        self._client = client

    @staticmethod
    def _cache_key(kid: str) -> str:
        return f"jwks:{kid}"

    async def _get(self) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.jwks_url, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.jwks_url)

    async def fetch_key_set(self) -> List[Dict[str, Any]]:
        try:
            response = await self._get()
            response.raise_for_status()
            keys = response.json().get("keys", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise AuthFailure(
                AuthFailureKind.KEY_RESOLUTION_FAILED,
                f"Unable to fetch signing keys from {self.jwks_url}: {e}",
            ) from e
        logger.info(f"Fetched {len(keys)} signing keys from {self.jwks_url}")
        return keys

    async def get_jwk(self, kid: str) -> Dict[str, Any]:
        cached = await self.cache.get(self._cache_key(kid))
        if cached is not None:
            return cached

        match = None
        for jwk in await self.fetch_key_set():
            jwk_kid = jwk.get("kid")
            if not jwk_kid:
                continue
            await self.cache.set(self._cache_key(jwk_kid), jwk, self.ttl)
            if jwk_kid == kid:
                match = jwk

        if match is None:
            raise AuthFailure(
                AuthFailureKind.KEY_RESOLUTION_FAILED,
                f"Signing key '{kid}' not found in key set",
            )
        return match

    async def get_signing_key(self, kid: str) -> Any:
        jwk = await self.get_jwk(kid)
        try:
            return jwt.PyJWK(jwk).key
        except jwt.exceptions.PyJWKError as e:
            raise AuthFailure(
                AuthFailureKind.KEY_RESOLUTION_FAILED,
                f"Signing key '{kid}' is not usable: {e}",
            ) from e


class TokenVerifier:
    """Verifies signature, issuer, audience, expiry and token use."""

    def __init__(
        self,
        key_provider: KeySetProvider,
        issuer: str,
        audience: str,
        algorithms: Optional[List[str]] = None,
    ):
        self.key_provider = key_provider
        self.issuer = issuer
        self.audience = audience
        self.algorithms = algorithms or list(ALLOWED_ALGORITHMS)

    async def verify(self, token: str) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise AuthFailure(AuthFailureKind.VERIFICATION_FAILED, "Invalid token header") from e

        kid = header.get("kid")
        if not kid:
            raise AuthFailure(AuthFailureKind.VERIFICATION_FAILED, "Invalid token header")
        if header.get("alg") not in self.algorithms:
            raise AuthFailure(
                AuthFailureKind.VERIFICATION_FAILED,
                f"Token verification failed: algorithm {header.get('alg')!r} not allowed",
            )

        key = await self.key_provider.get_signing_key(kid)

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iss", "sub"]},
            )
        except jwt.PyJWTError as e:
            raise AuthFailure(
                AuthFailureKind.VERIFICATION_FAILED,
                f"Token verification failed: {e}",
            ) from e

        if claims.get("token_use") not in ACCEPTED_TOKEN_USES:
            raise AuthFailure(
                AuthFailureKind.VERIFICATION_FAILED,
                "Token verification failed: Invalid token use",
            )
        return claims


# --- Verification strategies ---


class Authenticator(ABC):
    """Turns an Authorization header value into an Identity."""

    @abstractmethod
    async def authenticate(self, authorization: Optional[str]) -> Identity:
        ...

    async def close(self) -> None:
        return None


class LocalAuthenticator(Authenticator):
    """Verifies tokens in-process against the user pool's key set."""

    def __init__(self, verifier: Optional[TokenVerifier], missing_config: Optional[str] = None):
        self.verifier = verifier
        self.missing_config = missing_config

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        if self.verifier is None:
            raise AuthFailure(
                AuthFailureKind.MISCONFIGURED,
                f"Cognito configuration missing. Please set {self.missing_config}.",
            )
        token = extract_token(authorization)
        claims = await self.verifier.verify(token)
        return derive_identity(claims)


class RemoteAuthenticator(Authenticator):
    """
    Delegates verification to a separately deployed authentication function.

    The function receives the raw header and answers
    `{"authenticated": bool, "user": {...}}`.
    """

    def __init__(self, function_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.function_url = function_url
        self.timeout = timeout
        self._client = client

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.function_url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.function_url, json=payload)

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        if not self.function_url:
            raise AuthFailure(
                AuthFailureKind.MISCONFIGURED,
                "Authentication function URL missing. Please set STOREFRONT_AUTH_FUNCTION_URL.",
            )
        # Reject obviously bad headers without a network round trip
        extract_token(authorization)

        try:
            response = await self._post({"headers": {"Authorization": authorization}})
        except httpx.HTTPError as e:
            raise AuthFailure(
                AuthFailureKind.KEY_RESOLUTION_FAILED,
                f"Authentication function unreachable: {e}",
            ) from e

        if response.status_code == 401:
            raise AuthFailure(AuthFailureKind.VERIFICATION_FAILED, "Token verification failed")
        try:
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AuthFailure(
                AuthFailureKind.KEY_RESOLUTION_FAILED,
                f"Authentication function error: {e}",
            ) from e

        if not data.get("authenticated") or not data.get("user"):
            raise AuthFailure(AuthFailureKind.VERIFICATION_FAILED, "Token verification failed")

        user = data["user"]
        groups = user.get("groups") or []
        return Identity(
            user_id=str(user["userId"]),
            username=user.get("username") or str(user["userId"]),
            email=user.get("email"),
            groups=groups,
            is_admin=ADMIN_GROUP in groups,
            token_use=user.get("tokenUse"),
            client_id=user.get("clientId"),
        )


def build_authenticator(settings: Settings, cache: Optional[Cache] = None) -> Authenticator:
    """Select the verification strategy once, at startup."""
    if settings.auth_strategy == "remote":
        logger.info(f"Using remote authentication function at {settings.auth_function_url or '<unset>'}")
        return RemoteAuthenticator(settings.auth_function_url, timeout=settings.auth_timeout_seconds)

    missing = [
        name
        for name, value in (
            ("STOREFRONT_COGNITO_USER_POOL_ID", settings.cognito_user_pool_id),
            ("STOREFRONT_COGNITO_CLIENT_ID", settings.cognito_client_id),
        )
        if not value
    ]
    if missing:
        logger.warning(f"Local authentication is not configured: missing {', '.join(missing)}")
        return LocalAuthenticator(None, missing_config=" and ".join(missing))

    if cache is None:
        cache = MemoryCache(max_entries=settings.jwks_cache_max_entries)
    provider = KeySetProvider(
        settings.jwks_url,
        cache,
        ttl=settings.jwks_cache_ttl,
        timeout=settings.auth_timeout_seconds,
    )
    verifier = TokenVerifier(provider, issuer=settings.cognito_issuer, audience=settings.cognito_client_id)
    return LocalAuthenticator(verifier)
