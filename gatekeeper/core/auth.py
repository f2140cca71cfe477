"""Bearer token verification for the admission engine.

Token issuance lives in the identity service; this module only verifies
HS-signed JWTs and maps their claims to a Principal. The admission engine
treats a missing or invalid credential as "unauthenticated" and falls back
to IP-only checks, so verification failures never reject a request here.

Recognized claims:
- ``sub`` or ``userId``: user identifier (required)
- ``role``: role name, compared against ``admin_role`` by the evaluator
- ``tenantId`` or ``tenant_id``: tenant identifier
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt

from gatekeeper.core.config import AuthSettings
from gatekeeper.core.errors import AuthenticationAppError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity."""

    user_id: str
    role: str | None = None
    tenant_id: str | None = None


def parse_bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Examples:
        >>> parse_bearer_token("Bearer abc.def.ghi")
        'abc.def.ghi'
        >>> parse_bearer_token("Basic dXNlcg==") is None
        True
        >>> parse_bearer_token(None) is None
        True
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class JWTTokenVerifier:
    """Verify signed JWTs and map their claims to a Principal."""

    def __init__(self, *, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    @classmethod
    def from_settings(cls, auth: AuthSettings) -> "JWTTokenVerifier":
        return cls(secret=auth.jwt_secret, algorithm=auth.jwt_algorithm)

    def verify(self, token: str) -> Principal:
        """Verify a token.

        Raises:
            AuthenticationAppError: If the token is expired, malformed, or has no subject.
        """
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationAppError(
                code="token_expired",
                message="Bearer token has expired",
            ) from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationAppError(
                code="invalid_token",
                message="Bearer token is invalid",
            ) from exc

        user_id = claims.get("sub") or claims.get("userId")
        if not user_id:
            raise AuthenticationAppError(
                code="invalid_token",
                message="Bearer token has no subject",
            )

        tenant_id = claims.get("tenantId") or claims.get("tenant_id")
        return Principal(
            user_id=str(user_id),
            role=claims.get("role"),
            tenant_id=str(tenant_id) if tenant_id is not None else None,
        )

    def resolve_principal(self, authorization: str | None) -> Principal | None:
        """Return the caller's Principal, or None when unauthenticated."""

        token = parse_bearer_token(authorization)
        if token is None:
            return None
        try:
            return self.verify(token)
        except AuthenticationAppError as exc:
            logger.info("auth.unauthenticated", extra={"reason": exc.code})
            return None
