"""Bearer-token authentication against the identity provider's HS256 JWTs."""

from __future__ import annotations

import logging

import jwt
from starlette.requests import Request

from marginalia.config import Settings
from marginalia.errors import Unauthorized

logger = logging.getLogger(__name__)


class JWTVerifier:
    """Verifies access tokens and returns the caller's user id (`sub`)."""

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._audience = settings.jwt_audience or None
        self._issuer = settings.jwt_issuer or None
        if not self._secret:
            logger.warning("SUPABASE_JWT_SECRET is not set -- all requests will be rejected")

    def verify(self, token: str) -> str:
        if not self._secret:
            raise Unauthorized("Authentication is not configured")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired") from None
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise Unauthorized("Invalid token") from None
        return str(claims["sub"])

    def authenticate(self, request: Request) -> str:
        """User id from the request's Authorization header."""
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized("Missing or invalid authorization header")
        return self.verify(token.strip())
