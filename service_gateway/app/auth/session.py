"""
Caller session tokens for the NPHIES gateway.

Providers log in with a username and password and receive an HS256 JWT that
carries their role and provider code. Protected routes verify that token on
every request; a missing, malformed or expired token is an
``AuthenticationError`` (401), which clients treat as "log in again".
"""

from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from shared.config import BaseConfig
from shared.errors import AuthenticationError
from shared.logging import get_logger, set_user_context

ALGORITHM = "HS256"
PROVIDER_ROLE = "healthcare_provider"


@dataclass(frozen=True)
class SessionContext:
    """Authenticated caller derived from a verified session token."""

    username: str
    role: str
    provider_id: str
    claims: Dict[str, Any]
    token: str

    def to_user(self) -> Dict[str, str]:
        return {"username": self.username, "role": self.role, "providerId": self.provider_id}


class SessionAuthenticator:
    """Issues and verifies caller session tokens."""

    def __init__(self, config: BaseConfig, clock: Callable[[], float] = time.time):
        self.secret = config.jwt_secret
        self.expires_in = config.jwt_expires_in
        self.demo_username = config.demo_username
        self.demo_password = config.demo_password
        self.demo_provider_id = config.demo_provider_id
        self._clock = clock
        self.logger = get_logger("gateway.auth.session")

    def check_credentials(self, username: str, password: str) -> Optional[Dict[str, str]]:
        """Return the user profile for valid credentials, ``None`` otherwise."""
        username_ok = hmac.compare_digest(username.encode(), self.demo_username.encode())
        password_ok = hmac.compare_digest(password.encode(), self.demo_password.encode())
        if not (username_ok and password_ok):
            return None
        return {"username": username, "role": PROVIDER_ROLE, "providerId": self.demo_provider_id}

    def issue_token(self, user: Dict[str, str]) -> str:
        now = int(self._clock())
        claims = {
            "sub": user["username"],
            "username": user["username"],
            "role": user["role"],
            "providerId": user["providerId"],
            "iat": now,
            "exp": now + self.expires_in,
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> SessionContext:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError as exc:
            self.logger.warning("Session token rejected", error=str(exc))
            raise AuthenticationError("Invalid or expired token", details={"reason": "invalid_token"}) from exc

        # Expiry is checked against our own clock so it can be driven in tests.
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or self._clock() >= exp:
            raise AuthenticationError("Invalid or expired token", details={"reason": "token_expired"})

        username = claims.get("username") or claims.get("sub")
        provider_id = claims.get("providerId")
        if not isinstance(username, str) or not isinstance(provider_id, str):
            raise AuthenticationError("Invalid or expired token", details={"reason": "missing_claims"})

        return SessionContext(
            username=username,
            role=str(claims.get("role", "")),
            provider_id=provider_id,
            claims=claims,
            token=token,
        )

    async def authenticate(self, request: Request) -> SessionContext:
        """Authenticate the incoming request using the Authorization bearer token."""
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Access token required", details={"reason": "missing_token"})

        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Access token required", details={"reason": "missing_token"})

        context = self.verify_token(token)

        request.state.user_info = {
            "user_id": context.username,
            "provider_id": context.provider_id,
            "role": context.role,
        }
        request.state.session = context
        set_user_context(context.username, context.provider_id)
        return context
