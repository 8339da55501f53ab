"""
Authentication helpers for the NPHIES gateway.
"""

from shared.errors import AuthenticationError

from .session import SessionAuthenticator, SessionContext

__all__ = [
    "AuthenticationError",
    "SessionAuthenticator",
    "SessionContext",
]
