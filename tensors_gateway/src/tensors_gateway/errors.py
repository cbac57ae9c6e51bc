# src/tensors_gateway/errors.py

from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base class for every error the gateway turns into a response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(GatewayError):
    """A required setting (e.g. the GitHub client id) is missing."""


class ProtocolError(GatewayError):
    """Malformed state, missing code, or an error reported by the identity provider."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(GatewayError):
    """Valid identity that is not on the allowlist."""

    status_code = status.HTTP_403_FORBIDDEN


class TokenError(GatewayError):
    """Missing, malformed, expired or tampered session token."""

    status_code = status.HTTP_401_UNAUTHORIZED


class UpstreamError(GatewayError):
    """Network failure or non-2xx answer from GitHub or the upstream API."""

    status_code = status.HTTP_502_BAD_GATEWAY
