# src/tensors_gateway/session_tokens.py

import time
import typing
from urllib.parse import quote, unquote

from fastapi import Request, Response
from loguru import logger

from .errors import TokenError
from .signing import Signer

Clock = typing.Callable[[], float]

SEPARATOR = ":"


class SessionCodec:
    """
    Issues and verifies `username:expiresAt:signature` session tokens.

    The token is self-contained: the signature covers `username:expiresAt`,
    so the gateway needs nothing but the signing secret to check it.
    """

    def __init__(self, signer: Signer, default_ttl: int, clock: Clock = time.time):
        self.signer = signer
        self.default_ttl = default_ttl
        self._clock = clock

    def issue(self, username: str, ttl_seconds: typing.Optional[int] = None) -> str:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("Session TTL must be positive.")
        if not username or SEPARATOR in username:
            raise ValueError(f"Invalid username for a session token: {username!r}")

        expires_at = int(self._clock()) + ttl
        message = f"{username}{SEPARATOR}{expires_at}"
        signature = self.signer.sign(message.encode("utf-8"))
        return f"{message}{SEPARATOR}{signature}"

    def parse(self, token: typing.Optional[str]) -> str:
        """Returns the username in `token` or raises TokenError with the reason."""
        if not token:
            raise TokenError("Missing session token")

        parts = token.split(SEPARATOR)
        if len(parts) != 3:
            raise TokenError("Malformed session token")
        username, expires_str, signature = parts
        if not username:
            raise TokenError("Session token has no username")
        if not expires_str.isascii() or not expires_str.isdigit():
            raise TokenError("Session token has an invalid expiry")

        if self._clock() > int(expires_str):
            raise TokenError("Session token expired")

        message = f"{username}{SEPARATOR}{expires_str}"
        if not self.signer.verify(message.encode("utf-8"), signature):
            raise TokenError("Session token signature mismatch")
        return username

    def verify(self, token: typing.Optional[str]) -> typing.Optional[str]:
        try:
            return self.parse(token)
        except TokenError as e:
            logger.debug(f"SESSION: Rejected session token: {e.message}")
            return None


# --- Cookie helpers ---

def set_session_cookie(
        response: Response,
        token: str,
        *,
        name: str,
        max_age: int,
        domain: typing.Optional[str],
) -> None:
    response.set_cookie(
        key=name,
        value=quote(token, safe=""),
        max_age=max_age,
        path="/",
        domain=domain,
        httponly=True,
        secure=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, *, name: str, domain: typing.Optional[str]) -> None:
    response.set_cookie(
        key=name,
        value="",
        max_age=0,
        path="/",
        domain=domain,
        httponly=True,
        secure=True,
        samesite="lax",
    )


def read_session_cookie(request: Request, name: str) -> typing.Optional[str]:
    raw = request.cookies.get(name)
    if not raw:
        return None
    return unquote(raw)
