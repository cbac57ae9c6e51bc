# src/tensors_gateway/oauth_state.py
"""
Opaque OAuth `state` round-tripped through GitHub.

The blob is URL-safe base64 of a small JSON document holding the post-login
return URL, a random nonce and the issue time in milliseconds. It is not
signed and not stored; freshness is the only server-side check. Binding it
to the browser is done separately with the nonce cookie (see main.py).
"""

import base64
import binascii
import json
import time
import typing
import uuid

from loguru import logger
from pydantic import ValidationError

from .errors import ProtocolError
from .session_data import OAuthState

Clock = typing.Callable[[], float]

# States stamped slightly ahead of our clock are still accepted.
CLOCK_SKEW_MS = 60 * 1000


def _b64_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class StateCodec:
    def __init__(self, max_age_seconds: int, clock: Clock = time.time):
        self.max_age_ms = max_age_seconds * 1000
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def encode(self, return_url: str) -> str:
        state = OAuthState(return_url=return_url, nonce=uuid.uuid4().hex, issued_at=self._now_ms())
        payload = state.model_dump_json(by_alias=True)
        return _b64_encode(payload.encode("utf-8"))

    def parse(self, value: typing.Optional[str]) -> OAuthState:
        if not value:
            raise ProtocolError("Missing login state")
        try:
            raw = _b64_decode(value)
            data = json.loads(raw)
        except (binascii.Error, UnicodeError, ValueError):
            raise ProtocolError("Malformed login state")
        if not isinstance(data, dict):
            raise ProtocolError("Malformed login state")
        try:
            state = OAuthState.model_validate(data)
        except ValidationError:
            raise ProtocolError("Malformed login state")

        now_ms = self._now_ms()
        if state.issued_at > now_ms + CLOCK_SKEW_MS:
            raise ProtocolError("Malformed login state")
        if now_ms - state.issued_at > self.max_age_ms:
            raise ProtocolError("Login state expired, please sign in again")
        return state

    def decode(self, value: typing.Optional[str]) -> typing.Optional[OAuthState]:
        try:
            return self.parse(value)
        except ProtocolError as e:
            logger.debug(f"OAUTH: Rejected state: {e.message}")
            return None
