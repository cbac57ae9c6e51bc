# src/tensors_gateway/cors.py

import typing
from urllib.parse import urlsplit

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = "Content-Type, X-API-Key, Authorization"


class CorsPolicy:
    """
    Decides which origin is echoed back in Access-Control-Allow-Origin.

    Credentials are sent cross-origin, so the header always names a single
    origin: the caller's own when it is trusted, the default one otherwise.
    """

    def __init__(
            self,
            default_origin: str,
            trusted_origins: typing.Iterable[str] = (),
            trusted_parent_domain: typing.Optional[str] = None,
            loopback_prefixes: typing.Iterable[str] = (),
    ):
        self.default_origin = default_origin
        self.trusted_origins = frozenset(o.rstrip("/") for o in trusted_origins)
        self.trusted_parent_domain = (trusted_parent_domain or "").strip(".").lower() or None
        self.loopback_prefixes = tuple(loopback_prefixes)

    def is_trusted_origin(self, origin: typing.Optional[str]) -> bool:
        if not origin:
            return False
        if origin in self.trusted_origins:
            return True
        for prefix in self.loopback_prefixes:
            # Only a port may follow the loopback prefix.
            port = origin[len(prefix):]
            if origin.startswith(prefix) and port.isascii() and port.isdigit():
                return True
        if self.trusted_parent_domain:
            parts = urlsplit(origin)
            host = (parts.hostname or "").lower()
            if parts.scheme == "https" and host.endswith("." + self.trusted_parent_domain):
                return True
        return False

    def is_allowed(self, url: typing.Optional[str]) -> bool:
        """True when `url` is absolute and its origin is trusted."""
        if not url:
            return False
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname or "\\" in url:
            return False
        if "@" in parts.netloc:
            return False
        try:
            port = parts.port
        except ValueError:
            return False

        host = parts.hostname
        if ":" in host:
            host = f"[{host}]"
        origin = f"{parts.scheme}://{host}"
        if port is not None:
            origin = f"{origin}:{port}"
        return self.is_trusted_origin(origin)

    def resolve(self, origin: typing.Optional[str]) -> typing.Dict[str, str]:
        allowed_origin = origin if self.is_trusted_origin(origin) else self.default_origin
        return {
            "Access-Control-Allow-Origin": allowed_origin,
            "Access-Control-Allow-Methods": ALLOW_METHODS,
            "Access-Control-Allow-Headers": ALLOW_HEADERS,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }


def merge_vary(existing: typing.Iterable[str], extra: str) -> str:
    """Joins Vary values, keeping upstream fields and adding `extra` once."""
    fields: typing.List[str] = []
    for value in list(existing) + [extra]:
        for field in value.split(","):
            field = field.strip()
            if field and field.lower() not in (f.lower() for f in fields):
                fields.append(field)
    return ", ".join(fields)


class CorsMiddleware(BaseHTTPMiddleware):
    """Answers every preflight and stamps the CORS headers on every response."""

    def __init__(self, app, policy: CorsPolicy):
        super().__init__(app)
        self.policy = policy

    async def dispatch(self, request, call_next):
        cors_headers = self.policy.resolve(request.headers.get("origin"))
        if request.method == "OPTIONS":
            return StarletteResponse(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers)

        response: StarletteResponse = await call_next(request)
        vary = merge_vary(response.headers.getlist("vary"), cors_headers.pop("Vary"))
        # Gateway values replace upstream headers of the same name.
        for name, value in cors_headers.items():
            response.headers[name] = value
        response.headers["Vary"] = vary
        return response
