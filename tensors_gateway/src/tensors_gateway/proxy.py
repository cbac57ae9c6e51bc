# src/tensors_gateway/proxy.py

import typing

import httpx
from fastapi import Request
from loguru import logger
from pydantic import SecretStr
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from .errors import UpstreamError

API_KEY_HEADER = "X-API-Key"

# Connection-level headers that describe the gateway<->upstream hop only.
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


class UpstreamProxy:
    """
    Forwards a request to the Tensors API with the server-held API key.

    Only Content-Type and the API key go upstream; the browser's cookies and
    Authorization header stay at the gateway. The upstream answer is streamed
    back as raw bytes with its status and headers.
    """

    def __init__(self, base_url: str, api_key: SecretStr, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = http_client

    def target_url(self, request: Request) -> str:
        """Upstream base + the path and query exactly as the client sent them."""
        raw_path = request.scope.get("raw_path")
        if raw_path:
            path = raw_path.split(b"?", 1)[0].decode("latin-1")
        else:
            path = request.url.path
        url = f"{self.base_url}{path}"
        query = request.scope.get("query_string", b"")
        if query:
            url = f"{url}?{query.decode('latin-1')}"
        return url

    def upstream_headers(self) -> typing.Dict[str, str]:
        return {
            "Content-Type": "application/json",
            API_KEY_HEADER: self._api_key.get_secret_value(),
        }

    async def forward(self, request: Request) -> StreamingResponse:
        url = self.target_url(request)
        body = await request.body() if request.method != "GET" else None

        upstream_request = self._http.build_request(
            request.method,
            url,
            headers=self.upstream_headers(),
            content=body,
        )
        try:
            upstream_response = await self._http.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            logger.warning(f"PROXY: Request error forwarding {request.method} {request.url.path}: {type(e).__name__}")
            raise UpstreamError("Upstream request failed")

        logger.debug(f"PROXY: {request.method} {request.url.path} -> {upstream_response.status_code}")
        if upstream_response.is_stream_consumed:
            # Transports that buffer the whole answer leave nothing to stream.
            body_iter = iter([upstream_response.content])
        else:
            body_iter = upstream_response.aiter_raw()
        response = StreamingResponse(
            body_iter,
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        # raw_headers keeps repeated headers such as Set-Cookie intact.
        response.raw_headers.extend(
            (name.lower(), value)
            for name, value in upstream_response.headers.raw
            if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        )
        return response
