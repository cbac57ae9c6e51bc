# src/tensors_gateway/main.py

import sys
import typing
from contextlib import asynccontextmanager
from dataclasses import dataclass
from http.cookiejar import CookieJar, DefaultCookiePolicy
from pathlib import Path

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from loguru import logger

from .auth_utils import GitHubOAuthClient
from .config import Settings, get_settings
from .cors import CorsMiddleware, CorsPolicy
from .errors import GatewayError, TokenError
from .oauth_flow import CALLBACK_PATH, FlowRejected, OAuthFlow
from .oauth_state import StateCodec
from .proxy import UpstreamProxy
from .session_data import VerifyResponse
from .session_tokens import (
    Clock,
    SessionCodec,
    clear_session_cookie,
    read_session_cookie,
    set_session_cookie,
)
from .signing import Signer

NONCE_COOKIE_NAME = "tensors_oauth_nonce"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]

templates = Jinja2Templates(directory=Path(__file__).resolve().parent / "templates")


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}",
    )


def _no_cookie_jar() -> CookieJar:
    # The outbound clients are shared by every user; they must never keep cookies.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


@dataclass
class Gateway:
    """Everything a request handler needs, built once from Settings."""
    settings: Settings
    sessions: SessionCodec
    states: StateCodec
    cors: CorsPolicy
    flow: OAuthFlow
    upstream: UpstreamProxy
    http_clients: typing.Tuple[httpx.AsyncClient, ...]

    async def aclose(self) -> None:
        for client in self.http_clients:
            await client.aclose()


def build_gateway(
        settings: Settings,
        transport: typing.Optional[httpx.AsyncBaseTransport] = None,
        clock: typing.Optional[Clock] = None,
) -> Gateway:
    clock_kwargs = {"clock": clock} if clock is not None else {}

    signer = Signer(
        settings.SESSION_SECRET.get_secret_value().encode("utf-8"),
        length=settings.SESSION_SIGNATURE_LENGTH,
    )
    sessions = SessionCodec(signer, default_ttl=settings.SESSION_MAX_AGE, **clock_kwargs)
    states = StateCodec(settings.OAUTH_STATE_MAX_AGE, **clock_kwargs)
    cors = CorsPolicy(
        default_origin=settings.CORS_DEFAULT_ORIGIN,
        trusted_origins=settings.CORS_TRUSTED_ORIGINS,
        trusted_parent_domain=settings.CORS_TRUSTED_PARENT_DOMAIN,
        loopback_prefixes=settings.CORS_LOOPBACK_PREFIXES,
    )

    github_http = httpx.AsyncClient(
        timeout=settings.GITHUB_TIMEOUT_SECONDS, transport=transport, cookies=_no_cookie_jar()
    )
    upstream_http = httpx.AsyncClient(
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS, transport=transport, cookies=_no_cookie_jar()
    )

    github = GitHubOAuthClient(
        client_id=settings.GITHUB_CLIENT_ID,
        client_secret=settings.GITHUB_CLIENT_SECRET,
        http_client=github_http,
    )
    flow = OAuthFlow(
        github=github,
        states=states,
        sessions=sessions,
        cors=cors,
        default_return_url=settings.DEFAULT_RETURN_URL,
        allowed_users=settings.GITHUB_ALLOWED_USERS,
        session_ttl=settings.SESSION_MAX_AGE,
    )
    upstream = UpstreamProxy(settings.UPSTREAM_BASE, settings.TENSORS_API_KEY, upstream_http)
    return Gateway(
        settings=settings,
        sessions=sessions,
        states=states,
        cors=cors,
        flow=flow,
        upstream=upstream,
        http_clients=(github_http, upstream_http),
    )


def log_startup(settings: Settings) -> None:
    logger.info("--- Tensors Gateway Starting Up ---")
    logger.info(f"Upstream URL: {settings.UPSTREAM_BASE}")
    logger.info(f"GitHub Client ID: {settings.GITHUB_CLIENT_ID or 'NOT SET (login disabled)'}")
    logger.info(f"GitHub Redirect URI: {settings.GITHUB_REDIRECT_URI or 'derived from request'}")
    logger.info(f"Allowed users: {', '.join(settings.GITHUB_ALLOWED_USERS) or 'any GitHub user'}")
    logger.info(f"Cookie domain: {settings.COOKIE_DOMAIN}, session max age: {settings.SESSION_MAX_AGE}s")
    logger.info(f"Upstream API key is set: {'Yes' if settings.TENSORS_API_KEY.get_secret_value() else 'NO'}")
    if settings.SESSION_SIGNATURE_LENGTH:
        logger.warning(f"Session signatures truncated to {settings.SESSION_SIGNATURE_LENGTH} hex characters.")
    logger.info("-------------------------------------------")


def create_app(
        settings: typing.Optional[Settings] = None,
        transport: typing.Optional[httpx.AsyncBaseTransport] = None,
        clock: typing.Optional[Clock] = None,
) -> FastAPI:
    """
    Builds the gateway application.

    `transport` replaces the network for both GitHub and the upstream API and
    `clock` replaces time.time for token and state expiry; both exist for tests.
    """
    if settings is None:
        settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    gateway = build_gateway(settings, transport=transport, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_startup(settings)
        yield
        await gateway.aclose()
        logger.info("Tensors Gateway shut down")

    app = FastAPI(
        title="Tensors Gateway",
        description="GitHub login, signed session cookies and an authenticated proxy to the Tensors API.",
        version="0.1.0",
        lifespan=lifespan,
        # Documentation paths belong to the upstream API.
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.gateway = gateway
    app.add_middleware(CorsMiddleware, policy=gateway.cors)

    # --- Error handlers ---
    @app.exception_handler(TokenError)
    async def token_error_handler(request: Request, exc: TokenError):
        return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    # --- Helpers ---
    def callback_url(request: Request) -> str:
        if settings.GITHUB_REDIRECT_URI:
            return str(settings.GITHUB_REDIRECT_URI)
        return str(request.url.replace(path=CALLBACK_PATH, query=""))

    def login_redirect(request: Request, outcome: FlowRejected) -> RedirectResponse:
        base = str(request.base_url).rstrip("/")
        return RedirectResponse(url=f"{base}{outcome.login_location()}", status_code=status.HTTP_303_SEE_OTHER)

    def get_authenticated_user(request: Request) -> str:
        """Username from the session cookie; raises TokenError when there is none."""
        token = read_session_cookie(request, settings.SESSION_COOKIE_NAME)
        return gateway.sessions.parse(token)

    # --- Authentication Routes ---
    @app.get("/auth/login", response_class=HTMLResponse)
    async def login(
            request: Request,
            return_url: typing.Optional[str] = None,
            error: typing.Optional[str] = None,
    ):
        page = gateway.flow.start(return_url=return_url, error=error)
        response = templates.TemplateResponse(
            request,
            "login.html",
            {"auth_url": page.auth_url, "error": page.error, "return_url": page.return_url},
        )
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.get("/auth/github")
    async def github_login(request: Request, state: typing.Optional[str] = None):
        outcome = gateway.flow.authorize(state=state, redirect_uri=callback_url(request))
        if isinstance(outcome, FlowRejected):
            return login_redirect(request, outcome)

        response = RedirectResponse(url=outcome.location, status_code=status.HTTP_303_SEE_OTHER)
        if settings.OAUTH_STATE_COOKIE and outcome.nonce:
            response.set_cookie(
                key=NONCE_COOKIE_NAME,
                value=outcome.nonce,
                max_age=settings.OAUTH_STATE_MAX_AGE,
                path="/auth",
                httponly=True,
                secure=True,
                samesite="lax",
            )
        return response

    @app.get(CALLBACK_PATH, name="auth_callback")
    async def auth_callback(
            request: Request,
            code: typing.Optional[str] = None,
            state: typing.Optional[str] = None,
            error: typing.Optional[str] = None,
            error_description: typing.Optional[str] = None,
    ):
        outcome = await gateway.flow.complete(
            code=code,
            state=state,
            redirect_uri=callback_url(request),
            provider_error=error,
            provider_error_description=error_description,
            expected_nonce=request.cookies.get(NONCE_COOKIE_NAME),
            require_nonce=settings.OAUTH_STATE_COOKIE,
        )
        if isinstance(outcome, FlowRejected):
            response = login_redirect(request, outcome)
        else:
            response = RedirectResponse(url=outcome.return_url, status_code=status.HTTP_303_SEE_OTHER)
            set_session_cookie(
                response,
                outcome.token,
                name=settings.SESSION_COOKIE_NAME,
                max_age=settings.SESSION_MAX_AGE,
                domain=settings.COOKIE_DOMAIN,
            )
        if settings.OAUTH_STATE_COOKIE:
            response.delete_cookie(NONCE_COOKIE_NAME, path="/auth", secure=True, httponly=True, samesite="lax")
        return response

    @app.get("/auth/verify")
    async def verify(request: Request):
        token = None
        if settings.VERIFY_ACCEPTS_TOKEN_PARAM:
            token = request.query_params.get("token")
        if not token:
            token = read_session_cookie(request, settings.SESSION_COOKIE_NAME)

        username = gateway.sessions.verify(token)
        if username:
            return JSONResponse(VerifyResponse(valid=True, username=username).model_dump())
        return JSONResponse(
            VerifyResponse(valid=False).model_dump(exclude_none=True),
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    @app.get("/auth/logout")
    async def logout(request: Request, return_url: typing.Optional[str] = None):
        target = gateway.flow.safe_return_url(return_url)
        response = RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)
        clear_session_cookie(response, name=settings.SESSION_COOKIE_NAME, domain=settings.COOKIE_DOMAIN)
        logger.info(f"GATEWAY: /auth/logout - Session cookie cleared. Redirecting to {target}")
        return response

    # --- Everything else goes to the Tensors API ---
    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str):
        if request.url.path == "/api" or request.url.path.startswith("/api/"):
            username = get_authenticated_user(request)
            logger.debug(f"GATEWAY: {request.method} {request.url.path} for '{username}'")
        return await gateway.upstream.forward(request)

    return app


def run():
    """Run the gateway with uvicorn."""
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "tensors_gateway.main:create_app",
        factory=True,
        host=settings.GATEWAY_HOST,
        port=settings.GATEWAY_PORT,
        reload=settings.GATEWAY_RELOAD,
    )


if __name__ == "__main__":
    run()
