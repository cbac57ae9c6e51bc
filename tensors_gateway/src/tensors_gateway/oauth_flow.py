# src/tensors_gateway/oauth_flow.py
"""
GitHub login as an explicit state machine.

    start -> redirected_to_provider -> callback_received -> session_established
                      |                        |
                      +--------> rejected <----+

Each step returns one outcome object; main.py turns outcomes into responses.
Nothing here touches Request or Response objects.
"""

import enum
import typing
from dataclasses import dataclass
from urllib.parse import urlencode

from loguru import logger

from .auth_utils import GitHubOAuthClient
from .cors import CorsPolicy
from .errors import (
    AuthorizationError,
    ConfigurationError,
    GatewayError,
    ProtocolError,
)
from .oauth_state import StateCodec
from .session_tokens import SessionCodec

LOGIN_PATH = "/auth/login"
PROVIDER_PATH = "/auth/github"
CALLBACK_PATH = "/auth/callback"


class FlowState(str, enum.Enum):
    START = "start"
    REDIRECTED_TO_PROVIDER = "redirected_to_provider"
    CALLBACK_RECEIVED = "callback_received"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LoginPage:
    auth_url: str
    return_url: str
    error: typing.Optional[str] = None
    state: FlowState = FlowState.START


@dataclass(frozen=True)
class ProviderRedirect:
    location: str
    nonce: typing.Optional[str] = None
    state: FlowState = FlowState.REDIRECTED_TO_PROVIDER


@dataclass(frozen=True)
class SessionEstablished:
    username: str
    token: str
    return_url: str
    state: FlowState = FlowState.SESSION_ESTABLISHED


@dataclass(frozen=True)
class FlowRejected:
    error: GatewayError
    return_url: str
    state: FlowState = FlowState.REJECTED

    @property
    def message(self) -> str:
        return self.error.message

    def login_location(self) -> str:
        """Path and query of the login page that shows this rejection."""
        query = urlencode({"error": self.message, "return_url": self.return_url})
        return f"{LOGIN_PATH}?{query}"


class OAuthFlow:
    def __init__(
            self,
            github: GitHubOAuthClient,
            states: StateCodec,
            sessions: SessionCodec,
            cors: CorsPolicy,
            default_return_url: str,
            allowed_users: typing.Iterable[str] = (),
            session_ttl: typing.Optional[int] = None,
    ):
        self.github = github
        self.states = states
        self.sessions = sessions
        self.cors = cors
        self.default_return_url = default_return_url
        self.allowed_users = frozenset(u.lower() for u in allowed_users)
        self.session_ttl = session_ttl

    def safe_return_url(self, return_url: typing.Optional[str]) -> str:
        if return_url and self.cors.is_allowed(return_url):
            return return_url
        if return_url:
            logger.info(f"OAUTH: Ignoring untrusted return URL: {return_url}")
        return self.default_return_url

    def is_user_allowed(self, username: str) -> bool:
        return not self.allowed_users or username.lower() in self.allowed_users

    # --- start ---

    def start(self, return_url: typing.Optional[str] = None, error: typing.Optional[str] = None) -> LoginPage:
        target = self.safe_return_url(return_url)
        state = self.states.encode(target)
        auth_url = f"{PROVIDER_PATH}?{urlencode({'state': state})}"
        return LoginPage(auth_url=auth_url, return_url=target, error=error or None)

    # --- redirected_to_provider ---

    def authorize(
            self, state: typing.Optional[str], redirect_uri: str
    ) -> typing.Union[ProviderRedirect, FlowRejected]:
        if not state:
            state = self.states.encode(self.default_return_url)
        # An unreadable state is passed through as-is; the callback rejects it.
        decoded = self.states.decode(state)

        if not self.github.configured:
            logger.error("OAUTH: /auth/github hit but GITHUB_CLIENT_ID is not configured")
            return FlowRejected(
                error=ConfigurationError("GitHub OAuth not configured"),
                return_url=self.safe_return_url(decoded.return_url if decoded else None),
            )

        location = self.github.build_auth_url(state=state, redirect_uri=redirect_uri)
        logger.info(f"OAUTH: Redirecting to GitHub. Redirect URI: {redirect_uri}")
        return ProviderRedirect(location=location, nonce=decoded.nonce if decoded else None)

    # --- callback_received ---

    async def complete(
            self,
            code: typing.Optional[str],
            state: typing.Optional[str],
            redirect_uri: typing.Optional[str] = None,
            provider_error: typing.Optional[str] = None,
            provider_error_description: typing.Optional[str] = None,
            expected_nonce: typing.Optional[str] = None,
            require_nonce: bool = False,
    ) -> typing.Union[SessionEstablished, FlowRejected]:
        decoded = self.states.decode(state) if state else None
        return_url = self.safe_return_url(decoded.return_url if decoded else None)

        try:
            username = await self._exchange(
                code=code,
                state=state,
                redirect_uri=redirect_uri,
                provider_error=provider_error,
                provider_error_description=provider_error_description,
                expected_nonce=expected_nonce,
                require_nonce=require_nonce,
            )
        except GatewayError as e:
            logger.info(f"OAUTH: Login rejected ({type(e).__name__}): {e.message}")
            return FlowRejected(error=e, return_url=return_url)

        # --- session_established ---
        token = self.sessions.issue(username, self.session_ttl)
        logger.info(f"OAUTH: Session established for '{username}'. Redirecting to {return_url}")
        return SessionEstablished(username=username, token=token, return_url=return_url)

    async def _exchange(
            self,
            code: typing.Optional[str],
            state: typing.Optional[str],
            redirect_uri: typing.Optional[str],
            provider_error: typing.Optional[str],
            provider_error_description: typing.Optional[str],
            expected_nonce: typing.Optional[str],
            require_nonce: bool,
    ) -> str:
        if provider_error:
            raise ProtocolError(provider_error_description or provider_error)
        if not code:
            raise ProtocolError("No authorization code")

        parsed_state = self.states.parse(state)
        if require_nonce and (not expected_nonce or expected_nonce != parsed_state.nonce):
            raise ProtocolError("Login state does not match this browser, please sign in again")

        if not self.github.configured:
            raise ConfigurationError("GitHub OAuth not configured")

        token_data = await self.github.get_token_from_code(code, redirect_uri)
        if token_data.error:
            raise ProtocolError(token_data.error_description or "OAuth error")
        if not token_data.access_token:
            raise ProtocolError("OAuth error")

        user = await self.github.get_user(token_data.access_token)
        if not user.login:
            raise ProtocolError("Could not get GitHub username")

        if ":" in user.login:
            raise ProtocolError("Could not get GitHub username")

        if not self.is_user_allowed(user.login):
            raise AuthorizationError("User not authorized")
        return user.login
