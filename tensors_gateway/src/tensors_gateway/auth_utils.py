# src/tensors_gateway/auth_utils.py

import typing
from urllib.parse import urlencode

import httpx
from fastapi import status
from loguru import logger
from pydantic import SecretStr, ValidationError

from .errors import ProtocolError, UpstreamError
from .session_data import GitHubTokenResponse, GitHubUser

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_SCOPE = "read:user"
USER_AGENT = "tensors-gateway"


class GitHubOAuthClient:
    """
    The two network legs of the GitHub authorization-code flow.
    The caller owns `http_client` and closes it on shutdown.
    """

    def __init__(self, client_id: str, client_secret: SecretStr, http_client: httpx.AsyncClient):
        self.client_id = client_id
        self._client_secret = client_secret
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def build_auth_url(self, state: str, redirect_uri: str, scope: str = GITHUB_SCOPE) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    async def get_token_from_code(self, code: str, redirect_uri: typing.Optional[str] = None) -> GitHubTokenResponse:
        """
        Exchanges the authorization code for an access token.
        GitHub reports bad or reused codes with HTTP 200 and an `error` field,
        which is returned to the caller untouched.
        """
        form = {
            "client_id": self.client_id,
            "client_secret": self._client_secret.get_secret_value(),
            "code": code,
        }
        if redirect_uri:
            form["redirect_uri"] = redirect_uri

        response = await self._request(
            "POST",
            GITHUB_TOKEN_URL,
            data=form,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        )
        return self._parse(response, GitHubTokenResponse, "token")

    async def get_user(self, access_token: str) -> GitHubUser:
        response = await self._request(
            "GET",
            GITHUB_USER_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": USER_AGENT,
            },
        )
        return self._parse(response, GitHubUser, "user")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"OAUTH: Request error calling GitHub {method} {url}: {type(e).__name__}")
            raise UpstreamError("Could not reach GitHub")

        if not response.is_success:
            logger.warning(f"OAUTH: GitHub {method} {url} answered {response.status_code}")
            logger.debug(f"OAUTH: GitHub error body: {response.text[:500]}")
            raise UpstreamError(f"GitHub request failed ({response.status_code})")
        return response

    @staticmethod
    def _parse(response: httpx.Response, model, what: str):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning(f"OAUTH: Unexpected GitHub {what} response shape (status {response.status_code})")
            raise ProtocolError(f"Unexpected response from GitHub ({what})", status_code=status.HTTP_502_BAD_GATEWAY)
