# src/tensors_gateway/session_data.py

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Optional


class OAuthState(BaseModel):
    """
    Represents the data carried through GitHub in the OAuth `state` parameter.
    Nothing here is stored server-side; the blob travels with the browser.
    """
    model_config = ConfigDict(populate_by_name=True)

    return_url: str = Field(alias="returnUrl")
    nonce: str = Field(min_length=1)
    # Unix milliseconds. Older blobs used "ts".
    issued_at: int = Field(
        alias="issuedAt",
        validation_alias=AliasChoices("issuedAt", "ts"),
    )


class GitHubTokenResponse(BaseModel):
    """The subset of https://github.com/login/oauth/access_token the gateway reads."""
    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class GitHubUser(BaseModel):
    """The subset of https://api.github.com/user the gateway reads."""
    model_config = ConfigDict(extra="ignore")

    login: Optional[str] = None


class VerifyResponse(BaseModel):
    valid: bool
    username: Optional[str] = None
