# src/tensors_gateway/config.py

from pydantic import field_validator, AnyHttpUrl, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Union, Any
from pathlib import Path
from dotenv import load_dotenv
from loguru import logger

# .env is at the service root, two levels up from src/tensors_gateway/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

DEFAULT_SESSION_MAX_AGE = 86400 * 7  # 7 days
DEFAULT_STATE_MAX_AGE = 600  # 10 minutes


def load_env_file() -> None:
    if ENV_FILE_PATH.exists():
        load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
        logger.info(f"CONFIG: Loaded .env file from: {ENV_FILE_PATH}")
    else:
        logger.debug(f"CONFIG: No .env file at {ENV_FILE_PATH}. Relying on environment variables.")


def _split_comma_separated(v: Any, field_name: str) -> List[str]:
    if isinstance(v, str):
        if not v.strip():
            return []
        return [item.strip() for item in v.split(',') if item.strip()]
    if isinstance(v, (list, tuple, set, frozenset)):
        return [str(item).strip() for item in v if str(item).strip()]
    if v is None:
        return []
    raise TypeError(f'{field_name}: Expected a comma-separated string or a list.')


class Settings(BaseSettings):
    # === Upstream Tensors API ===
    TENSORS_API_KEY: SecretStr
    UPSTREAM_URL: AnyHttpUrl = "https://tensors-api.saiden.dev"
    UPSTREAM_TIMEOUT_SECONDS: float = 60.0

    # === GitHub OAuth App ===
    # An empty client id is tolerated here; /auth/github reports it as a configuration error.
    GITHUB_CLIENT_ID: str = ""
    GITHUB_CLIENT_SECRET: SecretStr = SecretStr("")
    GITHUB_REDIRECT_URI: Optional[AnyHttpUrl] = None
    GITHUB_TIMEOUT_SECONDS: float = 10.0
    # Pydantic sees the raw env value as a string first, the validator below turns it into a list.
    GITHUB_ALLOWED_USERS: Union[str, List[str]] = []

    # === Session Management ===
    SESSION_SECRET: SecretStr
    SESSION_COOKIE_NAME: str = "tensors_session"
    SESSION_MAX_AGE: int = DEFAULT_SESSION_MAX_AGE
    SESSION_SIGNATURE_LENGTH: Optional[int] = None
    COOKIE_DOMAIN: Optional[str] = ".saiden.dev"
    DEFAULT_RETURN_URL: str = "https://tensors.saiden.dev"
    VERIFY_ACCEPTS_TOKEN_PARAM: bool = True

    # === OAuth state ===
    OAUTH_STATE_MAX_AGE: int = DEFAULT_STATE_MAX_AGE
    OAUTH_STATE_COOKIE: bool = False

    # === CORS ===
    CORS_DEFAULT_ORIGIN: str = "https://tensors.saiden.dev"
    CORS_TRUSTED_ORIGINS: Union[str, List[str]] = ["https://saiden.dev", "https://tensors.saiden.dev"]
    CORS_TRUSTED_PARENT_DOMAIN: Optional[str] = "saiden.dev"
    CORS_LOOPBACK_PREFIXES: Union[str, List[str]] = ["http://localhost:", "http://127.0.0.1:"]

    # === Server ===
    GATEWAY_HOST: str = "0.0.0.0"
    GATEWAY_PORT: int = 8787
    GATEWAY_RELOAD: bool = False
    LOG_LEVEL: str = "INFO"

    @property
    def UPSTREAM_BASE(self) -> str:
        return str(self.UPSTREAM_URL).rstrip("/")

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("GITHUB_ALLOWED_USERS", mode='before')
    @classmethod
    def parse_allowed_users(cls, v: Any) -> List[str]:
        return [user.lower() for user in _split_comma_separated(v, "GITHUB_ALLOWED_USERS")]

    @field_validator("CORS_TRUSTED_ORIGINS", "CORS_LOOPBACK_PREFIXES", mode='before')
    @classmethod
    def parse_origin_lists(cls, v: Any, info) -> List[str]:
        return _split_comma_separated(v, info.field_name)

    @field_validator("SESSION_SIGNATURE_LENGTH")
    @classmethod
    def check_signature_length(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 32 <= v <= 64:
            raise ValueError("SESSION_SIGNATURE_LENGTH must be between 32 and 64 hex characters.")
        return v

    @field_validator("SESSION_MAX_AGE", "OAUTH_STATE_MAX_AGE")
    @classmethod
    def check_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be a positive number of seconds.")
        return v

    @model_validator(mode='after')
    def check_secrets(self) -> 'Settings':
        if not self.SESSION_SECRET.get_secret_value():
            raise ValueError("SESSION_SECRET must not be empty.")
        for name in ("GITHUB_ALLOWED_USERS", "CORS_TRUSTED_ORIGINS", "CORS_LOOPBACK_PREFIXES"):
            if not isinstance(getattr(self, name), list):
                raise ValueError(f"{name} ended up as {type(getattr(self, name))}, expected list.")
        return self


def get_settings() -> Settings:
    """Builds the process-wide settings once, at application start-up."""
    load_env_file()
    try:
        settings = Settings()
    except Exception as e:
        logger.error(f"CONFIG: Error instantiating Settings: {e}")
        raise
    return settings
