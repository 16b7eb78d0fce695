import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_API_VERSION = "59.0"
# Salesforce CLI's connected app, usable without a client secret
DEFAULT_CLIENT_ID = "PlatformCLI"
DEFAULT_CALLBACK_URL = "https://login.salesforce.com/services/oauth2/success"
DEFAULT_PORT = 3000


class CredentialFlow(Enum):
    REFRESH_TOKEN = "refresh_token"
    ACCESS_TOKEN = "access_token"
    PASSWORD = "password"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    """Gateway configuration, read once at startup."""

    instance_url: Optional[str] = None
    login_url: str = DEFAULT_LOGIN_URL
    api_version: str = DEFAULT_API_VERSION

    refresh_token: Optional[str] = None
    client_id: str = DEFAULT_CLIENT_ID
    client_secret: Optional[str] = None
    callback_url: str = DEFAULT_CALLBACK_URL

    access_token: Optional[str] = None

    username: str = ""
    password: str = ""
    security_token: str = ""
    domain: str = "login"

    api_key: Optional[str] = None
    port: int = DEFAULT_PORT

    @property
    def credential_flow(self) -> CredentialFlow:
        """Select the upstream credential strategy by strict precedence."""
        if self.refresh_token:
            return CredentialFlow.REFRESH_TOKEN
        if self.access_token:
            return CredentialFlow.ACCESS_TOKEN
        return CredentialFlow.PASSWORD

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the process environment (and an optional .env file)."""
        load_dotenv()
        port = _env("PORT") or _env("SALESFORCE_MCP_SERVER_PORT") or str(DEFAULT_PORT)
        settings = cls(
            instance_url=_env("SALESFORCE_INSTANCE_URL"),
            login_url=_env("SALESFORCE_LOGIN_URL", DEFAULT_LOGIN_URL),
            api_version=_env("SALESFORCE_API_VERSION", DEFAULT_API_VERSION),
            refresh_token=_env("SALESFORCE_REFRESH_TOKEN"),
            client_id=_env("SALESFORCE_CLIENT_ID", DEFAULT_CLIENT_ID),
            client_secret=_env("SALESFORCE_CLIENT_SECRET"),
            callback_url=_env("SALESFORCE_CALLBACK_URL", DEFAULT_CALLBACK_URL),
            access_token=_env("SALESFORCE_ACCESS_TOKEN"),
            username=_env("SALESFORCE_USERNAME", ""),
            password=_env("SALESFORCE_PASSWORD", ""),
            security_token=_env("SALESFORCE_SECURITY_TOKEN", ""),
            domain=_env("SALESFORCE_DOMAIN", "login"),
            api_key=_env("MCP_API_KEY"),
            port=int(port),
        )
        logger.debug(
            f"Loaded settings: instance_url={settings.instance_url}, "
            f"credential_flow={settings.credential_flow.value}, auth_enabled={settings.auth_enabled}"
        )
        return settings
