"""Upstream Salesforce connection, established lazily and shared by every session.

Exactly one of three credential flows is used, chosen by ``Settings.credential_flow``:

* refresh token: exchange it at the OAuth token endpoint, then validate the
  new access token with an identity round-trip
* static access token: build the connection directly, no round-trip
* username/password: SOAP login with the security token appended to the password

The first caller of :meth:`SalesforceConnectionProvider.get_connection` starts the
authentication task; concurrent callers await that same task instead of
authenticating a second time.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import anyio
import requests
from simple_salesforce import Salesforce, SalesforceLogin
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from .config import CredentialFlow, Settings
from .errors import UpstreamAuthError

# Configure logging
logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30

Connector = Callable[[Settings], Awaitable[Salesforce]]


def _token_url(settings: Settings) -> str:
    return f"{settings.login_url.rstrip('/')}/services/oauth2/token"


def _refresh_access_token(settings: Settings) -> Dict[str, Any]:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": settings.refresh_token,
        "client_id": settings.client_id,
        "redirect_uri": settings.callback_url,
    }
    # Only sent when configured; PlatformCLI does not need one
    if settings.client_secret:
        data["client_secret"] = settings.client_secret

    try:
        resp = requests.post(
            _token_url(settings),
            data=data,
            headers={"Accept": "application/json"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as e:
        raise UpstreamAuthError(f"Token endpoint unreachable: {e}") from e

    if resp.status_code != 200:
        try:
            payload = resp.json()
            detail = payload.get("error_description") or payload.get("error") or resp.text
        except ValueError:
            detail = resp.text
        raise UpstreamAuthError(f"Refresh token exchange failed ({resp.status_code}): {detail}")

    token = resp.json()
    if not token.get("access_token"):
        raise UpstreamAuthError("Refresh token exchange returned no access_token")
    return token


def _fetch_identity(identity_url: str, access_token: str) -> Dict[str, Any]:
    try:
        resp = requests.get(
            identity_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=HTTP_TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise UpstreamAuthError(f"Identity check failed: {e}") from e
    return resp.json()


def connect_with_refresh_token(settings: Settings) -> Salesforce:
    token = _refresh_access_token(settings)
    instance_url = token.get("instance_url") or settings.instance_url
    if not instance_url:
        raise UpstreamAuthError("No instance URL returned by the token endpoint or configured")

    sf = Salesforce(
        instance_url=instance_url,
        session_id=token["access_token"],
        version=settings.api_version,
    )

    identity_url = token.get("id") or f"{settings.login_url.rstrip('/')}/services/oauth2/userinfo"
    identity = _fetch_identity(identity_url, token["access_token"])
    logger.info(f"Connected to Salesforce via refresh token as {identity.get('username', 'unknown user')}")
    return sf


def connect_with_access_token(settings: Settings) -> Salesforce:
    if not settings.instance_url:
        raise UpstreamAuthError("SALESFORCE_INSTANCE_URL is required with SALESFORCE_ACCESS_TOKEN")

    sf = Salesforce(
        instance_url=settings.instance_url,
        session_id=settings.access_token,
        version=settings.api_version,
    )
    logger.info("Connected to Salesforce via access token")
    return sf


def connect_with_password(settings: Settings) -> Salesforce:
    if not settings.username or not settings.password:
        raise UpstreamAuthError(
            "No Salesforce credentials configured: set SALESFORCE_REFRESH_TOKEN, "
            "SALESFORCE_ACCESS_TOKEN, or SALESFORCE_USERNAME and SALESFORCE_PASSWORD"
        )

    try:
        session_id, sf_instance = SalesforceLogin(
            username=settings.username,
            password=settings.password + settings.security_token,
            sf_version=settings.api_version,
            domain=settings.domain,
        )
    except SalesforceAuthenticationFailed as e:
        raise UpstreamAuthError(f"Salesforce login failed: {e}") from e
    except requests.RequestException as e:
        raise UpstreamAuthError(f"Salesforce login endpoint unreachable: {e}") from e

    sf = Salesforce(
        instance_url=settings.instance_url or f"https://{sf_instance}",
        session_id=session_id,
        version=settings.api_version,
    )
    logger.info("Connected to Salesforce via username/password")
    return sf


_FLOWS: Dict[CredentialFlow, Callable[[Settings], Salesforce]] = {
    CredentialFlow.REFRESH_TOKEN: connect_with_refresh_token,
    CredentialFlow.ACCESS_TOKEN: connect_with_access_token,
    CredentialFlow.PASSWORD: connect_with_password,
}


async def connect_to_salesforce(settings: Settings) -> Salesforce:
    """Authenticate once using the configured flow. Flows are never chained."""
    flow = settings.credential_flow
    logger.info(f"Connecting to Salesforce using the {flow.value} flow")
    return await anyio.to_thread.run_sync(_FLOWS[flow], settings)


class SalesforceConnectionProvider:
    """Process-wide holder of the single upstream connection."""

    def __init__(self, settings: Settings, connector: Optional[Connector] = None):
        self.settings = settings
        self._connector = connector or connect_to_salesforce
        self._connection: Optional[Salesforce] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def get_connection(self) -> Salesforce:
        if self._connection is not None:
            return self._connection

        # Set before the first await so concurrent callers share this attempt
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._connector(self.settings))
        pending = self._pending

        try:
            connection = await asyncio.shield(pending)
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise

        self._connection = connection
        return connection
