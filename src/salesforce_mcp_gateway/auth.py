import logging
import secrets
from typing import Iterable, Optional

from starlette.datastructures import Headers, QueryParams
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from .errors import GatewayAuthError, error_body

# Configure logging
logger = logging.getLogger(__name__)

API_KEY_QUERY_PARAM = "api_key"


def extract_presented_secret(scope: Scope) -> Optional[str]:
    """Return the secret from ``Authorization: Bearer ...`` or the ``api_key`` query parameter."""
    authorization = Headers(scope=scope).get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()

    query_string = scope.get("query_string", b"").decode("latin-1")
    return QueryParams(query_string).get(API_KEY_QUERY_PARAM) or None


class SharedSecretMiddleware:
    """Reject requests that do not present the configured shared secret.

    Pure ASGI so streaming responses pass through untouched. With no secret
    configured every request is let through.
    """

    def __init__(self, app: ASGIApp, secret: Optional[str] = None, exempt_paths: Iterable[str] = ("/",)):
        self.app = app
        self.secret = secret
        self.exempt_paths = frozenset(exempt_paths)

    def is_authorized(self, scope: Scope) -> bool:
        presented = extract_presented_secret(scope)
        if presented is None:
            return False
        return secrets.compare_digest(presented.encode("utf-8"), self.secret.encode("utf-8"))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.secret or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        if not self.is_authorized(scope):
            logger.warning(f"Rejected unauthenticated {scope.get('method')} {scope.get('path')}")
            error = GatewayAuthError("Unauthorized: missing or invalid API key")
            response = JSONResponse(
                error_body(error),
                status_code=error.status_code,
                headers={"WWW-Authenticate": "Bearer"},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
