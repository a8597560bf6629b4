"""
Customer identity resolution.

Identity is owned by Supabase Auth; this module only turns a bearer token into
a customer id before a request may touch slot logic.
"""

import asyncio
from typing import Optional

from aiohttp.web import Request
from supabase import Client as SupabaseClientType
from supabase import create_client

from config import settings
from utils.exceptions import AuthenticationError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=settings.log_level, log_file="api.log"
)


def bearer_token(request: Request) -> Optional[str]:
    """
    Extract the access token from the Authorization header.

    Browsers cannot set headers on WebSocket upgrades, so the access_token
    query parameter is accepted as well.
    """
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.query.get("access_token") or None


class SupabaseIdentityProvider:
    """Resolves Supabase Auth JWTs to customer ids."""

    def __init__(self, client: Optional[SupabaseClientType] = None):
        self._client = client

    @property
    def client(self) -> SupabaseClientType:
        if self._client is None:
            self._client = create_client(settings.supabase_url, settings.supabase_key)
        return self._client

    async def resolve(self, token: Optional[str]) -> str:
        """
        Return the customer id behind a token.

        Raises:
            AuthenticationError: If the token is missing, invalid or expired
        """
        if not token:
            raise AuthenticationError("Missing Authorization header")

        try:
            response = await asyncio.to_thread(self.client.auth.get_user, token)
        except Exception as e:
            logger.info(f"Token rejected by Supabase Auth: {e}")
            raise AuthenticationError("Not authenticated") from e

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise AuthenticationError("Not authenticated")
        return str(user.id)


async def authenticate(request: Request) -> str:
    """Customer id for the request, using the identity provider mounted on the app."""
    return await request.app["identity"].resolve(bearer_token(request))
