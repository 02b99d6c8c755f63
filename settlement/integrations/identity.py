"""
Identity collaborators.

- IdentityClient resolves a bearer token to a user id through the
  identity provider's user endpoint.
- DatabaseRoleChecker answers has_role() from the user_roles table.
"""
from typing import Iterable, Optional

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings, get_settings
from settlement.core.errors import Unauthorized
from settlement.database.models import UserRole

logger = structlog.get_logger(__name__)


class IdentityClient:
    """Resolves bearer tokens against `{identity_url}/auth/v1/user`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds)
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def authenticate(self, token: str) -> str:
        """
        Resolve a bearer token to a user id.

        Raises:
            Unauthorized: Missing, invalid or unverifiable token
        """
        if not token:
            raise Unauthorized("Authentication required")

        url = f"{self.settings.identity_url.rstrip('/')}/auth/v1/user"
        headers = {"Authorization": f"Bearer {token}"}
        if self.settings.identity_api_key:
            headers["apikey"] = self.settings.identity_api_key

        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.error("identity_transport_error", error=str(e))
            raise Unauthorized("Invalid authentication") from e

        if response.status_code != 200:
            logger.info("identity_rejected_token", status_code=response.status_code)
            raise Unauthorized("Invalid authentication")

        try:
            user_id = response.json().get("id")
        except (ValueError, AttributeError) as e:
            logger.error("identity_invalid_body", error=str(e))
            raise Unauthorized("Invalid authentication") from e

        if not user_id:
            raise Unauthorized("Invalid authentication")
        return str(user_id)


class DatabaseRoleChecker:
    """Role predicate backed by the user_roles table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def has_role(self, user_id: str, role: str) -> bool:
        return await self.has_any_role(user_id, (role,))

    async def has_any_role(self, user_id: str, roles: Iterable[str]) -> bool:
        async with self.session_factory() as db:
            found = await db.scalar(
                select(UserRole.id)
                .where(UserRole.user_id == user_id, UserRole.role.in_(list(roles)))
                .limit(1)
            )
        return found is not None
