"""
Tests for bearer-token resolution and role checks.
"""
import httpx
import pytest

from settlement.core.errors import Unauthorized
from settlement.integrations.identity import DatabaseRoleChecker, IdentityClient


def _identity(test_settings, handler) -> IdentityClient:
    return IdentityClient(
        test_settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


class TestIdentityClient:
    """Test suite for token resolution."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_token(self, test_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "https://identity.test/auth/v1/user"
            assert request.headers["Authorization"] == "Bearer good-token"
            assert request.headers["apikey"] == "anon-key"
            return httpx.Response(200, json={"id": "user-1", "email": "user@example.com"})

        assert await _identity(test_settings, handler).authenticate("good-token") == "user-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(401, json={"msg": "invalid JWT"}),
            httpx.Response(200, json={"email": "no-id@example.com"}),
            httpx.Response(200, text="oops"),
        ],
    )
    async def test_rejected_tokens(self, test_settings, response) -> None:
        with pytest.raises(Unauthorized):
            await _identity(test_settings, lambda request: response).authenticate("bad-token")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_failure_is_unauthorized(self, test_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(Unauthorized):
            await _identity(test_settings, handler).authenticate("token")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_token(self, test_settings) -> None:
        with pytest.raises(Unauthorized):
            await _identity(test_settings, lambda request: httpx.Response(200)).authenticate("")


class TestDatabaseRoleChecker:
    """Test suite for has_role()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_roles(self, session_factory, seed_profile) -> None:
        await seed_profile("admin-1", roles=("admin",))
        await seed_profile("mod-1", roles=("moderator",))
        checker = DatabaseRoleChecker(session_factory)

        assert await checker.has_role("admin-1", "admin")
        assert not await checker.has_role("mod-1", "admin")
        assert await checker.has_any_role("mod-1", ("admin", "moderator"))
        assert not await checker.has_any_role("nobody", ("admin", "moderator"))
