"""
Unit Tests for Authentication

Tests:
- Token issue/verify with the single claims schema
- Expired, tampered and incomplete tokens
- Login through the identity store chain
- verify_token resolves the stored identity and live lodge name

Run with: pytest backend/tests/test_auth.py -v
"""

import pytest
from datetime import timedelta

from jose import jwt

from identity.errors import AuthenticationError, ConfigurationError
from identity.roles import Role
from identity.store import LODGE_COLLECTION
from services import audit
from services.auth import AuthService, TokenService

from conftest import PASSWORD_HASH


@pytest.fixture
def auth(store, token_service):
    return AuthService(store, token_service)


class TestTokenService:

    def test_claims_schema(self, token_service):
        token = token_service.issue("u1", "a@example.org", "lodge_admin", name="Ada", lodge_id="L1")
        payload = jwt.get_unverified_claims(token)

        assert payload["userId"] == "u1"
        assert payload["role"] == "LODGE_ADMIN"
        assert payload["lodgeId"] == "L1"
        assert payload["exp"] - payload["iat"] == 3600

    def test_optional_claims_omitted(self, token_service):
        payload = jwt.get_unverified_claims(token_service.issue("u1", "a@example.org", Role.MEMBER))
        assert "name" not in payload
        assert "lodgeId" not in payload

    def test_verify_upper_cases_role(self, token_service):
        token = jwt.encode(
            {"userId": "u1", "email": "a@example.org", "role": "lodge_admin"},
            token_service.secret_key,
            algorithm="HS256",
        )
        claims = token_service.verify(token)
        assert claims.role == "LODGE_ADMIN"
        assert claims.user_id == "u1"

    def test_bearer_prefix_accepted(self, token_service):
        token = token_service.issue("u1", "a@example.org", "MEMBER")
        assert token_service.verify(f"Bearer {token}").user_id == "u1"

    def test_expired_token(self, token_service):
        token = token_service.issue("u1", "a@example.org", "MEMBER", expires_delta=timedelta(seconds=-5))
        with pytest.raises(AuthenticationError, match="expired"):
            token_service.verify(token)

    def test_wrong_secret(self, token_service):
        other = TokenService(secret_key="a-different-secret-of-sufficient-length")
        with pytest.raises(AuthenticationError):
            token_service.verify(other.issue("u1", "a@example.org", "MEMBER"))

    @pytest.mark.parametrize("token", ["", "not-a-jwt"])
    def test_garbage(self, token_service, token):
        with pytest.raises(AuthenticationError):
            token_service.verify(token)

    def test_missing_required_claims(self, token_service):
        token = jwt.encode({"email": "a@example.org", "role": "MEMBER"}, token_service.secret_key, algorithm="HS256")
        with pytest.raises(AuthenticationError, match="missing"):
            token_service.verify(token)

    def test_secret_required(self):
        with pytest.raises(ConfigurationError):
            TokenService(secret_key="")


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_login_against_legacy_account(self, seed, store, auth, password):
        await seed.account("u1", "Ada@example.org", role="LODGE_ADMIN", primary_lodge="L1", name="Ada Lovelace")

        result = await auth.authenticate("ada@EXAMPLE.org", password)

        assert result.source == "legacy_account"
        assert result.identity.role == Role.LODGE_ADMIN
        claims = auth.token_service.verify(result.access_token)
        assert claims.email == "ada@example.org"
        assert claims.name == "Ada Lovelace"
        assert claims.lodge_id == "L1"
        assert (await store.get("users", "u1"))["lastLogin"]
        assert "passwordHash" not in result.to_token().user

    @pytest.mark.asyncio
    async def test_login_prefers_canonical(self, seed, auth, password):
        await seed.account("u1", "ada@example.org", password_hash="stale")
        await seed.canonical({"id": "u1", "email": "ada@example.org", "name": "Ada", "passwordHash": PASSWORD_HASH})

        result = await auth.authenticate("ada@example.org", password)
        assert result.source == "canonical"

    @pytest.mark.asyncio
    async def test_wrong_password(self, seed, auth):
        await seed.account("u1", "ada@example.org")
        with pytest.raises(AuthenticationError):
            await auth.authenticate("ada@example.org", "wrong-password")

    @pytest.mark.asyncio
    async def test_unknown_email(self, auth, password):
        with pytest.raises(AuthenticationError):
            await auth.authenticate("nobody@example.org", password)

    @pytest.mark.asyncio
    async def test_profile_with_plaintext_cannot_log_in(self, seed, auth):
        await seed.profile("m1", "plain@example.org", password="plaintext-password")
        with pytest.raises(AuthenticationError):
            await auth.authenticate("plain@example.org", "plaintext-password")

    @pytest.mark.asyncio
    async def test_inactive_identity(self, seed, auth, password):
        await seed.account("u1", "gone@example.org", status="inactive")
        with pytest.raises(AuthenticationError, match="inactive"):
            await auth.authenticate("gone@example.org", password)

    @pytest.mark.asyncio
    async def test_failed_login_is_audited(self, seed, auth):
        await seed.account("u1", "ada@example.org")
        with pytest.raises(AuthenticationError):
            await auth.authenticate("ada@example.org", "wrong-password")
        entry = audit.get_audit_logs(action="identity.login_failed")[0]
        assert entry.user_id == "u1"
        assert not entry.success


class TestVerifyToken:

    @pytest.mark.asyncio
    async def test_lodge_name_is_live(self, seed, store, auth, token_service):
        await seed.hierarchy()
        await seed.account("u1", "ada@example.org", primary_lodge="L1")
        token = token_service.issue("u1", "ada@example.org", "member", lodge_id="L1")

        assert (await auth.verify_token(token)).lodge_name == "Anchor Lodge"

        await store.update_one(LODGE_COLLECTION, "L1", {"name": "Renamed Lodge"})
        assert (await auth.verify_token(token)).lodge_name == "Renamed Lodge"

    @pytest.mark.asyncio
    async def test_stored_role_wins_over_token(self, seed, auth, token_service):
        await seed.account("u1", "ada@example.org", role="LODGE_ADMIN")
        token = token_service.issue("u1", "ada@example.org", "MEMBER")

        principal = await auth.verify_token(token)

        assert principal.token_role == "MEMBER"
        assert principal.role == Role.LODGE_ADMIN
        assert principal.to_dict()["role"] == "LODGE_ADMIN"

    @pytest.mark.asyncio
    async def test_deleted_identity(self, auth, token_service):
        token = token_service.issue("ghost", "ghost@example.org", "MEMBER")
        with pytest.raises(AuthenticationError):
            await auth.verify_token(token)

    @pytest.mark.asyncio
    async def test_unknown_role_claim(self, seed, auth, token_service):
        await seed.account("u1", "ada@example.org")
        token = token_service.issue("u1", "ada@example.org", "wizard")
        with pytest.raises(AuthenticationError):
            await auth.verify_token(token)
