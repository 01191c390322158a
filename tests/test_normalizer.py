"""Tests for identity normalization."""

import httpx
import pytest
from conftest import make_descriptor

from multiauth.errors import IdentityExtractionError, NetworkError
from multiauth.providers.descriptor import IdentityChannel
from multiauth.providers.registry import (
    apple_descriptor,
    azure_b2c_descriptor,
    facebook_descriptor,
    google_descriptor,
)
from multiauth.schemas.auth import TokenSet
from multiauth.services.normalizer import UserInfoNormalizer, get_path


@pytest.fixture
def normalizer(http_client):
    return UserInfoNormalizer(http_client)


@pytest.fixture
def tokens():
    return TokenSet(access_token="access-token-value")


class TestProviderPayloads:
    """Each provider's profile shape maps to the same Identity fields."""

    def test_google(self, normalizer, settings):
        identity = normalizer.from_payload(
            google_descriptor(settings),
            {
                "sub": "1098765",
                "email": "ada@gmail.com",
                "email_verified": True,
                "name": "Ada Lovelace",
                "given_name": "Ada",
                "family_name": "Lovelace",
                "picture": "https://lh3.googleusercontent.com/a/photo",
            },
        )

        assert identity.provider_id == "google"
        assert identity.subject_id == "1098765"
        assert identity.email_verified is True
        assert identity.given_name == "Ada"
        assert identity.picture_url == "https://lh3.googleusercontent.com/a/photo"

    def test_facebook(self, normalizer, settings):
        """Graph profile: numeric id, nested picture, emails are always confirmed."""
        identity = normalizer.from_payload(
            facebook_descriptor(settings),
            {
                "id": 4412345678,
                "email": "ada@example.com",
                "first_name": "Ada",
                "last_name": "Lovelace",
                "name": "Ada Lovelace",
                "picture": {"data": {"url": "https://graph.facebook.com/pic.jpg"}},
            },
        )

        assert identity.subject_id == "4412345678"
        assert identity.email_verified is True
        assert identity.family_name == "Lovelace"
        assert identity.picture_url == "https://graph.facebook.com/pic.jpg"

    def test_facebook_without_email(self, normalizer, settings):
        identity = normalizer.from_payload(facebook_descriptor(settings), {"id": "42"})

        assert identity.email is None
        assert identity.email_verified is False

    def test_apple_string_booleans(self, normalizer, settings):
        identity = normalizer.from_payload(
            apple_descriptor(settings),
            {"sub": "001234.abcdef", "email": "x@privaterelay.appleid.com", "email_verified": "true"},
        )

        assert identity.email_verified is True
        assert identity.display_name is None

    def test_azure_b2c_emails_list_and_oid(self, normalizer, settings):
        identity = normalizer.from_payload(
            azure_b2c_descriptor(settings),
            {
                "oid": "object-id-1",
                "sub": "not-used",
                "emails": ["first@contoso.com", "second@contoso.com"],
                "name": "Contoso User",
            },
        )

        assert identity.subject_id == "object-id-1"
        assert identity.email == "first@contoso.com"
        assert identity.display_name == "Contoso User"

    def test_missing_subject(self, normalizer, settings):
        with pytest.raises(IdentityExtractionError):
            normalizer.from_payload(google_descriptor(settings), {"email": "a@b.c"})

    def test_unverified_email(self, normalizer, acme):
        identity = normalizer.from_payload(acme, {"sub": "u", "email": "u@x", "email_verified": "false"})
        assert identity.email_verified is False

    def test_raw_claims_kept(self, normalizer, acme):
        identity = normalizer.from_payload(acme, {"sub": "u", "custom": 1})
        assert identity.raw_claims == {"sub": "u", "custom": 1}

    def test_get_path(self):
        assert get_path({"a": {"b": {"c": 1}}}, "a.b.c") == 1
        assert get_path({"a": "flat"}, "a.b") is None


class TestIdentityTokenChannel:
    @pytest.mark.asyncio
    async def test_uses_verified_claims(self, normalizer, acme, tokens, idp):
        identity = await normalizer.normalize(acme, tokens, {"sub": "user-9", "email": "u9@x"})

        assert identity.subject_id == "user-9"
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_requires_claims(self, normalizer, acme, tokens):
        with pytest.raises(IdentityExtractionError):
            await normalizer.normalize(acme, tokens, None)


class TestUserInfoChannel:
    @pytest.fixture
    def descriptor(self):
        return make_descriptor(
            identity_channel=IdentityChannel.USERINFO,
            userinfo_params=(("fields", "id,email"),),
        )

    @pytest.mark.asyncio
    async def test_fetches_with_bearer_token(self, normalizer, descriptor, tokens, idp):
        idp.userinfo = {"sub": "user-1", "email": "user-1@example.com", "email_verified": True}

        identity = await normalizer.normalize(descriptor, tokens)

        request = idp.requests_to("/userinfo")[0]
        assert request.headers["Authorization"] == "Bearer access-token-value"
        assert request.url.params["fields"] == "id,email"
        assert identity.email == "user-1@example.com"

    @pytest.mark.asyncio
    async def test_subject_must_match_identity_token(self, normalizer, descriptor, tokens, idp):
        """Userinfo describing another user is rejected."""
        idp.userinfo = {"sub": "someone-else"}

        with pytest.raises(IdentityExtractionError):
            await normalizer.normalize(descriptor, tokens, {"sub": "user-1"})

    @pytest.mark.asyncio
    async def test_rejected_access_token(self, descriptor, tokens):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"error": "invalid_token"}))
        ) as client:
            with pytest.raises(IdentityExtractionError) as exc_info:
                await UserInfoNormalizer(client).normalize(descriptor, tokens)
        assert exc_info.value.details["status_code"] == 401

    @pytest.mark.asyncio
    async def test_server_error_is_network_error(self, descriptor, tokens):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(502))
        ) as client:
            with pytest.raises(NetworkError):
                await UserInfoNormalizer(client).normalize(descriptor, tokens)

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self, descriptor, tokens):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(NetworkError):
                await UserInfoNormalizer(client).normalize(descriptor, tokens)

    @pytest.mark.asyncio
    async def test_non_json_body(self, descriptor, tokens):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))
        ) as client:
            with pytest.raises(IdentityExtractionError):
                await UserInfoNormalizer(client).normalize(descriptor, tokens)
