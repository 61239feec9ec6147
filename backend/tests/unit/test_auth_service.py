"""Tests for caller authentication."""

import httpx
import pytest

from services.auth_service import AuthenticationError, AuthValidator, CallerKind


def make_validator(handler=None, **overrides) -> AuthValidator:
    options = {
        "auth_url": "https://id.test",
        "api_key": "anon-key",
        "service_role_key": "service-role-key",
        "cron_secret": "cron-secret",
    }
    options.update(overrides)
    transport = httpx.MockTransport(handler) if handler else None
    return AuthValidator(transport=transport, **options)


def user_endpoint(user_id="user-1", status=200):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["authorization"] = request.headers.get("Authorization")
        seen["apikey"] = request.headers.get("apikey")
        if status != 200:
            return httpx.Response(status, json={"msg": "invalid JWT"})
        return httpx.Response(200, json={"id": user_id, "email": "u@example.com"})

    return handler, seen


class TestOperatorAndInternal:
    def test_cron_secret_is_operator(self):
        caller = make_validator().validate(None, cron_secret="cron-secret")
        assert caller.kind == CallerKind.OPERATOR
        assert caller.is_trusted

    def test_wrong_cron_secret_falls_through(self):
        with pytest.raises(AuthenticationError, match="Missing authorization header"):
            make_validator().validate(None, cron_secret="nope")

    def test_cron_secret_unset_never_matches(self):
        with pytest.raises(AuthenticationError):
            make_validator(cron_secret="").validate(None, cron_secret="")

    def test_service_role_key_is_internal(self):
        caller = make_validator().validate("Bearer service-role-key")
        assert caller.kind == CallerKind.INTERNAL
        assert caller.user_id is None
        assert caller.is_trusted


class TestUserTokens:
    def test_valid_user_token(self):
        handler, seen = user_endpoint("user-42")
        caller = make_validator(handler).validate("Bearer jwt-token")
        assert caller.kind == CallerKind.USER
        assert caller.user_id == "user-42"
        assert not caller.is_trusted
        assert seen["url"] == "https://id.test/auth/v1/user"
        assert seen["authorization"] == "Bearer jwt-token"
        assert seen["apikey"] == "anon-key"

    def test_rejected_token(self):
        handler, _ = user_endpoint(status=401)
        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            make_validator(handler).validate("Bearer expired")

    def test_provider_error(self):
        handler, _ = user_endpoint(status=500)
        with pytest.raises(AuthenticationError, match="Unable to validate credentials"):
            make_validator(handler).validate("Bearer jwt")

    def test_provider_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        with pytest.raises(AuthenticationError, match="Unable to validate credentials"):
            make_validator(handler).validate("Bearer jwt")

    def test_response_without_id(self):
        def handler(request):
            return httpx.Response(200, json={"email": "u@example.com"})

        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            make_validator(handler).validate("Bearer jwt")

    def test_auth_url_not_configured(self):
        with pytest.raises(AuthenticationError, match="not configured"):
            make_validator(auth_url="").validate("Bearer jwt")


class TestMalformedHeaders:
    @pytest.mark.parametrize(
        "header,reason",
        [
            (None, "Missing authorization header"),
            ("", "Missing authorization header"),
            ("Basic dXNlcjpwYXNz", "Bearer scheme"),
            ("Bearer", "Missing bearer token"),
            ("Bearer    ", "Missing bearer token"),
        ],
    )
    def test_rejections(self, header, reason):
        with pytest.raises(AuthenticationError, match=reason):
            make_validator().validate(header)
