"""Test authentication utilities and the bearer dependency."""

from datetime import timedelta

import pytest
from jose import jwt

from agrotrust.escrow import UnauthorizedError
from app.auth import TOKEN_AUDIENCE, AuthContext, create_access_token, decode_token
from app.config import get_settings


class TestAuthUtilities:
    """Test authentication utility functions."""

    def test_create_and_decode_token(self):
        settings = get_settings()
        token = create_access_token("usr_test123456", settings)
        assert isinstance(token, str)

        payload = decode_token(token, settings)
        assert payload["sub"] == "usr_test123456"
        assert payload["aud"] == TOKEN_AUDIENCE
        assert "exp" in payload
        assert "iat" in payload

    def test_expired_token_rejected(self):
        settings = get_settings()
        token = create_access_token("usr_test", settings, expires_delta=timedelta(seconds=-10))
        with pytest.raises(UnauthorizedError) as exc_info:
            decode_token(token, settings)
        assert exc_info.value.status_code == 401

    def test_token_signed_with_other_secret_rejected(self):
        settings = get_settings()
        token = jwt.encode(
            {"sub": "usr_test", "aud": TOKEN_AUDIENCE},
            "not-the-secret",
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(UnauthorizedError) as exc_info:
            decode_token(token, settings)
        assert exc_info.value.status_code == 401

    def test_wrong_audience_rejected(self):
        settings = get_settings()
        token = jwt.encode(
            {"sub": "usr_test", "aud": "service_role"},
            settings.supabase_jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(UnauthorizedError):
            decode_token(token, settings)

    def test_auth_context_actor(self):
        ctx = AuthContext(user_id="usr_abc123", role="inspector")
        assert ctx.actor.user_id == "usr_abc123"
        assert ctx.actor.role == "inspector"
        assert AuthContext(user_id="usr_x").role == "buyer"


class TestBearerDependency:
    """Bearer handling as seen through an escrow endpoint."""

    def test_missing_token(self, client):
        response = client.get("/escrow/some-id")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json() == {
            "error": "UNAUTHORIZED",
            "message": "Missing Authorization Bearer token.",
            "details": {},
        }

    def test_malformed_token(self, client):
        response = client.get("/escrow/some-id", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"
        assert response.json()["message"] == "Invalid or expired session."

    def test_user_without_profile(self, client, auth_headers):
        response = client.get("/escrow/some-id", headers=auth_headers("usr_NO_PROFILE"))
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"
        assert response.json()["message"] == "Profile not found."

    def test_valid_token_reaches_handler(self, client, buyer_headers):
        response = client.get("/escrow/some-id", headers=buyer_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"
