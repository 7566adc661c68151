"""Unit tests for bearer-token verification."""

import pytest

from savings340b.utils.error_handler import AuthenticationError
from savings340b.utils.security import AuthHandler, UserRole


class TestAuthHandler:

    CONFIG = {"security": {"jwt_secret_key": "unit-secret", "jwt_algorithm": "HS256"}}

    def test_token_round_trip(self):
        handler = AuthHandler(self.CONFIG)
        token = handler.create_access_token("user-42", email="u@example.org")
        claims = handler.decode_token(token)
        assert claims["sub"] == "user-42"
        assert claims["email"] == "u@example.org"

    def test_wrong_secret_rejected(self):
        token = AuthHandler({"security": {"jwt_secret_key": "other-secret"}}).create_access_token("user-42")
        with pytest.raises(AuthenticationError) as exc_info:
            AuthHandler(self.CONFIG).decode_token(token)
        assert exc_info.value.status_code == 401

    def test_expired_token_rejected(self):
        handler = AuthHandler(self.CONFIG)
        token = handler.create_access_token("user-42", expires_minutes=-5)
        with pytest.raises(AuthenticationError):
            handler.decode_token(token)

    def test_missing_token_rejected(self):
        with pytest.raises(AuthenticationError):
            AuthHandler(self.CONFIG).user_id_from_token(None)

    def test_audience_enforced_when_configured(self):
        with_audience = AuthHandler({"security": {"jwt_secret_key": "unit-secret", "jwt_audience": "portal"}})
        token = with_audience.create_access_token("user-42")
        assert with_audience.user_id_from_token(token) == "user-42"
        other_audience = AuthHandler({"security": {"jwt_secret_key": "unit-secret", "jwt_audience": "billing"}})
        with pytest.raises(AuthenticationError):
            with_audience.decode_token(other_audience.create_access_token("user-42"))

    def test_admin_role_defaults_to_admin(self):
        assert AuthHandler(self.CONFIG).admin_role == UserRole.ADMIN
        assert AuthHandler({"security": {"admin_role": "superuser"}}).admin_role == "superuser"
