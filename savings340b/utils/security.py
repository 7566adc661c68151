# savings340b/utils/security.py
"""
Bearer-token verification for the portal API.
Identity lives with the external provider that signs the JWTs; this module
only checks signatures and claims. Roles are read from the users table by
the API layer, not from the token.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from savings340b.utils.logging_config import get_logger
from savings340b.utils.error_handler import AuthenticationError
from savings340b.database.connection_manager import get_app_config, resolve_config_value

logger = get_logger('savings340b.security')

DEFAULT_SECRET = 'change-me-in-production'


class UserRole:
    """Role names stored in users.role."""
    ADMIN = "admin"
    VIEWER = "viewer"


@dataclass
class CurrentUser:
    user_id: str
    role: Optional[str] = None
    email: Optional[str] = None


class AuthHandler:
    """Signs and verifies access tokens with the configured shared secret."""

    def __init__(self, config: dict = None):
        security_conf = (config if config is not None else get_app_config()).get('security', {}) or {}
        self.secret_key = resolve_config_value(security_conf.get('jwt_secret_key', DEFAULT_SECRET)) or DEFAULT_SECRET
        self.algorithm = security_conf.get('jwt_algorithm', 'HS256')
        self.audience = resolve_config_value(security_conf.get('jwt_audience')) or None
        self.expiration_minutes = int(security_conf.get('jwt_expiration_minutes', 60))
        self.admin_role = security_conf.get('admin_role', UserRole.ADMIN)

        if self.secret_key == DEFAULT_SECRET:
            logger.critical("DEFAULT JWT SECRET IN USE. THIS IS NOT SAFE FOR PRODUCTION.")

    def create_access_token(self, user_id: str, expires_minutes: int = None, **claims: Any) -> str:
        """Issues a token for local development and tests; production tokens come from the identity provider."""
        now = datetime.utcnow()
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=expires_minutes if expires_minutes is not None else self.expiration_minutes),
            "jti": str(uuid.uuid4()),
            **claims,
        }
        if self.audience:
            payload["aud"] = self.audience
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Verifies `token` and returns its claims. Any failure is an AuthenticationError."""
        if not token:
            raise AuthenticationError()
        options = {} if self.audience else {"verify_aud": False}
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm],
                                 audience=self.audience, options=options)
        except JWTError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise AuthenticationError(details={'reason': str(e)})
        if not payload.get("sub"):
            raise AuthenticationError(details={'reason': 'token has no subject'})
        return payload

    def user_id_from_token(self, token: str) -> str:
        return str(self.decode_token(token)["sub"])


_auth_handler: Optional[AuthHandler] = None


def get_auth_handler() -> AuthHandler:
    global _auth_handler
    if _auth_handler is None:
        _auth_handler = AuthHandler()
    return _auth_handler


def reset_auth_handler(config: dict = None) -> AuthHandler:
    """Rebuilds the process-wide handler, e.g. after configuration changes."""
    global _auth_handler
    _auth_handler = AuthHandler(config)
    return _auth_handler
