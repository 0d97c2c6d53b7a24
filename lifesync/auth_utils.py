"""
Access token helpers for the LifeSync WebSocket handshake.

Tokens are issued elsewhere; this module only encodes (for tooling and
tests) and verifies them.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from .config.models import AuthConfig
from .exceptions import ConfigurationError
from .structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

TokenVerifier = Callable[[str], dict[str, Any] | None]


def create_access_token(
    data: dict,
    secret_key: str,
    expires_delta: timedelta | None = None,
    algorithm: str = "HS256",
) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    token = jwt.encode(to_encode, secret_key, algorithm=algorithm)
    logger.debug("Access token created", subject=data.get("sub"))
    return token


def decode_access_token(
    token: str | None, secret_key: str, algorithm: str = "HS256", audience: str | None = None
) -> dict | None:
    """Decode and validate a JWT access token; None when missing or invalid."""
    if token is None:
        logger.debug("No token provided for decoding")
        return None

    options = {"verify_aud": audience is not None}
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm], audience=audience, options=options)
    except JWTError as e:
        logger.warning("JWT decode error", error=str(e))
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def make_token_verifier(config: AuthConfig) -> TokenVerifier:
    """
    Build the handshake verifier, token -> {"user_id": ...} or None.

    Raises:
        ConfigurationError: No signing secret configured
    """
    if not config.jwt_secret:
        raise ConfigurationError(
            "AUTH_JWT_SECRET must be set to verify WebSocket access tokens",
            details={"missing_env_var": "AUTH_JWT_SECRET"},
        )

    def verify_token(token: str) -> dict[str, Any] | None:
        claims = decode_access_token(token, config.jwt_secret, config.algorithm, config.audience)
        if claims is None:
            return None
        user_id = claims.get(config.user_id_claim)
        if not user_id:
            logger.warning("Access token has no user claim", claim=config.user_id_claim)
            return None
        return {"user_id": str(user_id), "claims": claims}

    return verify_token
