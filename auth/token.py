from typing import Optional

import jwt
from jwt.exceptions import PyJWTError as JWTError
import logging

ALGORITHM = "HS256"

logger = logging.getLogger(__name__)


def decode_token(token: str, secret_key: Optional[str], audience: Optional[str] = None) -> Optional[dict]:
    """Decode an access token issued by the auth provider."""
    if not secret_key:
        logger.error("JWT_SECRET_KEY not configured")
        return None
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[ALGORITHM],
            audience=audience,
            options={"verify_aud": bool(audience)},
        )
        logger.debug(f"Token successfully decoded for {payload.get('sub', '[no sub]')}")
        return payload
    except JWTError as e:
        logger.warning(f"Failed to decode JWT: {e}")
        return None
