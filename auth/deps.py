from typing import Optional

from config import Settings
from auth.token import decode_token
from services.exceptions import AuthenticationError, ForbiddenError


def current_user_id_from_request(req, settings: Settings) -> Optional[str]:
    auth = req.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    payload = decode_token(auth[7:], settings.jwt_secret_key, settings.jwt_audience)
    if not payload:
        return None
    return payload.get("sub")


def require_user(req, settings: Settings, user_id: Optional[str]) -> str:
    """The bearer token's subject must be the user the request acts on."""
    token_user_id = current_user_id_from_request(req, settings)
    if not token_user_id:
        raise AuthenticationError("Unauthorized")
    if user_id and str(user_id) != str(token_user_id):
        raise ForbiddenError("Token does not match userId")
    return token_user_id
