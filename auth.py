from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import AuthorizationError
from schemas import UserIdentity


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="user-session")


def issue_user_token(identity: UserIdentity) -> str:
    return _serializer().dumps(identity.model_dump())


def read_user_token(token: str, max_age_hours: int = 12) -> UserIdentity:
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature as exc:
        raise AuthorizationError("Invalid or expired session token") from exc
    try:
        return UserIdentity.model_validate(data)
    except ValueError as exc:
        raise AuthorizationError("Malformed session token") from exc


def bearer_token(header: Optional[str]) -> str:
    if not header:
        raise AuthorizationError("Unauthorized")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthorizationError("Unauthorized")
    return token.strip()
