from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="owner-session")


def sign_owner_token(user_id: int) -> str:
    """Counterpart used by the login service that issues sessions."""
    return _serializer().dumps({"u": user_id})


def owner_from_token(token: str) -> int:
    settings = get_settings()
    if not token:
        raise ValueError("Missing session token")
    try:
        data = _serializer().loads(
            token, max_age=settings.session_max_age_hours * 3600
        )
    except BadSignature as exc:
        raise ValueError("Invalid session token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        raise ValueError("Invalid session token")
    return user_id
