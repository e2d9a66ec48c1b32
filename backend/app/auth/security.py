from datetime import datetime, timedelta
from uuid import UUID
import jwt
from app.core.config import settings


def _jwt_encode(payload: dict) -> str:
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(sub: UUID | str,
                        role: str,
                        expires_minutes: int | None = None) -> str:
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": str(sub),
        "role": role,
        "typ": "access",
        "iat": datetime.utcnow(),
        "exp": expire,
    }
    return _jwt_encode(payload)


def decode_access_token(token: str) -> dict:
    """Decode an access token, raising jwt.PyJWTError when it is unusable."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    if payload.get("typ") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    if not payload.get("sub") or not payload.get("role"):
        raise jwt.InvalidTokenError("Token is missing identity claims")
    return payload


def verify_socket_credential(user_id: str, role: str, credential: str) -> bool:
    """Check that a socket credential is an access token issued to (role, user_id)."""
    try:
        payload = decode_access_token(credential)
    except jwt.PyJWTError:
        return False
    return payload["sub"] == str(user_id) and payload["role"] == role
