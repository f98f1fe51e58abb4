from datetime import datetime, timedelta, timezone

from jose import jwt

from app.core.config import settings

API_ROLES = {"admin", "service"}

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def create_api_token(sub: str, role: str = "admin", minutes: int | None = None) -> str:
    if role not in API_ROLES:
        raise ValueError(f"Unknown API role: {role}")
    exp = now_utc() + timedelta(minutes=minutes or settings.JWT_ADMIN_MINUTES)
    payload = {"sub": sub, "role": role, "type": "api", "exp": exp}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
