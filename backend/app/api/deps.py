from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.security import API_ROLES, decode_token
from app.services.runtime import EntitlementsRuntime

bearer = HTTPBearer()


def get_runtime(request: Request) -> EntitlementsRuntime:
    return request.app.state.runtime


def _claims_from_token(creds: HTTPAuthorizationCredentials) -> dict:
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "api":
        raise HTTPException(status_code=401, detail="Invalid token type")
    if not payload.get("sub") or payload.get("role") not in API_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token subject")
    return payload


def require_api_client(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    """Any authenticated caller: a backend service or an admin."""
    return _claims_from_token(creds)


def require_admin(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    claims = _claims_from_token(creds)
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims


def actor_of(claims: dict) -> str:
    return f"{claims.get('role')}:{claims.get('sub')}"
