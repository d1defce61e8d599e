from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import JWT_ALGORITHM, JWT_SECRET
from app.models.domain import Actor, Role

security = HTTPBearer()

# =========================
# TOKENS
# =========================

def create_token(claims: dict, expire_minutes: int = 60) -> str:
    # Production tokens come from the identity service; this one is for local runs and tests.
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])

# =========================
# FASTAPI DEPENDENCIES
# =========================

def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    try:
        return decode_token(credentials.credentials)   # {id, role, name, exp}
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def current_actor(claims: dict = Depends(verify_token)) -> Actor:
    """Resolve the already-authenticated caller; stage permissions are checked later per action."""
    actor_id = claims.get("id") or claims.get("sub")
    if not actor_id:
        raise HTTPException(status_code=401, detail="Token carries no actor id")
    try:
        role = Role(str(claims.get("role", "")).upper())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role {claims.get('role')!r}")
    return Actor(id=str(actor_id), role=role, name=claims.get("name"))
