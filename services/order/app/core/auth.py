from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import Optional
import jwt
from app.core.config import settings
from app.core.errors import AccessDeniedError

security = HTTPBearer(auto_error=False)

def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(creds.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    return payload

def require_admin(identity: dict = Depends(get_current_identity)):
    if identity.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return identity

def is_admin(identity: dict) -> bool:
    return identity.get("role") == "admin"

def ensure_owner_or_admin(customer_id: str, identity: dict) -> None:
    if str(customer_id) != str(identity.get("sub")) and not is_admin(identity):
        raise AccessDeniedError("Access denied")

def admin_or_internal(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
    auth: Optional[str] = Header(default=None, alias="Authorization"),
):
    # trusted internal calls first, otherwise an admin JWT
    if x_internal_key and x_internal_key == (settings.SVC_INTERNAL_KEY or ""):
        return True
    if not auth or not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(auth.split(" ", 1)[1], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin required")
    return True
