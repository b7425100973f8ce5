from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from app.services.auth import auth_service

bearer_scheme = HTTPBearer(auto_error=False)

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Resolve the bearer token to a user id or reject with 401."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user_id = await auth_service.get_user_id(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
