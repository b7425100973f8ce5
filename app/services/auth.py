import os
from typing import Optional
import httpx
from app.utils.logger import logger

class AuthService:
    """Resolves bearer tokens to user ids through the auth provider."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or os.getenv("AUTH_URL", "http://localhost:54321/auth/v1")).rstrip("/")
        self.api_key = api_key or os.getenv("AUTH_API_KEY")

    async def get_user_id(self, token: str) -> Optional[str]:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(f"{self.base_url}/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error("Auth provider request failed: %s", e)
            return None

        if response.status_code != 200:
            return None
        return response.json().get("id")

auth_service = AuthService()
