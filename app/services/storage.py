import os
import time
import urllib.parse
from typing import Optional
import httpx
from prometheus_client import Counter, Histogram
from app.services.errors import AdapterError
from app.utils.logger import logger

STORAGE_REQUESTS = Counter(
    "screenshot_storage_requests_total",
    "Total number of object storage requests",
    ["operation", "status"]
)

STORAGE_DURATION = Histogram(
    "screenshot_storage_duration_seconds",
    "Histogram of object storage request duration",
    ["operation"]
)

class StorageService:
    """Object storage client: signed read URLs and downloads."""

    def __init__(self, base_url: Optional[str] = None, bucket: Optional[str] = None, service_key: Optional[str] = None):
        self.base_url = (base_url or os.getenv("STORAGE_URL", "http://localhost:54321/storage/v1")).rstrip("/")
        self.bucket = bucket or os.getenv("STORAGE_BUCKET", "screenshots")
        self.service_key = service_key or os.getenv("STORAGE_SERVICE_KEY")

        if not self.service_key:
            logger.warning("STORAGE_SERVICE_KEY not set. Signed URL requests will be unauthenticated.")

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key
        return headers

    async def create_signed_url(self, file_path: str, ttl: int = 60) -> str:
        """Return a URL that can read `file_path` for `ttl` seconds."""
        path = urllib.parse.quote(file_path.lstrip("/"))
        url = f"{self.base_url}/object/sign/{self.bucket}/{path}"
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(url, headers=self._headers(), json={"expiresIn": ttl})
        except httpx.HTTPError as e:
            STORAGE_REQUESTS.labels(operation="sign", status="exception").inc()
            raise AdapterError(f"Failed to get image URL: {e}") from e
        finally:
            STORAGE_DURATION.labels(operation="sign").observe(time.time() - start_time)

        if response.status_code != 200:
            STORAGE_REQUESTS.labels(operation="sign", status="error").inc()
            logger.warning("Signed URL request failed with status %s: %s", response.status_code, response.text)
            raise AdapterError(f"Failed to get image URL (status {response.status_code})")

        signed = response.json().get("signedURL") or response.json().get("signedUrl")
        if not signed:
            STORAGE_REQUESTS.labels(operation="sign", status="error").inc()
            raise AdapterError("Failed to get image URL (empty response)")

        STORAGE_REQUESTS.labels(operation="sign", status="success").inc()
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/{signed.lstrip('/')}"

    async def download(self, url: str) -> bytes:
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            STORAGE_REQUESTS.labels(operation="download", status="exception").inc()
            raise AdapterError(f"Failed to download image: {e}") from e
        finally:
            STORAGE_DURATION.labels(operation="download").observe(time.time() - start_time)

        if response.status_code != 200:
            STORAGE_REQUESTS.labels(operation="download", status="error").inc()
            raise AdapterError(f"Failed to download image (status {response.status_code})")

        STORAGE_REQUESTS.labels(operation="download", status="success").inc()
        return response.content

storage_service = StorageService()
