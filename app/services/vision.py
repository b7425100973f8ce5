import os
import json
import time
import base64
import asyncio
import httpx
from typing import List, Dict, Any, Optional
from pydantic import ValidationError
from prometheus_client import Counter, Histogram
from app.api.schemas import VisionResult
from app.services.errors import AdapterError
from app.utils.logger import logger

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

# Flat per-image estimate recorded on the content row
VISION_COST_ESTIMATE = 0.003

UNPARSED_CONTEXT = "Unable to parse structured data"

VISION_PROMPT = """Analyze this screenshot and provide:
1. A detailed description of what's visible in the image
2. List of UI elements (buttons, forms, menus, etc.)
3. Main colors and visual style
4. Any notable text or error messages visible
5. The apparent purpose or context of this screen

Format your response as JSON with these keys:
- description: string (overall description)
- elements: array of strings (UI elements found)
- colors: array of strings (dominant colors)
- text_snippets: array of strings (notable text found)
- context: string (what this screen appears to be for)"""

VISION_REQUESTS = Counter(
    "screenshot_vision_requests_total",
    "Total number of vision model requests",
    ["status"]
)

VISION_DURATION = Histogram(
    "screenshot_vision_duration_seconds",
    "Histogram of vision model request duration",
)


def to_data_uri(image: bytes, mime_type: Optional[str]) -> str:
    encoded = base64.b64encode(image).decode("utf-8")
    return f"data:{mime_type or 'image/png'};base64,{encoded}"


def parse_vision_response(text: str) -> VisionResult:
    """
    Pull the first well-formed JSON object out of the model's reply.

    Replies without one, or whose object does not match VisionResult, are
    kept whole as the description with empty lists.
    """
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            candidate, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(candidate, dict):
            try:
                return VisionResult.model_validate(candidate)
            except ValidationError as e:
                logger.warning("Vision response JSON did not match schema: %s", e.error_count())
                break
        index = text.find("{", index + 1)
    else:
        logger.warning("No JSON found in vision response")

    return VisionResult(
        description=text,
        elements=[],
        colors=[],
        text_snippets=[],
        context=UNPARSED_CONTEXT,
    )


class VisionService:
    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        self.model_name = model_name or os.getenv("VISION_MODEL", "anthropic/claude-sonnet-4")
        self.retries = 2
        self.base_delay = 5

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            "X-Title": "Screenshot Search"
        }

    async def _call_api(self, messages: List[Dict[str, Any]]) -> str:
        """Call the chat-completions endpoint, retrying rate limits and transport errors."""
        if not self.api_key:
            raise AdapterError("Vision model not configured (missing OPENROUTER_API_KEY)")

        payload = {
            "model": self.model_name,
            "messages": messages,
            "temperature": 0.3,
            "max_tokens": 1500
        }

        async with httpx.AsyncClient() as client:
            for attempt in range(self.retries + 1):
                start_time = time.time()
                try:
                    response = await client.post(
                        OPENROUTER_URL,
                        headers=self.headers,
                        json=payload,
                        timeout=60.0
                    )
                except httpx.HTTPError as e:
                    VISION_REQUESTS.labels(status="exception").inc()
                    logger.error("Request Error in VisionService: %s", e)
                    if attempt < self.retries:
                        await asyncio.sleep(self.base_delay)
                        continue
                    raise AdapterError(f"Vision request failed: {e}") from e
                finally:
                    VISION_DURATION.observe(time.time() - start_time)

                if response.status_code == 200:
                    VISION_REQUESTS.labels(status="success").inc()
                    content = response.json().get("choices", [{}])[0].get("message", {}).get("content")
                    if not isinstance(content, str) or not content.strip():
                        raise AdapterError("Vision model returned an empty response")
                    return content

                if response.status_code == 429:
                    VISION_REQUESTS.labels(status="rate_limited").inc()
                    if attempt == self.retries:
                        break
                    wait_time = self.base_delay * (attempt + 1)
                    logger.warning("Vision model rate limited. Retrying in %ss...", wait_time)
                    await asyncio.sleep(wait_time)
                    continue

                VISION_REQUESTS.labels(status="error").inc()
                logger.error("Vision model error %s: %s", response.status_code, response.text)
                raise AdapterError(f"Vision model error (status {response.status_code})")

        raise AdapterError("Vision model rate limit: max retries exceeded")

    async def describe(self, image_data_uri: str) -> str:
        """Send one image with the analysis prompt and return the raw reply text."""
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_data_uri}}
                ]
            }
        ]
        return await self._call_api(messages)

    async def analyze(self, image_data_uri: str) -> VisionResult:
        return parse_vision_response(await self.describe(image_data_uri))

vision_service = VisionService()
