import os
import hashlib
import json
from typing import Optional, List
import redis
from app.utils.logger import logger

class EmbeddingCache:
    """Query-embedding cache so repeated searches skip re-encoding."""

    def __init__(self):
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.ttl = int(os.getenv("EMBEDDING_CACHE_TTL", str(24 * 60 * 60)))
        try:
            self.client: Optional[redis.Redis] = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("Connected to Redis at %s", self.redis_url)
        except Exception as e:
            logger.error("Failed to connect to Redis: %s", e)
            self.client = None

    def _generate_key(self, model_name: str, text: str) -> str:
        digest = hashlib.sha256(f"{model_name}:{text}".encode()).hexdigest()
        return f"embedding:{digest}"

    def get(self, model_name: str, text: str) -> Optional[List[float]]:
        if not self.client:
            return None

        try:
            cached = self.client.get(self._generate_key(model_name, text))
            if cached and isinstance(cached, str):
                data = json.loads(cached)
                if isinstance(data, list):
                    logger.info("Embedding cache hit")
                    return data
            return None
        except Exception as e:
            logger.error("Cache get error: %s", e)
            return None

    def set(self, model_name: str, text: str, embedding: List[float]):
        if not self.client:
            return

        try:
            self.client.setex(self._generate_key(model_name, text), self.ttl, json.dumps(embedding))
        except Exception as e:
            logger.error("Cache set error: %s", e)

cache = EmbeddingCache()
