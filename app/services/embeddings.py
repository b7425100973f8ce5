import os
from typing import List, Optional
from prometheus_client import Histogram
from app.utils.cache import cache
from app.utils.logger import logger

# Longest text, in characters, sent to the model for one vector
MAX_EMBEDDING_CHARS = 8000

EMBEDDING_DURATION = Histogram(
    "screenshot_embedding_duration_seconds",
    "Histogram of embedding generation duration",
)

def truncate(text: str, limit: int = MAX_EMBEDDING_CHARS) -> str:
    return text[:limit]

class EmbeddingsService:
    def __init__(self, model_name: Optional[str] = None):
        self.model = None
        self.model_name = model_name or os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2")

    def _load_model(self):
        if self.model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
            logger.info("Loading embedding model: %s...", self.model_name)
            self.model = SentenceTransformer(self.model_name)
            logger.info("Embedding model loaded successfully.")
        except ImportError:
            logger.warning("sentence-transformers not installed. Embeddings will be skipped.")
            self.model = False # Mark as missing so we don't retry indefinitely
        except Exception as e:
            logger.error("Failed to load embedding model: %s", e)
            self.model = False

    def is_available(self) -> bool:
        if self.model is None:
            self._load_model()
        return bool(self.model)

    def generate(self, texts: List[str]) -> List[List[float]]:
        if not self.is_available():
            logger.error("Embedding model is not loaded.")
            return []

        try:
            with EMBEDDING_DURATION.time():
                embeddings = self.model.encode(texts)
            if hasattr(embeddings, "tolist"):
                result = embeddings.tolist()
                if isinstance(result, list):
                    return result
            return []
        except Exception as e:
            logger.error("Error generating embeddings: %s", e)
            return []

    def embed_query(self, query: str) -> Optional[List[float]]:
        """Embed a search query, going through the Redis cache."""
        text = truncate(query)
        cached = cache.get(self.model_name, text)
        if cached is not None:
            return cached

        vectors = self.generate([text])
        if not vectors:
            return None
        cache.set(self.model_name, text, vectors[0])
        return vectors[0]

embeddings_service = EmbeddingsService()
