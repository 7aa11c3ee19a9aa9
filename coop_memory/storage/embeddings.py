"""Embedding providers for vector search.

Two providers ship with coop_memory:
- HashEmbedder: local, deterministic, zero-dependency character n-gram
  hashing. Good enough for tests and offline use.
- OpenAIEmbedder: calls the OpenAI embeddings API. Needs the ``openai``
  extra and an API key.

Embeddings are stored in sqlite-vec as packed little-endian float32.
"""

import hashlib
import logging
import math
import os
import struct
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

HASH_EMBEDDING_DIM = 384

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
DEFAULT_OPENAI_DIMENSION = 1536


class HashEmbedder:
    """Feature-hashing embedder over character n-grams and words.

    Vectors are L2-normalised, so cosine and euclidean orderings agree.
    Empty or whitespace-only text embeds to the zero vector.
    """

    def __init__(self, dim: int = HASH_EMBEDDING_DIM, ngram_range: Tuple[int, int] = (2, 4)):
        self._dim = dim
        self.ngram_range = ngram_range

    @property
    def dimension(self) -> int:
        return self._dim

    def _get_ngrams(self, text: str) -> List[str]:
        text = text.lower().strip()
        if not text:
            return []
        grams: List[str] = []
        low, high = self.ngram_range
        for n in range(low, high + 1):
            for i in range(len(text) - n + 1):
                grams.append(text[i : i + n])
        grams.extend(text.split())
        return grams

    def embed(self, text: str) -> List[float]:
        vec = [0.0] * self._dim
        for gram in self._get_ngrams(text):
            digest = hashlib.md5(gram.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[bucket] += sign
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0.0:
            return vec
        return [v / norm for v in vec]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


class OpenAIEmbedder:
    """Embeddings from the OpenAI API. The client is created lazily."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: Optional[str] = None):
        self.model = model
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self._client = None

    @property
    def dimension(self) -> int:
        return OPENAI_MODEL_DIMENSIONS.get(self.model, DEFAULT_OPENAI_DIMENSION)

    def _get_client(self):
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package not installed: pip install coop-memory[openai]")
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def embed(self, text: str) -> List[float]:
        response = self._get_client().embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        response = self._get_client().embeddings.create(model=self.model, input=texts)
        return [list(item.embedding) for item in response.data]


def pack_embedding(embedding: List[float]) -> bytes:
    """Pack floats as little-endian float32, the layout sqlite-vec expects."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def unpack_embedding(data: bytes) -> List[float]:
    count = len(data) // 4
    return list(struct.unpack(f"<{count}f", data[: count * 4]))
