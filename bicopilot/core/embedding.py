"""Embedding clients for question / table vectorization"""
import hashlib
import math
import re
from typing import List, Optional, Sequence

from openai import AsyncOpenAI

from bicopilot.config import settings


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot / (na * nb)


class EmbeddingClient:
    """OpenAI embeddings"""

    def __init__(self, client: AsyncOpenAI, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.embedding_model

    async def embed_text(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            encoding_format="float",
        )
        return response.data[0].embedding

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts"""
        if not texts:
            return []
        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
            encoding_format="float",
        )
        return [item.embedding for item in response.data]


class HashingEmbeddingClient:
    """
    Deterministic bag-of-words embedder (signed feature hashing, L2-normalised).

    Used when no embedding provider is configured, and in tests. Word order does
    not matter, so reordered questions map to the same vector.
    """

    _RE_TOKEN = re.compile(r"[a-z0-9]+")

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = int(dimension or settings.embedding_dimension)
        self.model = f"hashing-{self.dimension}"

    def _features(self, text: str) -> List[str]:
        feats: List[str] = []
        for tok in self._RE_TOKEN.findall(str(text or "").lower()):
            if len(tok) > 3 and tok.endswith("s") and not tok.endswith("ss"):
                tok = tok[:-1]
            feats.append(tok)
        return feats

    def _vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dimension
        for feat in self._features(text):
            digest = hashlib.md5(feat.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[idx] += sign
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0.0:
            return vec
        return [v / norm for v in vec]

    async def embed_text(self, text: str) -> List[float]:
        return self._vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(t) for t in texts]
