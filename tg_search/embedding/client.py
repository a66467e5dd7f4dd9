import logging
from typing import Optional

import httpx


logger = logging.getLogger(__name__)


DEFAULT_API_BASE = "https://api.openai.com/v1"


class EmbeddingError(Exception):
    pass


class EmbeddingClient:
    """Embedding provider speaking the OpenAI ``/embeddings`` API.

    Returns one vector per input text, in input order. The HTTP client is
    opened by ``__aenter__`` and closed by ``__aexit__``; a caller-owned
    ``httpx.AsyncClient`` can be passed in instead.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http = http
        self._owns_http = http is None

    async def __aenter__(self) -> "EmbeddingClient":
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, *args) -> None:
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("Embedding client not opened.")
        return self._http

    @property
    def api_url(self) -> str:
        return f"{self.api_base}/embeddings"

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.http.post(
                self.api_url,
                headers=headers,
                json={
                    "model": self.model,
                    "input": texts,
                    "dimensions": self.dimensions,
                }
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if not response.is_success:
            raise EmbeddingError(
                f"Embedding API error {response.status_code}: {response.text}"
            )

        data = response.json().get("data") or []
        if len(data) != len(texts):
            raise EmbeddingError(
                f"Embedding API returned {len(data)} vectors for {len(texts)} inputs"
            )

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in ordered]

        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding API returned {len(vector)} dimensions, expected {self.dimensions}"
                )

        logger.debug("Generated %d embeddings with %s", len(vectors), self.model)
        return vectors

    async def generate_embedding(self, text: str) -> list[float]:
        vectors = await self.generate_embeddings([text])
        return vectors[0]
