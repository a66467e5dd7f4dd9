from .client import EmbeddingClient, EmbeddingError
from .backfill import BackfillResult, embed_messages

__all__ = ["EmbeddingClient", "EmbeddingError", "BackfillResult", "embed_messages"]
