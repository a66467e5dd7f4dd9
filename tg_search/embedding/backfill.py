import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Callable

from ..database.repository import Repository, PendingMessage
from .client import EmbeddingClient, EmbeddingError


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 100


@dataclass
class BackfillResult:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def errors(self) -> int:
        return self.failed - self.skipped


def _has_content(message: PendingMessage) -> bool:
    return bool(message.content and message.content.strip())


async def embed_messages(
    repo: Repository,
    embedder: EmbeddingClient,
    batch_size: Optional[int] = None,
    chat_id: Optional[int] = None,
    on_progress: Optional[Callable[[BackfillResult], None]] = None,
) -> BackfillResult:
    """Generate embeddings for every stored message that lacks one.

    Batches are read in (chat_id, id) order behind a cursor, so each row is
    looked at once per run. A batch whose embedding request or write-back
    fails is counted as failed in full and the loop moves on. When only some
    write-backs fail, the rows that were written keep their embeddings and
    drop out of later runs, but this run still reports them as failed.
    Empty messages are skipped and reported together with the failures.
    """
    batch_size = batch_size or DEFAULT_BATCH_SIZE
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    result = BackfillResult()
    result.total = await repo.count_pending_embeddings(chat_id)

    if result.total == 0:
        logger.info("No messages need embeddings")
        return result

    logger.info("Found %d messages that need embeddings", result.total)
    cursor: Optional[tuple[int, int]] = None

    while result.processed < result.total:
        batch = await repo.fetch_pending_embeddings(batch_size, chat_id=chat_id, after=cursor)
        if not batch:
            break

        cursor = batch[-1].key
        valid = [m for m in batch if _has_content(m)]
        skipped = len(batch) - len(valid)

        try:
            if valid:
                texts = [m.content.strip() for m in valid]
                vectors = await embedder.generate_embeddings(texts)
                if len(vectors) != len(valid):
                    raise EmbeddingError(
                        f"Got {len(vectors)} embeddings for {len(valid)} messages"
                    )

                # Every write must settle before the batch is counted
                outcomes = await asyncio.gather(
                    *(
                        repo.update_embedding(m.chat_id, m.id, vector)
                        for m, vector in zip(valid, vectors)
                    ),
                    return_exceptions=True,
                )
                errors = [o for o in outcomes if isinstance(o, Exception)]
                if errors:
                    logger.warning(
                        "%d of %d embedding writes failed, %d were kept",
                        len(errors), len(outcomes), len(outcomes) - len(errors)
                    )
                    raise errors[0]
            else:
                logger.warning("Batch has no message content, skipping %d messages", len(batch))

            result.processed += len(batch)
            result.succeeded += len(valid)
            result.failed += skipped
            result.skipped += skipped
            logger.debug(
                "Processed %d/%d messages, skipped %d empty in this batch",
                result.processed, result.total, skipped
            )
        except Exception:
            logger.warning(
                "Failed to embed batch %s..%s, skipping %d messages",
                batch[0].key, batch[-1].key, len(batch),
                exc_info=True
            )
            result.processed += len(batch)
            result.failed += len(batch)

        if on_progress:
            on_progress(result)

    logger.info(
        "Embedding finished: %d processed, %d failed or skipped",
        result.processed, result.failed
    )
    return result
