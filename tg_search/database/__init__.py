from .repository import (
    Repository,
    MessageRecord,
    PendingMessage,
    SimilarMessage,
    SearchOptions,
    ChatRecord,
    FolderRecord,
    SyncState,
    ChatStats,
)

__all__ = [
    "Repository",
    "MessageRecord",
    "PendingMessage",
    "SimilarMessage",
    "SearchOptions",
    "ChatRecord",
    "FolderRecord",
    "SyncState",
    "ChatStats",
]
