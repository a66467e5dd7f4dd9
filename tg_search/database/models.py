MESSAGE_TYPES = ("text", "photo", "video", "document", "sticker", "other")

CHAT_TYPES = ("user", "group", "channel", "saved")

SCHEMA = """
CREATE TABLE IF NOT EXISTS folders (
    id INTEGER PRIMARY KEY,
    title TEXT NOT NULL,
    emoji TEXT,
    last_sync_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS chats (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('user', 'group', 'channel', 'saved')),
    last_message TEXT,
    last_message_date TIMESTAMP,
    last_sync_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    message_count INTEGER NOT NULL DEFAULT 0,
    folder_id INTEGER REFERENCES folders(id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER NOT NULL,
    chat_id INTEGER NOT NULL,
    type TEXT NOT NULL DEFAULT 'text'
        CHECK (type IN ('text', 'photo', 'video', 'document', 'sticker', 'other')),
    content TEXT,
    embedding BLOB,
    from_id INTEGER,
    reply_to_id INTEGER,
    forward_from_chat_id INTEGER,
    forward_from_message_id INTEGER,
    views INTEGER,
    forwards INTEGER,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (chat_id, id)
);

CREATE TABLE IF NOT EXISTS sync_state (
    chat_id INTEGER PRIMARY KEY,
    last_message_id INTEGER NOT NULL DEFAULT 0,
    last_sync_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_type ON messages(type);
CREATE INDEX IF NOT EXISTS idx_messages_pending ON messages(chat_id, id) WHERE embedding IS NULL;
CREATE INDEX IF NOT EXISTS idx_chats_folder ON chats(folder_id);
"""
