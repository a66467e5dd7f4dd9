import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .embedding.client import DEFAULT_API_BASE


DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536


@dataclass
class Config:
    tg_api_id: Optional[int]
    tg_api_hash: Optional[str]
    tg_bot_token: Optional[str]
    openai_api_key: Optional[str]
    openai_api_base: str
    embedding_model: str
    embedding_dimensions: int
    embedding_timeout: float
    batch_size: int
    log_level: str
    data_dir: Path

    @property
    def db_path(self) -> Path:
        return self.data_dir / "tg_search.db"

    @property
    def session_path(self) -> Path:
        return self.data_dir / "session"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().strip('"').strip("'")
    return value or None


def _int_env(name: str, default: int) -> int:
    raw = _clean(os.getenv(name))
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_config(require_telegram: bool = False, require_embedding: bool = False) -> Config:
    current = Path(__file__).parent.parent
    env_path = current / ".env"

    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    api_id = _clean(os.getenv("TG_API_ID"))
    api_hash = _clean(os.getenv("TG_API_HASH"))
    bot_token = _clean(os.getenv("TG_BOT_TOKEN"))

    if require_telegram and (not api_id or not api_hash):
        raise ValueError(
            "TG_API_ID and TG_API_HASH must be set in .env file.\n"
            "Get them from https://my.telegram.org/apps"
        )

    if api_id is not None:
        try:
            api_id = int(api_id)
        except ValueError:
            raise ValueError(f"TG_API_ID must be a number, got {api_id!r}")

    api_key = _clean(os.getenv("OPENAI_API_KEY"))
    if require_embedding and not api_key:
        raise ValueError(
            "OPENAI_API_KEY must be set in .env file to generate embeddings."
        )

    timeout_raw = _clean(os.getenv("EMBEDDING_TIMEOUT")) or "60"
    try:
        timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(f"EMBEDDING_TIMEOUT must be a number, got {timeout_raw!r}")

    log_level = (_clean(os.getenv("LOG_LEVEL")) or "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(f"LOG_LEVEL must be DEBUG, INFO, WARNING, ERROR or CRITICAL, got {log_level!r}")

    data_dir = Path(os.getenv("DATA_DIR", current / "data"))
    data_dir.mkdir(parents=True, exist_ok=True)

    return Config(
        tg_api_id=api_id,
        tg_api_hash=api_hash,
        tg_bot_token=bot_token,
        openai_api_key=api_key,
        openai_api_base=(_clean(os.getenv("OPENAI_API_BASE")) or DEFAULT_API_BASE).rstrip("/"),
        embedding_model=_clean(os.getenv("EMBEDDING_MODEL")) or DEFAULT_EMBEDDING_MODEL,
        embedding_dimensions=_int_env("EMBEDDING_DIMENSIONS", DEFAULT_EMBEDDING_DIMENSIONS),
        embedding_timeout=timeout,
        batch_size=_int_env("BATCH_SIZE", 100),
        log_level=log_level,
        data_dir=data_dir,
    )
