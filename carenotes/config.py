"""
Configuration management for carenotes stores.

The configuration is stored as a TOML file in the store directory.
It specifies the embedding model, the indexing batch size and the
remote replica used for sync. Remote credentials can also come from
the environment, which takes precedence over the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w


CONFIG_FILENAME = "carenotes.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "carenotes.db"

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIMENSION = 384
DEFAULT_BATCH_SIZE = 20

ENV_STORE_PATH = "CARENOTES_STORE_PATH"
ENV_SYNC_URL = "CARENOTES_SYNC_URL"
ENV_SYNC_TOKEN = "CARENOTES_SYNC_TOKEN"


@dataclass
class EmbeddingConfig:
    """On-device embedding model settings."""
    model: str = DEFAULT_EMBEDDING_MODEL
    dimension: int = DEFAULT_EMBEDDING_DIMENSION
    cache_dir: Optional[str] = None


@dataclass
class RemoteConfig:
    """Remote replica connection parameters."""
    url: str = ""
    token: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.token)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    batch_size: int = DEFAULT_BATCH_SIZE
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from CARENOTES_STORE_PATH, else ~/.carenotes."""
    env_path = os.environ.get(ENV_STORE_PATH)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".carenotes"


def remote_from_env(remote: RemoteConfig) -> RemoteConfig:
    """Overlay CARENOTES_SYNC_URL / CARENOTES_SYNC_TOKEN on a remote config; empty values are ignored."""
    return RemoteConfig(
        url=os.environ.get(ENV_SYNC_URL) or remote.url,
        token=os.environ.get(ENV_SYNC_TOKEN) or remote.token,
    )


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    emb = data.get("embedding", {})
    dimension = int(emb.get("dimension", DEFAULT_EMBEDDING_DIMENSION))
    if dimension <= 0:
        raise ValueError(f"Invalid embedding dimension: {dimension}")

    batch_size = int(data.get("indexing", {}).get("batch_size", DEFAULT_BATCH_SIZE))
    if batch_size <= 0:
        raise ValueError(f"Invalid indexing batch_size: {batch_size}")

    remote = data.get("remote", {})

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=EmbeddingConfig(
            model=emb.get("model", DEFAULT_EMBEDDING_MODEL),
            dimension=dimension,
            cache_dir=emb.get("cache_dir") or None,
        ),
        batch_size=batch_size,
        remote=RemoteConfig(url=remote.get("url", ""), token=remote.get("token", "")),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The [remote] section is
    omitted when no remote is configured in the file.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    embedding = {
        "model": config.embedding.model,
        "dimension": config.embedding.dimension,
    }
    if config.embedding.cache_dir:
        embedding["cache_dir"] = config.embedding.cache_dir

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": embedding,
        "indexing": {"batch_size": config.batch_size},
    }
    if config.remote.url or config.remote.token:
        data["remote"] = {"url": config.remote.url, "token": config.remote.token}

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
