"""Tests for store configuration."""

import pytest

from carenotes.config import (
    CONFIG_FILENAME,
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBEDDING_DIMENSION,
    EmbeddingConfig,
    RemoteConfig,
    StoreConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    remote_from_env,
    save_config,
)


def test_create_writes_defaults(tmp_path):
    config = load_or_create_config(tmp_path)

    assert (tmp_path / CONFIG_FILENAME).exists()
    assert config.embedding.dimension == DEFAULT_EMBEDDING_DIMENSION
    assert config.batch_size == DEFAULT_BATCH_SIZE
    assert not config.remote.is_configured
    assert config.database_path == tmp_path / "carenotes.db"


def test_round_trip(tmp_path):
    config = StoreConfig(
        path=tmp_path,
        embedding=EmbeddingConfig(model="local/model", dimension=384, cache_dir="/models"),
        batch_size=5,
        remote=RemoteConfig(url="https://sync.example.com", token="t0k"),
    )
    save_config(config)

    loaded = load_config(tmp_path)

    assert loaded.embedding == config.embedding
    assert loaded.batch_size == 5
    assert loaded.remote == config.remote
    assert loaded.created == config.created


def test_existing_config_is_not_overwritten(tmp_path):
    save_config(StoreConfig(path=tmp_path, batch_size=7))
    assert load_or_create_config(tmp_path).batch_size == 7


def test_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path)


@pytest.mark.parametrize("toml", [
    "[store]\nversion = 99\n",
    "[embedding]\ndimension = 0\n",
    "[indexing]\nbatch_size = -1\n",
])
def test_invalid_config(tmp_path, toml):
    (tmp_path / CONFIG_FILENAME).write_text(toml)
    with pytest.raises(ValueError):
        load_config(tmp_path)


def test_remote_section_omitted_when_unset(tmp_path):
    save_config(StoreConfig(path=tmp_path))
    assert "[remote]" not in (tmp_path / CONFIG_FILENAME).read_text()


def test_environment_overrides_remote(monkeypatch):
    monkeypatch.setenv("CARENOTES_SYNC_URL", "https://env.example.com")
    monkeypatch.setenv("CARENOTES_SYNC_TOKEN", "env-token")

    remote = remote_from_env(RemoteConfig(url="https://file.example.com", token="file-token"))

    assert remote == RemoteConfig(url="https://env.example.com", token="env-token")
    assert remote.is_configured


def test_file_remote_used_without_environment():
    remote = remote_from_env(RemoteConfig(url="https://file.example.com", token="file-token"))
    assert remote.url == "https://file.example.com"


def test_empty_environment_does_not_clear_file_remote(monkeypatch):
    monkeypatch.setenv("CARENOTES_SYNC_URL", "")
    monkeypatch.setenv("CARENOTES_SYNC_TOKEN", "")

    remote = remote_from_env(RemoteConfig(url="https://file.example.com", token="file-token"))

    assert remote == RemoteConfig(url="https://file.example.com", token="file-token")
    assert remote.is_configured


def test_default_store_path(monkeypatch, tmp_path):
    monkeypatch.setenv("CARENOTES_STORE_PATH", str(tmp_path))
    assert get_default_store_path() == tmp_path.resolve()
