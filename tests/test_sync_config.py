import json
import os
import stat

import pytest

from config import config
from errors import InvalidInputError
from sync_config import SyncConfig, config_exists, init_config, load_config, save_config
from vault_crypto import derive_keys

SEED = "correct horse battery staple"


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DIGEST_SERVER", "DIGEST_USER_ID", "DIGEST_TOKEN", "DIGEST_DEVICE_ID",
                 "DIGEST_VAULT_DB", "DIGEST_AUTO_SYNC"):
        monkeypatch.delenv(name, raising=False)


def test_missing_file_is_empty(tmp_path, clean_env):
    cfg = load_config(str(tmp_path / "sync.json"))

    assert cfg == SyncConfig()
    assert not cfg.is_configured()
    assert not config_exists(str(tmp_path / "sync.json"))


def test_init_then_load(tmp_path, clean_env):
    path = str(tmp_path / "conf" / "sync.json")
    created = init_config(SEED, server="https://relay.example.com/", user_id="u1", token="t0k", file_path=path)

    assert config_exists(path)
    assert created.server == "https://relay.example.com"
    assert len(created.device_id) == 26
    assert created.keys() == derive_keys(SEED)
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    loaded = load_config(path)
    assert loaded == created
    assert loaded.is_configured()


def test_env_overrides_everything_but_the_key(tmp_path, clean_env, monkeypatch):
    path = str(tmp_path / "sync.json")
    init_config(SEED, server="https://relay.example.com", user_id="u1", token="t0k", file_path=path)
    monkeypatch.setenv("DIGEST_SERVER", "https://other.example.com")
    monkeypatch.setenv("DIGEST_TOKEN", "env-token")
    monkeypatch.setenv("DIGEST_AUTO_SYNC", "true")

    loaded = load_config(path)
    assert loaded.server == "https://other.example.com"
    assert loaded.token == "env-token"
    assert loaded.auto_sync
    assert loaded.keys() == derive_keys(SEED)


def test_directory_path_is_rejected(tmp_path, clean_env):
    with pytest.raises(InvalidInputError, match="is a directory"):
        load_config(str(tmp_path))


def test_corrupt_file_is_moved_aside(tmp_path, clean_env):
    path = tmp_path / "sync.json"
    path.write_text("{not json")

    with pytest.raises(InvalidInputError, match="config file corrupted"):
        load_config(str(path))

    assert not path.exists()
    backups = [p.name for p in tmp_path.iterdir() if p.name.startswith("sync.json.corrupt.")]
    assert len(backups) == 1


def test_vault_path_defaults_to_data_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "DATA_DIR", str(tmp_path))

    assert SyncConfig().vault_path() == str(tmp_path / "vault.db")
    assert SyncConfig(vault_db="~/v.db").vault_path() == os.path.expanduser("~/v.db")


def test_redacted_hides_secrets(tmp_path, clean_env):
    cfg = SyncConfig(server="https://relay.example.com", token="secret", derived_key="ab" * 64)
    summary = cfg.redacted()

    assert "secret" not in json.dumps(summary)
    assert summary["token_set"] and summary["key_set"]


def test_save_is_plain_json(tmp_path, clean_env):
    path = str(tmp_path / "sync.json")
    save_config(SyncConfig(server="https://relay.example.com", device_id="D1"), path)

    with open(path) as f:
        data = json.load(f)
    assert data["server"] == "https://relay.example.com"
    assert data["device_id"] == "D1"
    assert data["auto_sync"] is False
