#!/usr/bin/env python3
"""
Relay credentials and device identity for change-log replication.

Stored as JSON (``sync.json``) next to the rest of digest's configuration.
Connection settings may be overridden through the environment; the derived
key only ever comes from the file.
"""

from dataclasses import asdict, dataclass
from os import chmod, environ, fsync, path, remove, rename
from time import time
from typing import Any, Dict, Optional
import json
import shutil
import tempfile

from config import config, ensure_parent_dir, expand_path, get_logger
from errors import InvalidInputError
from vault_crypto import VaultKeys, derive_keys, new_device_id

# Module-specific logger
logger = get_logger("sync_config")

ENV_OVERRIDES = {
    "server": "DIGEST_SERVER",
    "user_id": "DIGEST_USER_ID",
    "token": "DIGEST_TOKEN",
    "device_id": "DIGEST_DEVICE_ID",
    "vault_db": "DIGEST_VAULT_DB",
}


@dataclass
class SyncConfig:
    server: str = ""
    user_id: str = ""
    token: str = ""
    device_id: str = ""
    derived_key: str = ""
    vault_db: str = ""
    auto_sync: bool = False

    def is_configured(self) -> bool:
        """True when every credential needed to push and pull is present."""
        return bool(self.server and self.token and self.user_id and self.derived_key)

    def keys(self) -> VaultKeys:
        if not self.derived_key:
            raise InvalidInputError("no derived key: run sync-init with a seed phrase")
        return VaultKeys.from_hex(self.derived_key)

    def set_seed(self, seed: str) -> None:
        self.derived_key = derive_keys(seed).to_hex()

    def vault_path(self) -> str:
        return expand_path(self.vault_db) or path.join(config.DATA_DIR, "vault.db")

    def apply_env_overrides(self) -> None:
        for attr, env_var in ENV_OVERRIDES.items():
            value = environ.get(env_var)
            if value:
                setattr(self, attr, value)
        auto = environ.get("DIGEST_AUTO_SYNC")
        if auto:
            self.auto_sync = auto.lower() == "true"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def redacted(self) -> Dict[str, Any]:
        """Summary safe to print: secrets are reduced to presence flags."""
        return {
            "server": self.server,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "vault_db": self.vault_path(),
            "auto_sync": self.auto_sync,
            "token_set": bool(self.token),
            "key_set": bool(self.derived_key),
        }


def _config_path(file_path: Optional[str] = None) -> str:
    return expand_path(file_path) or config.SYNC_CONFIG_PATH


def config_exists(file_path: Optional[str] = None) -> bool:
    return path.isfile(_config_path(file_path))


def load_config(file_path: Optional[str] = None) -> SyncConfig:
    """Load sync.json and apply environment overrides.

    A missing file yields an empty configuration. An unreadable file is moved
    aside as ``<name>.corrupt.<timestamp>`` so the next init starts clean.

    Raises:
        InvalidInputError: when the path is a directory or the file is corrupted
    """
    config_path = _config_path(file_path)
    sync_config = SyncConfig()

    if path.isdir(config_path):
        raise InvalidInputError(f"sync config path {config_path} is a directory")

    if path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top level must be an object")
        except ValueError as e:
            backup = f"{config_path}.corrupt.{int(time())}"
            try:
                rename(config_path, backup)
                logger.error(f"Sync config {config_path} is corrupted; moved to {backup}")
            except OSError as move_error:
                logger.error(f"Could not move corrupted sync config aside: {move_error}")
            raise InvalidInputError(f"config file corrupted ({e}); backed up to {backup}") from e

        for name in SyncConfig.__dataclass_fields__:
            if name in data and data[name] is not None:
                setattr(sync_config, name, bool(data[name]) if name == "auto_sync" else str(data[name]))

    sync_config.apply_env_overrides()
    return sync_config


def save_config(sync_config: SyncConfig, file_path: Optional[str] = None) -> str:
    """Atomically write sync.json with owner-only permissions."""
    config_path = _config_path(file_path)
    ensure_parent_dir(config_path)
    content = json.dumps(sync_config.to_dict(), indent=2, sort_keys=True)
    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', suffix='.json',
                                         dir=path.dirname(path.abspath(config_path)), delete=False) as temp_file:
            temp_path = temp_file.name
            chmod(temp_path, 0o600)
            temp_file.write(content)
            temp_file.flush()
            fsync(temp_file.fileno())
        shutil.move(temp_path, config_path)
        temp_path = None
    finally:
        if temp_path and path.exists(temp_path):
            remove(temp_path)
    logger.info(f"Saved sync config to {config_path}")
    return config_path


def init_config(seed: str, server: str = "", user_id: str = "", token: str = "",
                file_path: Optional[str] = None) -> SyncConfig:
    """Create and save a fresh configuration with a new device id."""
    sync_config = SyncConfig(
        server=server.rstrip("/"),
        user_id=user_id,
        token=token,
        device_id=new_device_id(),
    )
    sync_config.set_seed(seed)
    save_config(sync_config, file_path)
    logger.info(f"Initialized sync config for device {sync_config.device_id}")
    return sync_config
