"""Store configuration loader.

Configuration is an explicit, frozen value held by each Store, never ambient
process-wide state, so independent stores can coexist in one process. It is
persisted as ``<state_dir>/config.yaml`` by ``Store.init``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

from artifact_ledger.atomic_io import atomic_write_text

CONFIG_FILENAME = "config.yaml"
DEFAULT_STATE_DIR = ".stamp"

VersioningMode = Literal["content", "timestamp", "off"]
MetaFormat = Literal["json", "yaml", "both"]

VERSIONING_MODES: tuple[str, ...] = ("content", "timestamp", "off")
META_FORMATS: tuple[str, ...] = ("json", "yaml", "both")


class StoreConfigError(ValueError):
    """Raised when store configuration is invalid."""


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for one artifact store.

    Attributes:
        state_dir: Directory (relative to the store root) holding the catalog,
            snapshots, scratch space, logs, and locks.
        default_format: Format used when neither the caller nor the file
            extension selects one.
        versioning: ``content`` skips saves whose content and code hashes match
            the latest version; ``timestamp`` always commits a new version;
            ``off`` writes the live file and sidecar without snapshots.
        code_hash: Record a hash of the producing code when code is supplied.
        store_file_hash: Record a hash of the on-disk bytes in the sidecar.
        verify_on_load: Compare the on-disk hash with the sidecar on load.
        meta_format: Sidecar encodings to write.
        retain_versions: If set, keep only this many versions per artifact
            after each commit.
        lock_timeout: Seconds to wait for the store write lock.
        log_file: Optional file name under ``<state_dir>/logs`` for a log handler.
    """

    state_dir: str = DEFAULT_STATE_DIR
    default_format: str = "pickle"
    versioning: VersioningMode = "content"
    code_hash: bool = True
    store_file_hash: bool = True
    verify_on_load: bool = True
    meta_format: MetaFormat = "json"
    retain_versions: int | None = None
    lock_timeout: float = 30.0
    log_file: str | None = None

    def __post_init__(self) -> None:
        if self.versioning not in VERSIONING_MODES:
            raise StoreConfigError(f"versioning must be one of {VERSIONING_MODES}, got {self.versioning!r}")
        if self.meta_format not in META_FORMATS:
            raise StoreConfigError(f"meta_format must be one of {META_FORMATS}, got {self.meta_format!r}")
        if self.retain_versions is not None and (
            isinstance(self.retain_versions, bool)
            or not isinstance(self.retain_versions, int)
            or self.retain_versions < 1
        ):
            raise StoreConfigError(f"retain_versions must be a positive integer or null, got {self.retain_versions!r}")
        if self.lock_timeout <= 0:
            raise StoreConfigError(f"lock_timeout must be positive, got {self.lock_timeout!r}")
        if not self.state_dir:
            raise StoreConfigError("state_dir must not be empty")

    def replace(self, **changes: Any) -> StoreConfig:
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a YAML-serializable dict."""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        """Create a StoreConfig from a mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise StoreConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_store_config(config_path: Path) -> StoreConfig:
    """Load store configuration from a YAML file.

    Args:
        config_path: Path to the YAML file. A missing file yields defaults.

    Returns:
        StoreConfig with all configuration values.

    Raises:
        StoreConfigError: If the YAML is invalid or holds invalid values.
    """
    if not config_path.exists():
        return StoreConfig()

    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise StoreConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return StoreConfig()
    if not isinstance(data, dict):
        raise StoreConfigError(f"Config must be a mapping, got {type(data).__name__}")

    try:
        return StoreConfig.from_dict(data)
    except TypeError as e:
        raise StoreConfigError(f"Invalid config in {config_path}: {e}") from e


def save_store_config(config: StoreConfig, config_path: Path) -> None:
    """Write ``config`` to ``config_path`` as YAML."""
    text = yaml.safe_dump(config.to_dict(), sort_keys=True, default_flow_style=False)
    atomic_write_text(config_path, text)
