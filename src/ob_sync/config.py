import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_REMOTE,
    RECONCILE_INTERVAL,
    SETTLE_INTERVAL,
    SQUASH_THRESHOLD,
    VAULT_PATH_FILE,
)
from .errors import ConfigurationError

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '12h', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


@dataclass(frozen=True)
class VaultSettings:
    """Immutable settings handed to the engine for one vault.

    Attributes:
        path (Path): Absolute path of the vault working copy.
        remote (str): The remote name.
        branch (str): The tracked branch on that remote.
        squash_threshold (int): Unpushed commits needed before a scheduled push.
    """

    path: Path
    remote: str = DEFAULT_REMOTE
    branch: str = DEFAULT_BRANCH
    squash_threshold: int = SQUASH_THRESHOLD

    @property
    def remote_ref(self) -> str:
        return f"{self.remote}/{self.branch}"


@dataclass
class CoreConfig:
    """Core repository settings.

    Attributes:
        remote_name (str): The git remote to reconcile with.
        branch (str): The branch on that remote.
    """

    remote_name: str = DEFAULT_REMOTE
    branch: str = DEFAULT_BRANCH


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class DaemonConfig:
    """Daemon operational settings.

    Attributes:
        settle_interval (int): Seconds between commit-only runs.
        reconcile_interval (int): Seconds between full reconciliation runs.
        squash_threshold (int): Unpushed commits needed before a scheduled push.
    """

    settle_interval: int = SETTLE_INTERVAL
    reconcile_interval: int = RECONCILE_INTERVAL
    squash_threshold: int = SQUASH_THRESHOLD


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Core settings.
        limits (LimitsConfig): Resource limits.
        daemon (DaemonConfig): Daemon behavior settings.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from disk, applying defaults where necessary.

        Args:
            path (Path | None): Settings file to read. Defaults to CONFIG_FILE.

        Returns:
            Config: The populated configuration object.
        """
        instance = cls()
        source = path or CONFIG_FILE
        if source.exists():
            instance._merge_from_file(source)
        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "daemon" in data:
                self.daemon = self._update_dataclass(
                    "daemon", self.daemon, data["daemon"]
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["settle_interval", "reconcile_interval"]:
                    filtered_updates[k] = parse_time(v)
                elif k == "squash_threshold":
                    if not isinstance(v, int) or v < 0:
                        raise ValueError(f"Expected a non-negative integer, got {v!r}")
                    filtered_updates[k] = v
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

    def vault_settings(self, vault_file: Path | None = None) -> VaultSettings:
        """Builds the engine settings from the persisted vault path.

        Raises:
            ConfigurationError: If the vault path is unset or unusable.
        """
        return VaultSettings(
            path=read_vault_path(vault_file),
            remote=self.core.remote_name,
            branch=self.core.branch,
            squash_threshold=self.daemon.squash_threshold,
        )


def validate_vault(path: Path) -> Path:
    """Checks that `path` is an existing git working copy and returns it resolved.

    Raises:
        ConfigurationError: If the path is missing, not a directory, or not a repository.
    """
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        raise ConfigurationError(f"Vault path does not exist: {resolved}")
    if not resolved.is_dir():
        raise ConfigurationError(f"Vault path is not a directory: {resolved}")
    if not (resolved / ".git").exists():
        raise ConfigurationError(f"Not a git repository: {resolved}")
    return resolved


def read_vault_path(vault_file: Path | None = None) -> Path:
    """Reads and validates the vault path persisted by `ob start`.

    Raises:
        ConfigurationError: If the file is unreadable, empty, or names an unusable path.
    """
    source = vault_file or VAULT_PATH_FILE
    try:
        raw = source.read_text().strip()
    except OSError as e:
        raise ConfigurationError(f"Error reading vault path from {source}: {e}") from e
    if not raw:
        raise ConfigurationError(f"Vault path is not set in {source}")
    return validate_vault(Path(raw))


def save_vault_path(path: Path, vault_file: Path | None = None) -> Path:
    """Validates `path` and persists it as the vault to synchronize.

    Returns:
        Path: The resolved vault path that was written.
    """
    resolved = validate_vault(path)
    target = vault_file or VAULT_PATH_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(str(resolved))
    return resolved
