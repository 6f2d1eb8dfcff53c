"""Layered configuration: defaults, user file, project file, environment.

Each layer is a plain dict; layers are deep-merged in order and the result
is validated once by ``BranchLinkConfig``. Only the project layer is
mandatory-valid: a broken user file is skipped with a warning, a broken
project file raises ``ConfigError``.
"""

from __future__ import annotations

import copy
import os
import sys
import threading
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import BranchLinkConfig

CONFIG_FILENAME = "config.toml"
USER_CONFIG_DIR = ".branchlink"
PROJECT_CONFIG_DIR = ".branchlink"

# env var -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    "BRANCHLINK_GIT_TIMEOUT": (["git"], "timeout"),
    "BRANCHLINK_GIT_REMOTE": (["git"], "remote"),
    "BRANCHLINK_BASE_BRANCH": (["git"], "base_branch"),
    "BRANCHLINK_STATE_DIR": (["storage"], "state_dir"),
    "BRANCHLINK_STORAGE_MODE": (["storage"], "mode"),
    "BRANCHLINK_BACKUP_COUNT": (["storage"], "backup_count"),
    "BRANCHLINK_PROVIDER": (["suggestions"], "provider"),
    "BRANCHLINK_TICKET_PATTERN": (["suggestions"], "pattern"),
    "BRANCHLINK_BRANCH_CONVENTION": (["branch_naming"], "convention"),
    "BRANCHLINK_BRANCH_TEMPLATE": (["branch_naming"], "custom_template"),
    "BRANCHLINK_STALE_AFTER_DAYS": (["registry"], "stale_after_days"),
    "BRANCHLINK_PARENT_DIR": (["registry"], "parent_dir"),
    "BRANCHLINK_LOG_LEVEL": (["logging"], "level"),
    "BRANCHLINK_LOG_DIR": (["logging"], "dir"),
    "BRANCHLINK_LOG_MAX_BYTES": (["logging"], "max_bytes"),
    "BRANCHLINK_LOG_BACKUP_COUNT": (["logging"], "backup_count"),
    "BRANCHLINK_LOG_DISABLE_FILE": (["logging"], "disable_file"),
}


class ConfigError(Exception):
    """Configuration could not be read or did not validate."""


@dataclass(frozen=True)
class ConfigLayer:
    """One TOML file in the discovery chain."""

    label: str
    path: Path
    required_valid: bool


def _get_user_config_dir() -> Path:
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Nearest ``.branchlink/`` directory at or above ``project_path``.

    ``~/.branchlink`` holds user config and state, so it never counts as a
    project directory.
    """
    start = Path(project_path) if project_path is not None else Path.cwd()
    start = start if start.is_absolute() else start.resolve()
    user_dir = _get_user_config_dir()
    for directory in (start, *start.parents):
        candidate = directory / PROJECT_CONFIG_DIR
        if candidate != user_dir and candidate.is_dir():
            return candidate
    return None


def _layers(project_path: Optional[Path]) -> Iterator[ConfigLayer]:
    yield ConfigLayer("user", _get_user_config_dir() / CONFIG_FILENAME, required_valid=False)
    project_dir = _get_project_config_dir(project_path)
    if project_dir is not None:
        yield ConfigLayer("project", project_dir / CONFIG_FILENAME, required_valid=True)


def _load_toml(path: Path) -> Dict[str, Any]:
    """Parse one TOML file.

    Raises:
        ConfigError: unreadable or not valid TOML
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``. Lists are replaced."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_to_config_key(env_var: str) -> tuple[list[str], str]:
    """``BRANCHLINK_STORAGE_MODE`` -> ``(["storage"], "mode")``; unknown names map to the top level."""
    return ENV_MAPPING.get(env_var, ([], env_var))


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``config_dict`` with every set ``BRANCHLINK_*`` variable applied.

    Values stay strings; pydantic coerces them during validation.
    """
    result = copy.deepcopy(config_dict)
    for env_var, (sections, key) in ENV_MAPPING.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        target = result
        for section in sections:
            if not isinstance(target.get(section), dict):
                target[section] = {}
            target = target[section]
        target[key] = value
    return result


def load_config(project_path: Optional[Path] = None, skip_env: bool = False) -> BranchLinkConfig:
    """Build the effective configuration for ``project_path``.

    Later layers win: defaults, ``~/.branchlink/config.toml``, the nearest
    project ``.branchlink/config.toml``, then ``BRANCHLINK_*`` variables.

    Raises:
        ConfigError: project file unreadable, or the merged result invalid
    """
    merged: Dict[str, Any] = {}
    for layer in _layers(project_path):
        if not layer.path.exists():
            continue
        try:
            merged = _deep_merge(merged, _load_toml(layer.path))
        except ConfigError as e:
            if layer.required_valid:
                raise ConfigError(f"Invalid {layer.label} config: {e}")
            warnings.warn(f"Skipping invalid {layer.label} config at {layer.path}: {e}", UserWarning)

    if not skip_env:
        merged = _apply_env_overlay(merged)

    try:
        return BranchLinkConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


_cache: Dict[Optional[Path], BranchLinkConfig] = {}
_cache_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> BranchLinkConfig:
    """``load_config`` memoized per project path (thread-safe)."""
    key = Path(project_path).resolve() if project_path else None
    with _cache_lock:
        if force_reload or key not in _cache:
            _cache[key] = load_config(project_path)
        return _cache[key]


def clear_config_cache() -> None:
    with _cache_lock:
        _cache.clear()
