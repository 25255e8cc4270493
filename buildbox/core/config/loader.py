"""
Configuration loader — buildbox.yml and environment settings.

Project settings live in ``<project>/buildbox.yml`` next to the build
definition (``build.yml``). The file is optional: a missing file
yields defaults. Process-level settings come from BUILDBOX_* env vars
and are read once, at the CLI entry point, into a RunSettings value
that is passed down explicitly.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from buildbox.core.errors import ConfigurationError
from buildbox.core.models.project import DEFAULT_IMAGE, ProjectConfig
from buildbox.core.models.sandbox import PRIVILEGED_ENV_VAR

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILE = "buildbox.yml"
DEFINITION_FILE = "build.yml"


# ── Build definition lookup ─────────────────────────────────────


def find_definition(start_dir: Path | None = None) -> Path | None:
    """Search for build.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to build.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / DEFINITION_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


# ── Project config ──────────────────────────────────────────────


def config_path(project_root: Path) -> Path:
    return project_root / PROJECT_CONFIG_FILE


def _read_mapping(path: Path) -> dict:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def load_project_config(project_root: Path) -> ProjectConfig:
    """Load ``buildbox.yml`` from *project_root*.

    Returns:
        ProjectConfig. Defaults if the file does not exist.

    Raises:
        ConfigurationError: If the file is unreadable or invalid.
    """
    path = config_path(project_root)
    if not path.is_file():
        logger.debug("No %s in %s, using defaults", PROJECT_CONFIG_FILE, project_root)
        return ProjectConfig()

    data = _read_mapping(path)
    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid project configuration in {path}: {e}") from e

    logger.debug("Loaded %s (privileged=%s)", path, config.privileged)
    return config


def save_project_config(project_root: Path, config: ProjectConfig) -> Path:
    """Write ``buildbox.yml`` (atomic write).

    Keys already in the file that the model does not know about are
    kept. Uses write-to-temp-then-rename to prevent corruption.
    """
    path = config_path(project_root)
    existing = _read_mapping(path) if path.is_file() else {}
    data = {**existing, **config.model_dump(mode="json", exclude_none=True)}
    content = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)

    path.parent.mkdir(parents=True, exist_ok=True)
    _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".buildbox_", suffix=".tmp")
    os.close(_fd)
    tmp = Path(tmp_path)
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise ConfigurationError(f"Failed to save {path}: {e}") from e

    logger.debug("Project config saved to %s", path)
    return path


def resolve_secrets(config: ProjectConfig, environ: Mapping[str, str] | None = None) -> list[str]:
    """Values of the env vars named in ``secrets``, for log redaction."""
    env = environ if environ is not None else os.environ
    values = []
    for name in config.secrets:
        value = env.get(name)
        if value:
            values.append(value)
        else:
            logger.debug("Secret %s is not set in the environment", name)
    return values


# ── Process settings ────────────────────────────────────────────


def env_flag(value: str | None) -> bool:
    """Truthy environment value: 1, true or yes."""
    return (value or "").strip().lower() in ("1", "true", "yes")


class RunSettings(BaseModel):
    """Environment-derived settings, captured once at startup."""

    log_level: str | None = None
    log_file: str | None = None
    log_file_level: str | None = None
    default_image: str = DEFAULT_IMAGE
    inherited_privileged: bool = False


def settings_from_env(environ: Mapping[str, str] | None = None) -> RunSettings:
    """Read BUILDBOX_* variables. The only place they are read."""
    env = environ if environ is not None else os.environ
    inherited = env_flag(env.get(PRIVILEGED_ENV_VAR))
    return RunSettings(
        log_level=env.get("BUILDBOX_LOG_LEVEL") or None,
        log_file=env.get("BUILDBOX_LOG_FILE") or None,
        log_file_level=env.get("BUILDBOX_LOG_FILE_LEVEL") or None,
        default_image=env.get("BUILDBOX_IMAGE") or DEFAULT_IMAGE,
        inherited_privileged=inherited,
    )
