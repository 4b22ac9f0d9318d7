"""Configuration loader for the consensus extractor."""
from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"
ENV_FILE_OVERRIDE_VAR = "CONSENSUS_EXTRACTOR_ENV_FILE"

_ENV_ASSIGNMENT_PATTERN = re.compile(r"^\s*(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*?)\s*$")


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class ServiceConfig(_FrozenModel):
    """Settings for the Anthropic Messages API requester."""

    model: str = Field(..., min_length=1)
    api_base: str = Field(..., min_length=1)
    api_version: str = Field(..., min_length=1)
    timeout_seconds: float = Field(..., gt=0)
    max_attempts: int = Field(..., ge=1)
    backoff_initial_seconds: float = Field(..., ge=0)
    backoff_max_seconds: float = Field(..., ge=0)
    retry_statuses: List[int] = Field(default_factory=list)
    temperature: float = Field(0.0, ge=0.0, le=1.0)
    top_k: int = Field(1, ge=1)
    user_prompt: str = Field(..., min_length=1)


class ExtractionConfig(_FrozenModel):
    """Parameters of the consensus extraction loop."""

    max_iterations: int = Field(..., ge=1)
    num_requests: int = Field(..., ge=1)
    consensus_pct: float = Field(..., gt=0.0, le=100.0)
    max_tokens: int = Field(..., ge=1)
    min_tokens: int = Field(..., ge=1)
    adaptive: bool = False
    loop_min_chars: int = Field(50, ge=1)
    seed_prefill_path: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate_token_floor(self) -> "ExtractionConfig":
        if self.min_tokens > self.max_tokens:
            msg = "extraction.min_tokens cannot exceed extraction.max_tokens"
            raise ValueError(msg)
        return self

    def resolve_seed_path(self) -> Path:
        """Return the seed prefill location, anchored at the repository root."""

        candidate = Path(self.seed_prefill_path).expanduser()
        if candidate.is_absolute():
            return candidate
        return REPO_ROOT / candidate


class OutputConfig(_FrozenModel):
    """Where prefills and debug artifacts are written."""

    output_dir: str = Field(..., min_length=1)
    debug: bool = False
    debug_dir_prefix: str = Field("debug", min_length=1)
    sample_dir_prefix: str = Field("sample", min_length=1)

    @field_validator("debug_dir_prefix", "sample_dir_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or "/" in cleaned or "\\" in cleaned:
            msg = f"Directory prefix must be a plain name: {value!r}"
            raise ValueError(msg)
        return cleaned


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    service: ServiceConfig
    extraction: ExtractionConfig
    output: OutputConfig

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"

    def with_overrides(
        self,
        *,
        service: Optional[Dict[str, Any]] = None,
        extraction: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> "AppConfig":
        """Return a validated copy with section values replaced.

        ``None`` values inside the override mappings are ignored so callers can
        pass unset command line options straight through.

        Raises:
            ConfigError: If the merged values fail validation.
        """

        payload = self.model_dump()
        for section, overrides in (
            ("service", service),
            ("extraction", extraction),
            ("output", output),
        ):
            if not overrides:
                continue
            for key, value in overrides.items():
                if value is not None:
                    payload[section][key] = value
        try:
            return AppConfig.model_validate(payload)
        except ValidationError as exc:
            LOGGER.error("Invalid configuration overrides: %s", exc)
            raise ConfigError(f"Configuration validation failed: {exc}") from exc


def _determine_env_file_path() -> Optional[Path]:
    """Return the ``.env`` file to load: the override variable, else the repo default."""

    override = os.getenv(ENV_FILE_OVERRIDE_VAR)
    candidate = Path(override).expanduser() if override else DEFAULT_ENV_FILE
    if candidate.exists():
        return candidate
    if override:
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
    return None


def _parse_env_value(raw: str) -> str:
    if len(raw) >= 2 and raw[0] in {'"', "'"} and raw[-1] == raw[0]:
        return raw[1:-1]
    return raw.split(" #", 1)[0].rstrip()


def parse_env_file(path: Path) -> Dict[str, str]:
    """Return the ``KEY=value`` assignments of a ``.env`` file in file order.

    Comments, blank lines and anything that is not a plain assignment are
    skipped. Quoted values keep their content verbatim; unquoted values lose a
    trailing `` # comment``.
    """

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)
        return {}
    values: Dict[str, str] = {}
    for line in lines:
        match = _ENV_ASSIGNMENT_PATTERN.match(line)
        if match:
            values[match.group("key")] = _parse_env_value(match.group("value"))
    return values


def load_env_file(path: Path) -> None:
    """Populate ``os.environ`` from ``path`` without replacing non-empty values."""

    for key, value in parse_env_file(path).items():
        if os.environ.get(key, "").strip():
            continue
        os.environ[key] = value


def load_environment() -> Optional[Path]:
    """Load the repository ``.env`` file, returning the path that was read."""

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        load_env_file(env_file_path)
    return env_file_path


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    load_environment()
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
