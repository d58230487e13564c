"""YAML configuration for review sessions and the on-disk layout they use."""

from __future__ import annotations

import copy
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

CONFIG_DIR_ENV = "RR_CONFIG_DIR"
CONFIG_FILENAME = "config.yaml"
LOGS_DIRNAME = "logs"

# Branch value that stands for "the repository's default branch" in lock keys.
DEFAULT_BRANCH_SENTINEL = "default"

ReasoningLevel = Literal["minimal", "low", "medium", "high", "xhigh"]


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or fails validation."""


class AgentRole(str, Enum):
    """Function an agent is invoked for in a single call."""

    REVIEWER = "reviewer"
    FIXER = "fixer"
    CODE_SIMPLIFIER = "code-simplifier"


class ConfigModel(BaseModel):
    """Base model that rejects unknown keys so typos surface early."""

    model_config = ConfigDict(extra="forbid")


class AgentSettings(ConfigModel):
    """Which agent runs a role and with which selectors."""

    agent: str = Field(min_length=1)
    model: Optional[str] = None
    provider: Optional[str] = None
    reasoning: Optional[ReasoningLevel] = None


class RetryConfig(ConfigModel):
    """Backoff policy applied when an agent process exits unsuccessfully."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)


class RunConfig(ConfigModel):
    simplifier: bool = False


class DefaultReview(ConfigModel):
    """Review scope used when ``rr run`` gets no explicit mode flag."""

    type: Literal["uncommitted", "base"] = "uncommitted"
    branch: Optional[str] = None

    @model_validator(mode="after")
    def _require_branch_for_base(self) -> "DefaultReview":
        if self.type == "base" and not (self.branch or "").strip():
            raise ValueError("default_review.branch is required when type is 'base'")
        return self


class Config(ConfigModel):
    """Top-level configuration stored in ``config.yaml``."""

    reviewer: AgentSettings
    fixer: AgentSettings
    code_simplifier: Optional[AgentSettings] = None
    max_iterations: int = Field(default=5, ge=1)
    iteration_timeout_ms: int = Field(default=1_800_000, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    default_review: DefaultReview = Field(default_factory=DefaultReview)

    def settings_for(self, role: AgentRole) -> AgentSettings:
        """Return the agent settings responsible for ``role``."""

        if role is AgentRole.FIXER:
            return self.fixer
        if role is AgentRole.CODE_SIMPLIFIER:
            # The simplifier falls back to the reviewer's agent when unset.
            return self.code_simplifier or self.reviewer
        return self.reviewer


DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "reviewer": {"agent": "codex", "reasoning": "high"},
    "fixer": {"agent": "claude"},
    "max_iterations": 5,
    "iteration_timeout_ms": 1_800_000,
    "retry": {
        "max_retries": 3,
        "base_delay_ms": 1000,
        "max_delay_ms": 30_000,
    },
    "run": {"simplifier": False},
    "default_review": {"type": "uncommitted"},
}


def config_dir() -> Path:
    """Return the directory holding ``config.yaml`` and the logs root."""

    override = os.environ.get(CONFIG_DIR_ENV)
    if override and override.strip():
        return Path(override.strip()).expanduser()
    return Path.home() / ".config" / "ralph-review"


def default_config_path() -> Path:
    return config_dir() / CONFIG_FILENAME


def default_logs_root() -> Path:
    return config_dir() / LOGS_DIRNAME


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""

    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def parse_config(data: Any) -> Config:
    """Validate raw YAML data into a :class:`Config`."""

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    try:
        return Config.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def validate_agents(config: Config, known: Iterable[str]) -> Config:
    """Reject roles that name an agent outside ``known``."""

    names = set(known)
    roles = [("reviewer", config.reviewer), ("fixer", config.fixer)]
    if config.code_simplifier is not None:
        roles.append(("code_simplifier", config.code_simplifier))
    for role, settings in roles:
        if settings.agent not in names:
            raise ConfigError(
                f"Unknown agent '{settings.agent}' for {role}. Choose from: {', '.join(sorted(names))}"
            )
    return config


def load_config(path: Path | str | None = None) -> Config:
    """Load and validate the YAML configuration at ``path``."""

    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    return parse_config(data)


def save_config(config: Config | Dict[str, Any], path: Path | str | None = None) -> Path:
    """Persist configuration data to disk with stable formatting."""

    config_path = Path(path) if path is not None else default_config_path()
    if isinstance(config, Config):
        payload = config.model_dump(mode="json", exclude_none=True)
    else:
        payload = parse_config(config).model_dump(mode="json", exclude_none=True)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
    return config_path


__all__ = [
    "AgentRole",
    "AgentSettings",
    "Config",
    "ConfigError",
    "DEFAULT_BRANCH_SENTINEL",
    "DEFAULT_CONFIG_TEMPLATE",
    "DefaultReview",
    "ReasoningLevel",
    "RetryConfig",
    "RunConfig",
    "config_dir",
    "copy_config_template",
    "default_config_path",
    "default_logs_root",
    "load_config",
    "parse_config",
    "save_config",
    "validate_agents",
]
