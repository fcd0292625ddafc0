"""
Configuration System

Manages engine configuration from multiple sources:
1. Default values
2. Configuration file (phasegate.yaml)
3. Environment variables (highest priority)
"""

from typing import Any, Dict, Optional
from pathlib import Path
import logging
import os
import yaml
from dataclasses import dataclass, field

from .error_handling import ConfigurationError, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ScoringConfig:
    """Criterion scoring configuration"""
    max_retries: int = 2
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    exponential_base: float = 3.0
    jitter: bool = False
    assessor_timeout_seconds: float = 30.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


@dataclass
class GateConfig:
    """Gate evaluation configuration"""
    max_workers: int = 8
    timeout_margin_seconds: float = 5.0
    weak_score_threshold: float = 60.0


@dataclass
class ControllerConfig:
    """Transition controller configuration"""
    retry_budget: int = 2  # failed attempts allowed per phase before stalling
    lease_margin_seconds: float = 30.0


@dataclass
class RegistryConfig:
    """Which phase registry to load"""
    name: str = "innovation_flywheel"
    path: Optional[str] = None  # YAML file; wins over name


@dataclass
class StorageConfig:
    """Persistence configuration"""
    backend: str = "sqlite"
    path: str = ".phasegate/phasegate.db"


@dataclass
class AssessorConfig:
    """Assessor collaborator configuration"""
    provider: str = "llm"
    api_url: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "anthropic/claude-sonnet-4"
    api_key_env_var: str = "OPENROUTER_API_KEY"
    static_score: float = 75.0


@dataclass
class DeliverableConfig:
    """Deliverable hook configuration"""
    enabled: bool = True
    max_workers: int = 4
    generator: str = "logging"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "text"
    file: Optional[str] = None
    console: bool = True


@dataclass
class PhasegateConfig:
    """Complete engine configuration"""
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    assessor: AssessorConfig = field(default_factory=AssessorConfig)
    deliverables: DeliverableConfig = field(default_factory=DeliverableConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhasegateConfig":
        """Create configuration from dictionary"""
        config = cls()
        sections = {
            "scoring": ScoringConfig,
            "gate": GateConfig,
            "controller": ControllerConfig,
            "registry": RegistryConfig,
            "storage": StorageConfig,
            "assessor": AssessorConfig,
            "deliverables": DeliverableConfig,
            "logging": LoggingConfig,
        }
        for name, section_cls in sections.items():
            if name in data:
                try:
                    setattr(config, name, section_cls(**(data[name] or {})))
                except TypeError as e:
                    raise ConfigurationError(f"Invalid '{name}' section: {e}")
        return config


# (section, key, converter) for PHASEGATE_<SECTION>_<KEY> overrides
_ENV_OVERRIDES = [
    ("scoring", "max_retries", int),
    ("scoring", "assessor_timeout_seconds", float),
    ("gate", "max_workers", int),
    ("gate", "timeout_margin_seconds", float),
    ("controller", "retry_budget", int),
    ("registry", "name", str),
    ("registry", "path", str),
    ("storage", "backend", str),
    ("storage", "path", str),
    ("assessor", "provider", str),
    ("assessor", "model", str),
    ("assessor", "api_url", str),
    ("logging", "level", str),
    ("logging", "file", str),
]


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = Path(config_file) if config_file else Path("phasegate.yaml")
        self._config = self._load_config()

    def _load_config(self) -> PhasegateConfig:
        config = PhasegateConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config file {self.config_file}: {e}")
            if file_data:
                if not isinstance(file_data, dict):
                    raise ConfigurationError(f"{self.config_file} must contain a mapping")
                config = PhasegateConfig.from_dict(file_data)
            logger.debug("Loaded configuration from %s", self.config_file)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: PhasegateConfig) -> PhasegateConfig:
        """
        Apply environment variable overrides

        Environment variables format: PHASEGATE_<SECTION>_<KEY>
        Example: PHASEGATE_CONTROLLER_RETRY_BUDGET=3
        """
        for section, key, convert in _ENV_OVERRIDES:
            env_name = f"PHASEGATE_{section.upper()}_{key.upper()}"
            if (value := os.getenv(env_name)) is not None:
                try:
                    setattr(getattr(config, section), key, convert(value))
                except ValueError:
                    raise ConfigurationError(f"{env_name}={value!r} is not a valid {convert.__name__}")
        return config

    @property
    def config(self) -> PhasegateConfig:
        return self._config

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []
        cfg = self._config

        if cfg.scoring.max_retries < 0:
            errors.append("Scoring max retries must be non-negative")
        if cfg.scoring.initial_delay_ms < 0:
            errors.append("Scoring initial delay must be non-negative")
        if cfg.scoring.max_delay_ms < cfg.scoring.initial_delay_ms:
            errors.append("Scoring max delay must be >= initial delay")
        if cfg.scoring.assessor_timeout_seconds <= 0:
            errors.append("Assessor timeout must be positive")

        if cfg.gate.max_workers < 1:
            errors.append("Gate max workers must be at least 1")
        if cfg.gate.timeout_margin_seconds < 0:
            errors.append("Gate timeout margin must be non-negative")

        if cfg.controller.retry_budget < 0:
            errors.append("Controller retry budget must be non-negative")

        if cfg.storage.backend not in ("memory", "sqlite"):
            errors.append("Storage backend must be 'memory' or 'sqlite'")
        if cfg.assessor.provider not in ("llm", "static", "human"):
            errors.append("Assessor provider must be one of: llm, static, human")
        if cfg.deliverables.generator not in ("logging", "llm"):
            errors.append("Deliverable generator must be 'logging' or 'llm'")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if cfg.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")
        if cfg.logging.format not in ("text", "json"):
            errors.append("Logging format must be 'text' or 'json'")

        return len(errors) == 0, errors
