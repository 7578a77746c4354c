"""Configuration management for the deploy agent."""

import os
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploy_agent.core.exceptions import ConfigurationError
from deploy_agent.core.models import Target

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Agent configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"), description="Server host")
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "8000")), description="Server port")
    workers: int = Field(1, description="Number of worker processes")
    reload: bool = Field(False, description="Enable auto-reload in development")

    # Targets
    targets_file: str = Field(
        "config/targets.yaml",
        description="YAML file listing deploy targets",
    )

    # Security
    max_signature_age_seconds: int = Field(
        60,
        description="Maximum accepted age of a signed request",
    )

    # Deploy limits
    max_bundle_size_mb: int = Field(100, description="Maximum accepted bundle size in MB")
    command_timeout_seconds: float = Field(
        600,
        description="Timeout per hook command in seconds (0 disables)",
    )
    manifest_filename: str = Field("deploy.yaml", description="Release manifest file name")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @property
    def max_bundle_size_bytes(self) -> int:
        return self.max_bundle_size_mb * 1024 * 1024

    @property
    def command_timeout(self) -> Optional[float]:
        if self.command_timeout_seconds and self.command_timeout_seconds > 0:
            return float(self.command_timeout_seconds)
        return None


class TargetRegistry(Mapping[str, Target]):
    """Read-only lookup of targets keyed by lower-cased repository id.

    Built once at startup; never mutated afterwards.
    """

    def __init__(self, targets: Iterable[Target]):
        table: Dict[str, Target] = {}
        for target in targets:
            if target.key in table:
                raise ConfigurationError(f"Duplicate target repository: {target.repository}")
            table[target.key] = target
        self._targets = MappingProxyType(table)

    def __getitem__(self, repository: str) -> Target:
        return self._targets[repository.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def find(self, repository: Optional[str]) -> Optional[Target]:
        """Case-insensitive lookup; returns None for unknown or empty ids."""
        if not repository:
            return None
        return self._targets.get(repository.strip().lower())

    @classmethod
    def from_data(cls, data: object) -> "TargetRegistry":
        if not isinstance(data, dict) or not isinstance(data.get("targets"), list):
            raise ConfigurationError("Targets config must be a mapping with a 'targets' list")

        targets: List[Target] = []
        for index, entry in enumerate(data["targets"]):
            try:
                targets.append(Target.model_validate(entry))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid target #{index}: {e}") from e
        return cls(targets)

    @classmethod
    def from_file(cls, path: Path) -> "TargetRegistry":
        if not path.exists():
            raise ConfigurationError(f"Targets file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid targets file {path}: {e}") from e

        registry = cls.from_data(data)
        logger.info("Targets loaded", path=str(path), targets=sorted(registry))
        return registry
