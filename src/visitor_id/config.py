"""
Configuration for visitor-id.

Matcher weights and thresholds are carried by an explicit MatcherConfig
that is validated on construction. Process-level settings can be read
from the environment (with an optional .env file) or from YAML.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


@dataclass(frozen=True)
class MatcherConfig:
    """Weights for the five similarity dimensions and the match threshold."""
    canvas_weight: float = 0.30
    audio_weight: float = 0.25
    hardware_weight: float = 0.20
    screen_weight: float = 0.15
    fonts_weight: float = 0.10
    match_threshold: float = 0.75

    def __post_init__(self):
        for name, value in self.weights.items():
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} weight must be within [0, 1], got {value}")
        total = sum(self.weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ConfigError(f"matcher weights must sum to 1.0, got {total:.4f}")
        if not 0.0 <= self.match_threshold <= 1.0:
            raise ConfigError(
                f"match_threshold must be within [0, 1], got {self.match_threshold}"
            )

    @property
    def weights(self) -> dict[str, float]:
        return {
            "canvas": self.canvas_weight,
            "audio": self.audio_weight,
            "hardware": self.hardware_weight,
            "screen": self.screen_weight,
            "fonts": self.fonts_weight,
        }

    def to_dict(self) -> dict[str, float]:
        return {
            "canvas_weight": self.canvas_weight,
            "audio_weight": self.audio_weight,
            "hardware_weight": self.hardware_weight,
            "screen_weight": self.screen_weight,
            "fonts_weight": self.fonts_weight,
            "match_threshold": self.match_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MatcherConfig:
        unknown = set(data) - set(cls().to_dict())
        if unknown:
            raise ConfigError(f"unknown matcher settings: {sorted(unknown)}")
        try:
            values = {k: float(v) for k, v in data.items()}
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid matcher settings: {exc}") from exc
        return cls(**values)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# MatcherConfig field -> Settings field (and FINGERPRINT_*/MATCH_* env variable)
_MATCHER_FIELDS = {
    "canvas_weight": "fingerprint_weight_canvas",
    "audio_weight": "fingerprint_weight_audio",
    "hardware_weight": "fingerprint_weight_hardware",
    "screen_weight": "fingerprint_weight_screen",
    "fonts_weight": "fingerprint_weight_fonts",
    "match_threshold": "match_confidence_threshold",
}

_PROCESS_FIELDS = ("database_url", "candidate_limit", "log_level", "log_format", "api_prefix")


class Settings(BaseSettings):
    """Process-wide settings for the API, CLI and stores."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Storage
    database_url: str = "sqlite:///visitor_id.db"
    candidate_limit: int = 10

    # Logging
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT

    # API
    api_prefix: str = "/api/v1"

    # Matching
    fingerprint_weight_canvas: float = 0.30
    fingerprint_weight_audio: float = 0.25
    fingerprint_weight_hardware: float = 0.20
    fingerprint_weight_screen: float = 0.15
    fingerprint_weight_fonts: float = 0.10
    match_confidence_threshold: float = 0.75

    @field_validator("candidate_limit")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"candidate_limit must be positive, got {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def _valid_matcher(self) -> Settings:
        # MatcherConfig raises ConfigError, a ValueError, on bad weights.
        _ = self.matcher
        return self

    @property
    def matcher(self) -> MatcherConfig:
        return MatcherConfig(**{m: getattr(self, s) for m, s in _MATCHER_FIELDS.items()})

    @classmethod
    def load(cls, **values: Any) -> Settings:
        """Build settings, turning validation failures into ConfigError."""
        try:
            return cls(**values)
        except PydanticValidationError as exc:
            raise ConfigError(f"invalid settings: {exc}") from exc

    @classmethod
    def from_env(cls, env_file: Path | str | None = None) -> Settings:
        """
        Build settings from environment variables.

        The .env file (``env_file`` or ``.env`` in the working directory)
        is read when present; the process environment takes precedence.
        """
        if env_file is None:
            return cls.load()
        return cls.load(_env_file=env_file)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> Settings:
        """Load settings from a YAML document. The environment fills the gaps."""
        try:
            data = yaml.safe_load(yaml_str) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML settings: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("settings document must be a mapping")

        data = dict(data)
        matcher = data.pop("matcher", None) or {}
        if not isinstance(matcher, dict):
            raise ConfigError("matcher settings must be a mapping")
        unknown = set(data) - set(_PROCESS_FIELDS)
        if unknown:
            raise ConfigError(f"unknown settings: {sorted(unknown)}")

        parsed = MatcherConfig.from_dict(matcher).to_dict()
        values = {_MATCHER_FIELDS[k]: parsed[k] for k in matcher}
        return cls.load(**data, **values)

    def to_yaml(self) -> str:
        data: dict[str, Any] = {name: getattr(self, name) for name in _PROCESS_FIELDS}
        data["matcher"] = self.matcher.to_dict()
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
