"""
Configuration Management
========================

Handles loading learning-engine configuration from environment variables
and config files.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass, asdict

from adaptive_learning.errors import ValidationError

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_DB_PATH = ".conductor/learning/executions.db"
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_SIMILARITY_THRESHOLD = 0.6
DEFAULT_MIN_AGENT_SUCCESSES = 5
DEFAULT_SWAP_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_SWAP_TIMEOUT = 90.0
CONFIG_FILENAME = "learning_config.json"

# Environment variable -> (field, type)
ENV_VARS = {
    "LEARNING_DB_PATH": ("db_path", str),
    "LEARNING_HISTORY_LIMIT": ("history_limit", int),
    "LEARNING_SIMILARITY_THRESHOLD": ("similarity_threshold", float),
    "LEARNING_MIN_AGENT_SUCCESSES": ("min_agent_successes", int),
    "LEARNING_SWAP_MODEL": ("swap_model", str),
    "LEARNING_SWAP_TIMEOUT": ("swap_timeout", float),
}


@dataclass
class LearningConfig:
    """Adaptive learning configuration."""
    db_path: str = DEFAULT_DB_PATH
    history_limit: int = DEFAULT_HISTORY_LIMIT
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    min_agent_successes: int = DEFAULT_MIN_AGENT_SUCCESSES
    swap_model: str = DEFAULT_SWAP_MODEL
    swap_timeout: float = DEFAULT_SWAP_TIMEOUT

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "LearningConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (learning_config.json)
        3. Default values
        """
        config = asdict(cls())

        # Load from config file if exists
        config_path = Path(config_path) if config_path else Path(CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)
            else:
                if isinstance(file_config, dict):
                    config.update({k: v for k, v in file_config.items() if k in config})
                else:
                    logger.warning("Ignoring config file %s: expected a JSON object", config_path)

        # Override with environment variables
        for env_name, (field_name, cast) in ENV_VARS.items():
            raw = os.environ.get(env_name)
            if raw:
                try:
                    config[field_name] = cast(raw)
                except ValueError:
                    raise ValidationError(f"{env_name}: cannot parse {raw!r} as {cast.__name__}") from None

        result = cls(**config)
        result.validate()
        return result

    def validate(self) -> None:
        if self.history_limit <= 0:
            raise ValidationError(f"history_limit must be positive, got {self.history_limit}")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValidationError(f"similarity_threshold must be within [0, 1], got {self.similarity_threshold}")
        if self.min_agent_successes < 0:
            raise ValidationError(f"min_agent_successes must not be negative, got {self.min_agent_successes}")
        if self.swap_timeout <= 0:
            raise ValidationError(f"swap_timeout must be positive, got {self.swap_timeout}")

    def to_dict(self) -> dict:
        return asdict(self)
