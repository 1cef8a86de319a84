"""Configuration loading."""

import os
from pathlib import Path
from typing import Optional

import yaml

from .config_models import EngineConfig

# Default config dict
DEFAULT_CONFIG = EngineConfig().to_dict()


def find_config() -> Optional[Path]:
    """Find config file: $KBLEARN_CONFIG, then standard locations."""
    override = os.getenv("KBLEARN_CONFIG")
    if override:
        return Path(override).expanduser()
    locations = [
        Path.cwd() / "config.yaml",
        Path.home() / ".kblearn" / "config.yaml",
    ]
    for loc in locations:
        if loc.exists():
            return loc
    return None


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration as a plain dict. Use load_config_model() for typed access."""
    return load_config_model(config_path).to_dict()


def load_config_model(config_path: Optional[Path] = None) -> EngineConfig:
    """Load configuration as Pydantic model with validation."""
    base_config = {}

    path = config_path or find_config()
    if path and path.exists():
        try:
            with open(path) as f:
                base_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

    try:
        return EngineConfig.from_dict(base_config)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")
