"""Configuration loading."""

from sweteam.config.loader import load_config, validate_config
from sweteam.config.schema import SWETeamConfig

__all__ = ["SWETeamConfig", "load_config", "validate_config"]
