"""Configuration: pydantic settings loaded from YAML and LPG_* environment variables."""

from lp_guardian.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
