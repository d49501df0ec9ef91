"""Configuration module."""
from metalclaim.config.settings import settings

__all__ = ["settings"]
