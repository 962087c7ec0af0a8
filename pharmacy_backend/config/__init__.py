"""Configuration package for the pharmacy backend."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
