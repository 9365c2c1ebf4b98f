"""
Configuration module for the schedule engine.

Provides centralized configuration for expansion horizons, job retry
policy, worker polling and the entity registry.
"""

from timeslot.src.config.settings import AppSettings, get_settings

__all__ = [
    "AppSettings",
    "get_settings",
]
