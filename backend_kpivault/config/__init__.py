"""
Configuration management for the KPI vault alert worker.

Loads and validates settings from environment variables and optional .env
files. Exposes a single source of truth for all worker configuration.
"""

from backend_kpivault.config.settings import WorkerSettings, get_settings  # noqa: F401

__all__ = ["WorkerSettings", "get_settings"]
