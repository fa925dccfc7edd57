"""
Centralized environment detection utilities.

Single source of truth for environment detection. All checks read ENV only;
callers that hold a Settings instance should prefer its ENV value so tests can
override it without touching the process environment.
"""
import os
from functools import lru_cache


@lru_cache(maxsize=1)
def get_env_name() -> str:
    """
    Get the current environment name from ENV variable.

    Returns:
        Environment name (lowercase): 'local', 'dev', 'staging', 'prod', etc.
        Defaults to 'dev' if not set.
    """
    return os.getenv("ENV", "dev").lower()


def is_local_name(env: str) -> bool:
    return env.lower() in {"local", "dev", "test"}


@lru_cache(maxsize=1)
def is_local_env() -> bool:
    """
    Check if running in local environment.

    Returns:
        True if ENV is 'local', 'dev' or 'test', False otherwise.
    """
    return is_local_name(get_env_name())


@lru_cache(maxsize=1)
def is_production_env() -> bool:
    """Check if running in production environment ('prod' or 'production')."""
    return get_env_name() in {"prod", "production"}
