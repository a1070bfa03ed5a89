"""
Feature Flags Configuration

Centralized feature flag management for the rank service.
All feature flags are loaded from environment variables.
"""
import os


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


class FeatureFlags:
    """
    Feature flags for the rank service, read once at import time.
    Tests monkeypatch attributes on the `feature_flags` instance.
    """

    # Bulk auto-promotion sweep (HTTP endpoint and CLI)
    FEATURE_AUTO_RANKUP: bool = get_bool_env('FEATURE_AUTO_RANKUP', True)

    # Discord bot promotion queue endpoints
    FEATURE_BOT_PROMOTIONS: bool = get_bool_env('FEATURE_BOT_PROMOTIONS', True)

    # Members may request a promotion for themselves
    FEATURE_SELF_PROMOTION_REQUESTS: bool = get_bool_env('FEATURE_SELF_PROMOTION_REQUESTS', True)

    # Rank catalog migration wizard
    FEATURE_RANK_MIGRATION: bool = get_bool_env('FEATURE_RANK_MIGRATION', True)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if not key.startswith('_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
