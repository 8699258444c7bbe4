"""Configuration module for the relay service.

Loads and validates relay settings from environment variables or .env file.
"""

from relay_service.config.settings import RelayConfig

__all__ = ["RelayConfig", "settings"]

# Global settings instance
settings = RelayConfig()
