"""Version information for the recording engine."""

APP_VERSION = "1.4.0"

__all__ = ["APP_VERSION"]
