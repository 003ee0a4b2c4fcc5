# adaptive_dread/config.py

"""
Centralized configuration for the narrative control loop.
Uses environment variables with sensible defaults.
"""

import os
import logging
from typing import Dict, Any, Optional


class Config:
    """Configuration management driven by environment variables."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        # State store
        self.STATE_UPDATE_INTERVAL = float(os.getenv("DREAD_STATE_UPDATE_INTERVAL", "0.5"))
        self.UNDO_DEPTH = int(os.getenv("DREAD_UNDO_DEPTH", "10"))
        self.TENSION_DECAY_RATE = float(os.getenv("DREAD_TENSION_DECAY_RATE", "0.05"))
        self.TENSION_SMOOTHING = float(os.getenv("DREAD_TENSION_SMOOTHING", "0.1"))
        self.EVENT_QUIET_PERIOD = float(os.getenv("DREAD_EVENT_QUIET_PERIOD", "30"))

        # Metric & adaptation engine
        self.FEEDBACK_INTERVAL = float(os.getenv("DREAD_FEEDBACK_INTERVAL", "5"))
        self.IMMEDIATE_INTENSITY = float(os.getenv("DREAD_IMMEDIATE_INTENSITY", "0.8"))
        self.ADJUSTMENT_LOG_SIZE = int(os.getenv("DREAD_ADJUSTMENT_LOG_SIZE", "100"))

        # Intent scheduler
        self.MIN_INTENT_INTERVAL = float(os.getenv("DREAD_MIN_INTENT_INTERVAL", "15"))
        self.INTENT_POLL_INTERVAL = float(os.getenv("DREAD_INTENT_POLL_INTERVAL", "1"))
        self.GENERATION_TIMEOUT = float(os.getenv("DREAD_GENERATION_TIMEOUT", "30"))
        self.MAX_PENDING_INTENTS = int(os.getenv("DREAD_MAX_PENDING_INTENTS", "16"))
        self.MIN_INTENT_PRIORITY = float(os.getenv("DREAD_MIN_INTENT_PRIORITY", "0.0"))
        self.TIMELINE_SIZE = int(os.getenv("DREAD_TIMELINE_SIZE", "200"))

        # Generation backend
        self.OPENAI_MODEL = os.getenv("DREAD_OPENAI_MODEL", "gpt-4.1-nano")
        self.OPENAI_MAX_TOKENS = int(os.getenv("DREAD_OPENAI_MAX_TOKENS", "800"))
        self.BREAKER_FAILURE_THRESHOLD = int(os.getenv("DREAD_BREAKER_FAILURE_THRESHOLD", "5"))
        self.BREAKER_RESET_TIMEOUT = int(os.getenv("DREAD_BREAKER_RESET_TIMEOUT", "60"))

        # Persistence
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.SNAPSHOT_KEY = os.getenv("DREAD_SNAPSHOT_KEY", "adaptive_dread:state")

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def configure_logging(self):
        """Configure logging based on settings."""
        log_levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL
        }

        log_level = log_levels.get(self.LOG_LEVEL.upper(), logging.INFO)

        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {k: v for k, v in self.__dict__.items() if not k.startswith('_')}

    def __str__(self) -> str:
        return str(self.to_dict())

    def get(self, key, default=None):
        """Get configuration value with optional default."""
        return getattr(self, key, default)


_CONFIG: Optional[Config] = None


def get_config() -> Config:
    """Get the process-wide configuration instance."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = Config()
    return _CONFIG


def reload_config() -> Config:
    """Re-read the environment; used by hosts and tests that change variables."""
    global _CONFIG
    _CONFIG = Config()
    return _CONFIG


def get(key, default=None):
    """Get configuration value with fallback."""
    return get_config().get(key, default)
