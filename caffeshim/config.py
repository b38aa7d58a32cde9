"""
config.py
~~~~~~~~~

Environment-driven settings.

Variables:
- LOG_LEVEL: root log level (default INFO)
- CAFFESHIM_ENV: 'production' silences third-party loggers
- CAFFESHIM_LOG_DIR: when set, the first command opens a log file there
- PORT: port for the API server (default 8000)
- CAFFESHIM_CORS_ORIGINS: allowed CORS origins (default '*')
"""

import os
from typing import Optional


class Settings:
    """Snapshot of the process environment."""

    def __init__(
        self,
        log_level: str = 'INFO',
        environment: str = 'development',
        log_dir: Optional[str] = None,
        port: int = 8000,
        cors_origins: str = '*'
    ):
        self.log_level = log_level.upper()
        self.environment = environment
        self.log_dir = log_dir
        self.port = port
        self.cors_origins = cors_origins

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from the current environment."""
        return cls(
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            environment=os.getenv('CAFFESHIM_ENV', 'development'),
            log_dir=os.getenv('CAFFESHIM_LOG_DIR') or None,
            port=int(os.getenv('PORT', '8000')),
            cors_origins=os.getenv('CAFFESHIM_CORS_ORIGINS', '*')
        )
