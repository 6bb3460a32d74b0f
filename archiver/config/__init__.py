"""Configuration for the archiver."""

from archiver.config.archiver_config import (
    ArchiverConfig,
    DatabaseConfig,
    RetryConfig,
    S3Config,
    load_config,
)

__all__ = [
    "ArchiverConfig",
    "DatabaseConfig",
    "RetryConfig",
    "S3Config",
    "load_config",
]
