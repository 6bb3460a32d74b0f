"""Configuration management for the archiver.

Provides typed configuration classes that load values from environment
variables, an optional YAML file, and explicit overrides, in that order of
increasing precedence.
"""

import os
import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from sqlalchemy.engine import URL

from archiver.errors import ConfigurationError
from archiver.extraction.partition_cache import CacheScope

DEFAULT_CHUNK_SIZE = 10_000
MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 1_000_000

MAX_WORKERS = 1000

MULTIPART_THRESHOLD = 100 * 1024 * 1024
DEFAULT_PART_SIZE = 5 * 1024 * 1024
MIN_PART_SIZE = 5 * 1024 * 1024

OUTPUT_DURATIONS = ("hourly", "daily", "weekly", "monthly", "yearly")
OUTPUT_FORMATS = ("jsonl", "csv", "parquet")
COMPRESSIONS = ("zstd", "lz4", "gzip", "none")

DEFAULT_CACHE_DIR = Path.home() / ".data-archiver" / "cache"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_REGION_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be an integer, got '{value}'") from exc


def is_valid_identifier(name: str) -> bool:
    """Return True if *name* is safe to interpolate as a PostgreSQL identifier."""
    return bool(name) and len(name) <= 63 and bool(_IDENTIFIER_RE.match(name))


@dataclass
class DatabaseConfig:
    """PostgreSQL connection configuration."""

    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    name: str = ""
    sslmode: str = ""
    statement_timeout: int = 300

    def __post_init__(self):
        self.host = self.host or os.environ.get("POSTGRES_HOST", "localhost")
        self.port = self.port or _env_int("POSTGRES_PORT", 5432)
        self.user = self.user or os.environ.get("POSTGRES_USER", "")
        self.password = self.password or os.environ.get("POSTGRES_PASSWORD", "")
        self.name = self.name or os.environ.get("POSTGRES_DB", "")
        self.sslmode = self.sslmode or os.environ.get("POSTGRES_SSLMODE", "disable")

    @property
    def connection_string(self) -> str:
        url = URL.create(
            "postgresql+psycopg2",
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=int(self.port),
            database=self.name,
            query={"sslmode": self.sslmode},
        )
        return url.render_as_string(hide_password=False)


@dataclass
class S3Config:
    """S3-compatible object storage configuration."""

    endpoint_url: str = ""
    bucket: str = ""
    access_key: str = ""
    secret_key: str = ""
    region: str = ""
    path_template: str = ""
    multipart_threshold: int = MULTIPART_THRESHOLD
    part_size: int = DEFAULT_PART_SIZE

    def __post_init__(self):
        self.endpoint_url = self.endpoint_url or os.environ.get("AWS_ENDPOINT_URL", "")
        self.bucket = self.bucket or os.environ.get("ARCHIVER_S3_BUCKET", "")
        self.access_key = self.access_key or os.environ.get("AWS_ACCESS_KEY_ID", "")
        self.secret_key = self.secret_key or os.environ.get("AWS_SECRET_ACCESS_KEY", "")
        self.region = self.region or os.environ.get("AWS_REGION", "auto")
        self.path_template = self.path_template or os.environ.get("ARCHIVER_PATH_TEMPLATE", "")

    @property
    def output_path(self) -> str:
        """Canonical ``s3://bucket/template`` path used to namespace the cache."""
        bucket = self.bucket.strip()
        template = self.path_template.strip().lstrip("/")
        if not bucket:
            return template
        if "://" in bucket:
            bucket = bucket.rstrip("/")
            return f"{bucket}/{template}" if template else bucket
        return f"s3://{bucket}/{template}" if template else f"s3://{bucket}"


@dataclass
class RetryConfig:
    """Backoff settings for the retry orchestrator."""

    max_attempts: int = 3
    initial_delay: float = 5.0
    max_delay: float = 60.0
    multiplier: float = 2.0


@dataclass
class ArchiverConfig:
    """Top-level archiver configuration combining all sub-configs."""

    table: str = ""
    schema: str = "public"
    start_date: str = ""
    end_date: str = ""
    date_column: str = ""
    output_duration: str = "daily"
    output_format: str = "jsonl"
    compression: str = "zstd"
    compression_level: int = 0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    workers: int = 4
    dry_run: bool = False
    skip_count: bool = False
    include_non_partition_tables: bool = False
    max_upload_verifications: int = 2
    cache_dir: str = ""
    temp_dir: Optional[str] = None
    log_level: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    s3: S3Config = field(default_factory=S3Config)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        self.cache_dir = self.cache_dir or os.environ.get("ARCHIVER_CACHE_DIR", str(DEFAULT_CACHE_DIR))
        self.log_level = self.log_level or os.environ.get("ARCHIVER_LOG_LEVEL", "INFO")

    @property
    def start(self) -> Optional[date]:
        return _parse_date(self.start_date, "start date")

    @property
    def end(self) -> Optional[date]:
        return _parse_date(self.end_date, "end date")

    def cache_scope(self, command: str = "archive") -> CacheScope:
        return CacheScope(
            command=command,
            table=self.table or self.database.name,
            output_path=self.s3.output_path,
        )

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: Describing the first invalid setting.
        """
        if not self.database.user:
            raise ConfigurationError("database user is required")
        if not self.database.name:
            raise ConfigurationError("database name is required")
        if not 1 <= self.database.port <= 65535:
            raise ConfigurationError(f"database port must be between 1 and 65535, got {self.database.port}")
        if self.database.statement_timeout < 0:
            raise ConfigurationError("database statement timeout must be >= 0")

        if not self.s3.bucket:
            raise ConfigurationError("S3 bucket is required")
        if self.s3.region and self.s3.region != "auto":
            if len(self.s3.region) > 50 or not _REGION_RE.match(self.s3.region):
                raise ConfigurationError(f"S3 region is invalid: '{self.s3.region}'")
        if not self.s3.path_template:
            raise ConfigurationError("path template is required")
        if "{table}" not in self.s3.path_template:
            raise ConfigurationError(f"path template must contain {{table}} placeholder: '{self.s3.path_template}'")
        if self.s3.part_size < MIN_PART_SIZE:
            raise ConfigurationError(f"S3 part size must be at least {MIN_PART_SIZE} bytes")

        if not self.table:
            raise ConfigurationError("table name is required")
        if not is_valid_identifier(self.table):
            raise ConfigurationError(
                f"table name is invalid: '{self.table}' (1-63 letters, digits or underscores, "
                "not starting with a digit)"
            )
        if not is_valid_identifier(self.schema):
            raise ConfigurationError(f"schema name is invalid: '{self.schema}'")
        if self.date_column and not is_valid_identifier(self.date_column):
            raise ConfigurationError(f"date column is invalid: '{self.date_column}'")

        start, end = self.start, self.end
        if start and end and start > end:
            raise ConfigurationError(f"start date {start} is after end date {end}")

        if not MIN_CHUNK_SIZE <= self.chunk_size <= MAX_CHUNK_SIZE:
            raise ConfigurationError(
                f"chunk size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}, got {self.chunk_size}"
            )
        if self.output_duration not in OUTPUT_DURATIONS:
            raise ConfigurationError(
                f"output duration must be one of: {', '.join(OUTPUT_DURATIONS)}; got '{self.output_duration}'"
            )
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigurationError(
                f"output format must be one of: {', '.join(OUTPUT_FORMATS)}; got '{self.output_format}'"
            )
        if self.compression not in COMPRESSIONS:
            raise ConfigurationError(
                f"compression must be one of: {', '.join(COMPRESSIONS)}; got '{self.compression}'"
            )
        if self.compression_level < 0:
            raise ConfigurationError(f"compression level must be >= 0, got {self.compression_level}")
        if not 1 <= self.workers <= MAX_WORKERS:
            raise ConfigurationError(f"workers must be between 1 and {MAX_WORKERS}, got {self.workers}")

        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry max attempts must be at least 1")
        if self.retry.initial_delay < 0 or self.retry.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.retry.multiplier < 1:
            raise ConfigurationError("retry multiplier must be >= 1")
        if self.max_upload_verifications < 1:
            raise ConfigurationError("max upload verifications must be at least 1")


def _parse_date(value: str, label: str) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ConfigurationError(f"invalid {label} format '{value}', expected YYYY-MM-DD") from exc


def _build_section(cls, values: Optional[Dict[str, Any]]):
    values = values or {}
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    return cls(**values)


def load_config(path: Optional[str] = None, **overrides) -> ArchiverConfig:
    """Build and validate an ``ArchiverConfig``.

    Values come from environment variables, then the YAML file at *path*
    (with nested ``db``, ``s3`` and ``retry`` sections), then *overrides*.

    Args:
        path: Optional YAML configuration file.
        **overrides: Top-level ``ArchiverConfig`` fields to force.

    Returns:
        Validated ArchiverConfig instance.

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid.
    """
    raw: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Failed to load config file '{path}': {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file '{path}' must contain a mapping")

    raw = dict(raw)
    database = _build_section(DatabaseConfig, raw.pop("db", None))
    s3 = _build_section(S3Config, raw.pop("s3", None))
    retry = _build_section(RetryConfig, raw.pop("retry", None))
    raw.update(overrides)

    known = {f.name for f in fields(ArchiverConfig)} - {"database", "s3", "retry"}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")

    config = ArchiverConfig(database=database, s3=s3, retry=retry, **raw)
    config.validate()
    return config
