"""Configuration and logging setup for the package repository engine."""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path


def setup_logging(level: str | None = None) -> None:
    """Set up process-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL or INFO.
    """
    log_level = level or os.getenv(ENV_LOG_LEVEL, "INFO")

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Set boto3 logging to WARNING to reduce noise
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_env_var(name: str, default: str | None = None, required: bool = False) -> str:
    """Get environment variable with optional default and validation.

    Args:
        name: Environment variable name
        default: Default value if not set
        required: Whether the variable is required

    Returns:
        Environment variable value

    Raises:
        ValueError: If required variable is not set
    """
    value = os.getenv(name, default)

    if required and not value:
        raise ValueError(f"Required environment variable {name} is not set")

    return value or ""


# Environment variable names
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_DATA_DIR = "PKGDEPOT_DATA_DIR"
ENV_CONFIG_DIR = "PKGDEPOT_CONFIG_DIR"
ENV_BASE_URL = "PKGDEPOT_BASE_URL"
ENV_STORAGE_BACKEND = "PKGDEPOT_STORAGE_BACKEND"
ENV_INDEX_BACKEND = "PKGDEPOT_INDEX_BACKEND"
ENV_S3_BUCKET = "S3_BUCKET_NAME"
ENV_S3_PREFIX = "PKGDEPOT_S3_PREFIX"
ENV_DYNAMODB_TABLE = "DYNAMODB_TABLE_NAME"
ENV_AWS_REGION = "AWS_REGION"
ENV_UPSTREAM_TIMEOUT = "PKGDEPOT_UPSTREAM_TIMEOUT"
ENV_UPSTREAM_RETRIES = "PKGDEPOT_UPSTREAM_RETRIES"

STORAGE_BACKENDS = ("filesystem", "s3")
INDEX_BACKENDS = ("memory", "dynamodb")


@dataclass
class DepotSettings:
    """Engine-wide settings.

    Attributes:
        data_dir: Root directory for filesystem byte storage
        config_dir: Directory holding one YAML file per repository
        base_url: URL prefix for canonical file and project URLs
        storage_backend: "filesystem" or "s3"
        index_backend: "memory" or "dynamodb"
        s3_bucket: Bucket for the s3 storage backend
        s3_prefix: Key prefix inside the bucket
        dynamodb_table: Table for the dynamodb index backend
        region: AWS region for both AWS backends
        upstream_timeout: Default upstream request timeout in seconds
        upstream_retries: Retry attempts for upstream requests
    """

    data_dir: Path
    config_dir: Path
    base_url: str = "/pypi"
    storage_backend: str = "filesystem"
    index_backend: str = "memory"
    s3_bucket: str = ""
    s3_prefix: str = ""
    dynamodb_table: str = ""
    region: str = "us-east-1"
    upstream_timeout: float = 30.0
    upstream_retries: int = 3

    @classmethod
    def from_env(cls) -> "DepotSettings":
        """Build settings from environment variables.

        Raises:
            ValueError: If a backend is unknown or its required variable is missing
        """
        data_dir = Path(get_env_var(ENV_DATA_DIR, "./data"))
        config_dir = Path(get_env_var(ENV_CONFIG_DIR, str(data_dir / "config")))

        storage_backend = get_env_var(ENV_STORAGE_BACKEND, "filesystem").lower()
        if storage_backend not in STORAGE_BACKENDS:
            raise ValueError(f"Unknown storage backend: {storage_backend}")

        index_backend = get_env_var(ENV_INDEX_BACKEND, "memory").lower()
        if index_backend not in INDEX_BACKENDS:
            raise ValueError(f"Unknown index backend: {index_backend}")

        return cls(
            data_dir=data_dir,
            config_dir=config_dir,
            base_url=get_env_var(ENV_BASE_URL, "/pypi").rstrip("/"),
            storage_backend=storage_backend,
            index_backend=index_backend,
            s3_bucket=get_env_var(ENV_S3_BUCKET, required=storage_backend == "s3"),
            s3_prefix=get_env_var(ENV_S3_PREFIX, ""),
            dynamodb_table=get_env_var(
                ENV_DYNAMODB_TABLE, required=index_backend == "dynamodb"
            ),
            region=get_env_var(ENV_AWS_REGION, "us-east-1"),
            upstream_timeout=float(get_env_var(ENV_UPSTREAM_TIMEOUT, "30")),
            upstream_retries=int(get_env_var(ENV_UPSTREAM_RETRIES, "3")),
        )
