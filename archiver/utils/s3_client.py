"""S3-compatible client utilities for the archiver."""

import logging
import threading
from typing import Dict, Optional

import boto3
from botocore.config import Config

log = logging.getLogger(__name__)

_clients: Dict[tuple, object] = {}
_clients_lock = threading.Lock()


def get_s3_client(
    endpoint_url: Optional[str] = None,
    access_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    region: Optional[str] = None,
    max_pool_connections: int = 10,
):
    """Create or return a cached boto3 S3 client.

    Clients are cached per endpoint and credentials; boto3 clients are safe
    to share between worker threads.

    Args:
        endpoint_url: Custom endpoint for S3-compatible stores (MinIO, R2...).
        access_key: Access key id; boto3's default chain is used when empty.
        secret_key: Secret access key.
        region: Region name; ``auto`` is passed through for stores that
            accept it.
        max_pool_connections: HTTP connection pool size.

    Returns:
        A boto3 S3 client.
    """
    cache_key = (endpoint_url, access_key, secret_key, region, max_pool_connections)
    with _clients_lock:
        client = _clients.get(cache_key)
        if client is not None:
            return client

        config = Config(
            retries={"max_attempts": 3, "mode": "standard"},
            max_pool_connections=max_pool_connections,
            s3={"addressing_style": "path"} if endpoint_url else None,
        )

        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region or None,
            config=config,
        )
        _clients[cache_key] = client

    log.info("S3 client created (endpoint=%s, region=%s)", endpoint_url or "default", region)
    return client


def client_from_config(s3_config, workers: int = 4):
    """Build the S3 client for an ``S3Config``."""
    return get_s3_client(
        endpoint_url=s3_config.endpoint_url,
        access_key=s3_config.access_key,
        secret_key=s3_config.secret_key,
        region=s3_config.region,
        max_pool_connections=max(10, workers * 2),
    )
