"""docproc_shared.aws_clients — AWS service client factories.

`make_ddb_client` builds a DynamoDB client from the APP_* / DYNAMODB_* env
settings (or explicit overrides). The `_get_*` functions cache one client per
container so warm invocations reuse the connection pool; `_reset_clients`
drops them (tests, or a Lambda that wants a fresh client after a config change).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Region / credential settings (overridable via env)
# ---------------------------------------------------------------------------

APP_REGION: str = os.environ.get("APP_REGION", os.environ.get("DYNAMODB_REGION", "us-east-1"))
APP_ACCESS_KEY_ID: str = os.environ.get("APP_ACCESS_KEY_ID", "")
APP_SECRET_ACCESS_KEY: str = os.environ.get("APP_SECRET_ACCESS_KEY", "")
DYNAMODB_LOCAL_ENDPOINT: str = os.environ.get("DYNAMODB_LOCAL_ENDPOINT", "")
SECRETS_REGION: str = os.environ.get("SECRETS_REGION", APP_REGION)

_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})

# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------

_ddb = None
_secretsmanager = None


def ddb_client_kwargs(
    region: Optional[str] = None,
    endpoint_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Resolve boto3.client keyword arguments for DynamoDB.

    A local endpoint always uses the dummy `local` credentials DynamoDB Local
    expects; otherwise explicit APP_* credentials are passed only when both
    halves are set, leaving the default provider chain (Lambda role) in charge.
    """
    endpoint = endpoint_url if endpoint_url is not None else DYNAMODB_LOCAL_ENDPOINT
    if endpoint:
        return {
            "region_name": region or "local",
            "endpoint_url": endpoint,
            "aws_access_key_id": "local",
            "aws_secret_access_key": "local",
            "config": _RETRY_CONFIG,
        }

    kwargs: Dict[str, Any] = {
        "region_name": region or APP_REGION,
        "config": _RETRY_CONFIG,
    }
    if APP_ACCESS_KEY_ID and APP_SECRET_ACCESS_KEY:
        kwargs["aws_access_key_id"] = APP_ACCESS_KEY_ID
        kwargs["aws_secret_access_key"] = APP_SECRET_ACCESS_KEY
    return kwargs


def make_ddb_client(region: Optional[str] = None, endpoint_url: Optional[str] = None):
    """Construct a new low-level DynamoDB client."""
    kwargs = ddb_client_kwargs(region, endpoint_url)
    logger.info(
        "creating dynamodb client region=%s endpoint=%s",
        kwargs.get("region_name"),
        kwargs.get("endpoint_url") or "aws",
    )
    return boto3.client("dynamodb", **kwargs)


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the cached DynamoDB client."""
    global _ddb
    if _ddb is None:
        _ddb = make_ddb_client(region)
    return _ddb


def _get_secretsmanager(region: Optional[str] = None):
    """Get (or create) the cached Secrets Manager client."""
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=region or SECRETS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _secretsmanager


def _reset_clients() -> None:
    """Drop cached clients so the next call builds fresh ones."""
    global _ddb, _secretsmanager
    _ddb = None
    _secretsmanager = None
