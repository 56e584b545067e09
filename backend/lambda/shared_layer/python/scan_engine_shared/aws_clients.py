"""scan_engine_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. This avoids paying the boto3 client
construction cost on cold starts until the client is actually needed.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from scan_engine_shared import config

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_sqs = None
_s3 = None
_sns = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or config.REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_sqs(region: Optional[str] = None):
    """Get (or create) the SQS client singleton.

    The read timeout must outlast the long-poll wait, otherwise botocore
    abandons ReceiveMessage calls that are simply waiting for work.
    """
    global _sqs
    if _sqs is None:
        _sqs = boto3.client(
            "sqs",
            region_name=region or config.REGION,
            config=Config(
                retries={"max_attempts": 3, "mode": "standard"},
                read_timeout=max(60, config.POLL_WAIT_SECONDS + 10),
            ),
        )
    return _sqs


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or config.REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _s3


def _get_sns(region: Optional[str] = None):
    """Get (or create) the SNS client singleton."""
    global _sns
    if _sns is None:
        _sns = boto3.client(
            "sns",
            region_name=region or config.REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _sns
