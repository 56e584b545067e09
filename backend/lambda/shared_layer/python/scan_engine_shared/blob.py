"""scan_engine_shared.blob — S3 storage for worker outputs and merged documents."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class S3BlobStore:
    def __init__(self, s3):
        if s3 is None:
            raise ValueError("s3 client is required")
        self._s3 = s3

    def put_json(self, bucket: str, key: str, document: Any) -> None:
        self._s3.put_object(
            Bucket=bucket,
            Key=key,
            Body=json.dumps(document, default=str).encode("utf-8"),
            ContentType="application/json",
        )

    def get_json(self, bucket: str, key: str) -> Optional[Any]:
        """Return the decoded document, or None when the object does not exist."""
        try:
            resp = self._s3.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise
        return json.loads(resp["Body"].read().decode("utf-8"))
