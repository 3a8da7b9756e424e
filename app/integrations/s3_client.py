# app/integrations/s3_client.py
"""
Storage Reference Resolver.

Fetches raw upload bytes from S3 and maps every failure onto one of three
typed outcomes:

- StorageNotFound: the object never existed or was deleted (terminal)
- StorageAccessDenied: permission or configuration problem (terminal)
- StorageTransient: network/service fault, retried here with backoff
"""
from typing import Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from core.config import settings
from core.exceptions import StorageAccessDenied, StorageError, StorageNotFound, StorageTransient
from core.logger import logger
from schemas.request_models import StorageRef
from utils.retry import call_with_retry

NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}
ACCESS_DENIED_CODES = {
    "AccessDenied",
    "403",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "AllAccessDisabled",
    "AccountProblem",
    "ExpiredToken",
    "InvalidToken",
}
TRANSIENT_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
    "503",
    "500",
}


def classify_storage_error(error: Exception, ref: StorageRef) -> StorageError:
    """Translate a botocore failure into the storage error taxonomy."""
    location = f"s3://{ref.bucket}/{ref.key}"

    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        http_status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0

        if code in NOT_FOUND_CODES or http_status == 404:
            return StorageNotFound(f"Object {location} not found")
        if code in TRANSIENT_CODES or http_status >= 500:
            return StorageTransient(f"Storage service fault for {location}: {code or http_status}")
        if code in ACCESS_DENIED_CODES or http_status == 403:
            return StorageAccessDenied(f"Access denied to {location}: {code}")
        # remaining 4xx responses are request/configuration problems
        return StorageAccessDenied(f"Storage rejected request for {location}: {code or http_status}")

    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return StorageAccessDenied(f"No usable AWS credentials for {location}: {error}")

    # timeouts, connection resets, truncated bodies
    return StorageTransient(f"Storage fetch for {location} failed: {error}")


class StorageResolver:
    """Resolves a {bucket, key} reference to the raw payload bytes."""

    def __init__(self, s3_client=None, max_attempts: Optional[int] = None, backoff_base: Optional[float] = None):
        self._client = s3_client
        self.max_attempts = max_attempts or settings.STORAGE_MAX_ATTEMPTS
        self.backoff_base = settings.STORAGE_BACKOFF_BASE_SECS if backoff_base is None else backoff_base

    @property
    def client(self):
        if self._client is None:
            from core.aws_client import get_s3_client
            self._client = get_s3_client()
        return self._client

    def _fetch_once(self, ref: StorageRef) -> bytes:
        try:
            response = self.client.get_object(Bucket=ref.bucket, Key=ref.key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise classify_storage_error(e, ref) from e

    def fetch(self, ref: StorageRef) -> bytes:
        data = call_with_retry(
            lambda: self._fetch_once(ref),
            retry_on=(StorageTransient,),
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            description=f"S3 fetch s3://{ref.bucket}/{ref.key}",
        )
        logger.info(f"Fetched s3://{ref.bucket}/{ref.key} ({len(data)} bytes)")
        return data

    def check_bucket(self, bucket: str) -> None:
        """Used by the health endpoint."""
        self.client.head_bucket(Bucket=bucket)
