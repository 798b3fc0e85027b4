from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import ClientError, HTTPClientError, NoCredentialsError
from botocore.exceptions import ConnectionError as BotoConnectionError

from common.errors import (
    AuthenticationRejected,
    ContainerNotFound,
    NetworkUnreachable,
    RateLimited,
    SyncError,
)
from common.remote import DEFAULT_DESCRIPTION


_AUTH_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "403",
}
_THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "503"}
_SERVER_CODES = {"InternalError", "ServiceUnavailable", "500"}

logger = logging.getLogger(__name__)


class S3BlobError(SyncError):
    """S3 reported an error that maps to no other sync error kind."""

    user_message = "Unexpected response from S3."


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


def _translate(e: ClientError, obj: S3ObjectRef) -> SyncError:
    code = str(e.response.get("Error", {}).get("Code"))
    where = f"s3://{obj.bucket}/{obj.key}"
    if code in ("NoSuchBucket",):
        return ContainerNotFound(f"Bucket {obj.bucket} does not exist")
    if code in _AUTH_CODES:
        return AuthenticationRejected(f"{code} for {where}")
    if code in _THROTTLE_CODES:
        return RateLimited(f"{code} for {where}")
    if code in _SERVER_CODES:
        return NetworkUnreachable(f"{code} for {where}")
    return S3BlobError(f"{code} for {where}")


class S3BlobClient:
    """
    Remote blob client keeping the synced document as one S3 object.

    Usage
    - The container id is the bucket; the file name is the object key
      (optionally under `key_prefix`).
    - `fetch` returns None when the object does not exist.
    - AWS credentials come from boto3's usual chain; the sync credential passed
      to `fetch`/`put` is not used for S3 auth (it still keys payload encryption).
    - boto3 is blocking, so each call runs in a worker thread.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        region_name: Optional[str] = None,
        key_prefix: str = "",
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._prefix = key_prefix.strip("/")

    def _ref(self, container_id: str, file_name: str) -> S3ObjectRef:
        if not container_id:
            raise ValueError("container_id (bucket) is required")
        key = f"{self._prefix}/{file_name}" if self._prefix else file_name
        return S3ObjectRef(bucket=container_id, key=key)

    # -------- Core operations --------
    async def fetch(self, container_id: str, credential: str, file_name: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, self._ref(container_id, file_name))

    async def put(
        self,
        container_id: str,
        credential: str,
        file_name: str,
        content: str,
        description: str = DEFAULT_DESCRIPTION,
    ) -> None:
        await asyncio.to_thread(self._write, self._ref(container_id, file_name), content, description)

    def _read(self, obj: S3ObjectRef) -> Optional[str]:
        try:
            resp = self._s3.get_object(Bucket=obj.bucket, Key=obj.key)
            body = resp["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                logger.info("No object at s3://%s/%s yet", obj.bucket, obj.key)
                return None
            raise _translate(e, obj) from e
        except NoCredentialsError as e:
            raise AuthenticationRejected("No AWS credentials available") from e
        except (BotoConnectionError, HTTPClientError) as e:
            raise NetworkUnreachable(f"Could not reach S3: {e}") from e

        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise S3BlobError(f"s3://{obj.bucket}/{obj.key} is not UTF-8 text") from ex

    def _write(self, obj: S3ObjectRef, content: str, description: str) -> None:
        try:
            self._s3.put_object(
                Bucket=obj.bucket,
                Key=obj.key,
                Body=content.encode("utf-8"),
                ContentType="application/json",
                Metadata={"description": description},
            )
        except ClientError as e:
            raise _translate(e, obj) from e
        except NoCredentialsError as e:
            raise AuthenticationRejected("No AWS credentials available") from e
        except (BotoConnectionError, HTTPClientError) as e:
            raise NetworkUnreachable(f"Could not reach S3: {e}") from e
        logger.info("Uploaded s3://%s/%s (%d chars)", obj.bucket, obj.key, len(content))


__all__ = ["S3BlobClient", "S3BlobError"]
