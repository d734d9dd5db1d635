"""
S3-backed blob store (boto3).

Writes are spooled to a temporary file and uploaded with ``upload_fileobj``
when the ``with`` block exits cleanly, so an S3 object only ever appears
fully written. Text reads stream the object body through a UTF-8 decoder;
binary reads hand out the body itself.
"""

from __future__ import annotations

import codecs
import logging
from contextlib import contextmanager
from tempfile import SpooledTemporaryFile
from typing import IO, Any, Iterator, Optional

from botocore.exceptions import BotoCoreError, ClientError

from racing_warehouse.config import StorageConfig
from racing_warehouse.errors import BlobStoreError
from racing_warehouse.storage.blob_store import BlobMetadata, BlobStore, filter_keys
from racing_warehouse.storage.naming import NDJSON_CONTENT_TYPE
from racing_warehouse.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_SPOOL_MAX_BYTES = 16 * 1024 * 1024


def create_s3_client(config: StorageConfig) -> Any:
    """Create a boto3 S3 client from storage settings.

    Args:
        config: Storage config with optional profile and region.

    Returns:
        Boto3 S3 client.
    """
    import boto3

    session_kwargs: dict[str, str] = {}
    if config.s3_profile:
        session_kwargs["profile_name"] = config.s3_profile
    if config.s3_region:
        session_kwargs["region_name"] = config.s3_region
    session = boto3.session.Session(**session_kwargs)
    return session.client("s3")


def _is_not_found(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES


class S3BlobStore(BlobStore):
    """Blob store over one S3 bucket.

    Attributes:
        bucket: Bucket name.
        client: Boto3 S3 client (injected in tests).
    """

    def __init__(self, bucket: str, client: Any) -> None:
        self.bucket = bucket
        self.client = client

    def list_keys(self, prefix: str, pattern: Optional[str] = None) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(
                f"Cannot list s3://{self.bucket}/{prefix}: {exc}"
            ) from exc
        return filter_keys(keys, prefix, pattern)

    @contextmanager
    def open_read(self, key: str, binary: bool = False) -> Iterator[IO[Any]]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Cannot read {self.uri_for(key)}: {exc}") from exc
        body = response["Body"]
        try:
            yield body if binary else codecs.getreader("utf-8")(body)
        finally:
            body.close()

    @contextmanager
    def open_write(
        self, key: str, content_type: str = NDJSON_CONTENT_TYPE, binary: bool = False
    ) -> Iterator[IO[Any]]:
        if self.exists(key):
            raise BlobStoreError(f"Blob '{key}' already exists; objects are write-once.")

        with SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES, mode="w+b") as spool:
            writer = spool if binary else codecs.getwriter("utf-8")(spool)
            yield writer
            writer.flush()
            spool.seek(0)
            try:
                self.client.upload_fileobj(
                    spool, self.bucket, key, ExtraArgs={"ContentType": content_type}
                )
            except (BotoCoreError, ClientError) as exc:
                raise BlobStoreError(f"Cannot upload {self.uri_for(key)}: {exc}") from exc

        logger.debug("Blob published: %s", self.uri_for(key))

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise BlobStoreError(f"Cannot stat {self.uri_for(key)}: {exc}") from exc
        return True

    def metadata(self, key: str) -> BlobMetadata:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise BlobStoreError(f"Cannot stat {self.uri_for(key)}: {exc}") from exc
        return BlobMetadata(
            key=key,
            size=int(head.get("ContentLength", 0)),
            created_at=ensure_utc(head["LastModified"]),
            content_type=head.get("ContentType"),
        )

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Cannot delete {self.uri_for(key)}: {exc}") from exc

    def uri_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def key_for_uri(self, uri: str) -> str:
        base = f"s3://{self.bucket}/"
        if not uri.startswith(base):
            raise BlobStoreError(f"URI '{uri}' is not in bucket '{self.bucket}'.")
        return uri[len(base):]
