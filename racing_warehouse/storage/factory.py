"""Build the configured ``BlobStore``."""

from __future__ import annotations

import logging

from racing_warehouse.config import StorageConfig
from racing_warehouse.storage.blob_store import BlobStore, LocalBlobStore

logger = logging.getLogger(__name__)


def build_blob_store(config: StorageConfig) -> BlobStore:
    """Return a blob store for ``config.backend``.

    Raises:
        ValueError: If the S3 backend is selected without a bucket.
    """
    if config.backend == "s3":
        if not config.bucket:
            raise ValueError("storage.bucket is required when storage.backend = 's3'.")
        from racing_warehouse.storage.s3_store import S3BlobStore, create_s3_client

        logger.info("Using S3 blob store: bucket=%s", config.bucket)
        return S3BlobStore(config.bucket, create_s3_client(config))

    logger.info("Using local blob store: root=%s", config.root_dir)
    return LocalBlobStore(config.root_dir)
