"""
Blob storage layer: object naming conventions and blob store backends.

Submodules:
  naming      shard / master / cleaned object names (must stay bit-for-bit stable)
  blob_store  ``BlobStore`` contract and the filesystem-backed ``LocalBlobStore``
  s3_store    ``S3BlobStore`` backed by boto3
  factory     ``build_blob_store(config)`` backend selection
"""
