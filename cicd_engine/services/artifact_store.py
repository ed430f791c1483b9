"""
Artifact Store
==============
Narrow storage interface consumed by the package and deploy stages:

    put(artifact_bytes, key) → storage_location
    get(storage_location)    → artifact_bytes

Backends:
    LocalArtifactStore — files under a root directory, ``file://`` locations
    S3ArtifactStore    — boto3, ``s3://bucket/key`` locations

The storage internals are not the engine's concern; both backends are thin
adapters. Blocking calls run through ``asyncio.to_thread`` in the callers.
"""
import hashlib
import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class ArtifactStoreError(Exception):
    """Storage backend failed to read or write an artifact."""


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactStore:
    scheme = ""

    def put(self, artifact_bytes: bytes, key: str) -> str:
        raise NotImplementedError

    def get(self, storage_location: str) -> bytes:
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    scheme = "file"

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _path_for(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root, key.lstrip("/")))
        if not path.startswith(self.root + os.sep):
            raise ArtifactStoreError(f"key escapes artifact root: {key}")
        return path

    def put(self, artifact_bytes: bytes, key: str) -> str:
        path = self._path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(artifact_bytes)
        logger.info("Stored artifact %s (%d bytes)", path, len(artifact_bytes))
        return f"file://{path}"

    def get(self, storage_location: str) -> bytes:
        parsed = urlparse(storage_location)
        if parsed.scheme != "file":
            raise ArtifactStoreError(f"not a local artifact location: {storage_location}")
        try:
            with open(parsed.path, "rb") as f:
                return f.read()
        except OSError as e:
            raise ArtifactStoreError(f"cannot read {storage_location}: {e}") from e


def parse_s3_location(location: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    parsed = urlparse(location)
    if parsed.scheme != "s3" or not parsed.netloc:
        raise ArtifactStoreError(f"not an s3 location: {location}")
    return parsed.netloc, parsed.path.lstrip("/")


class S3ArtifactStore(ArtifactStore):
    scheme = "s3"

    def __init__(self, bucket: str, prefix: str = "artifacts", region: Optional[str] = None, client=None) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client or boto3.client(
            "s3", region_name=region,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )

    def put(self, artifact_bytes: bytes, key: str) -> str:
        full_key = f"{self.prefix}/{key.lstrip('/')}" if self.prefix else key.lstrip("/")
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=full_key,
                Body=artifact_bytes,
                Metadata={"sha256": sha256_hex(artifact_bytes)},
            )
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"S3 put failed for {full_key}: {e}") from e
        logger.info("Stored artifact s3://%s/%s (%d bytes)", self.bucket, full_key, len(artifact_bytes))
        return f"s3://{self.bucket}/{full_key}"

    def get(self, storage_location: str) -> bytes:
        bucket, key = parse_s3_location(storage_location)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"S3 get failed for {storage_location}: {e}") from e


def create_artifact_store(kind: str, root: str = "artifacts", bucket: Optional[str] = None,
                          prefix: str = "artifacts", region: Optional[str] = None) -> ArtifactStore:
    if kind == "s3":
        if not bucket:
            raise ValueError("artifact_store.bucket is required for the s3 backend")
        return S3ArtifactStore(bucket=bucket, prefix=prefix, region=region)
    return LocalArtifactStore(root)
