"""
Blob storage for ticket PDFs.

STORAGE_DRIVER picks the backend:
- local: files under STORAGE_LOCAL_PATH
- s3: an S3-compatible bucket via boto3
"""

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings
from ..exceptions import BlobNotFoundError, UpstreamError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class BlobStore(ABC):
    """Keyed byte storage. Keys are relative paths like 'attachments/<booking>/<file>.pdf'."""

    @abstractmethod
    def put(self, path: str, data: bytes, mime_type: str = "application/octet-stream") -> int:
        """Store bytes, return the stored size."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Raises BlobNotFoundError when missing."""

    @abstractmethod
    def delete(self, path: str) -> bool:
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass


class LocalBlobStore(BlobStore):
    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        # Keys must stay inside the storage root
        if self.root not in full.parents:
            raise BlobNotFoundError(path)
        return full

    def put(self, path: str, data: bytes, mime_type: str = "application/octet-stream") -> int:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)
        return len(data)

    def get(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.is_file():
            raise BlobNotFoundError(path)
        return full.read_bytes()

    def delete(self, path: str) -> bool:
        try:
            full = self._resolve(path)
        except BlobNotFoundError:
            return False
        if not full.is_file():
            return False
        os.remove(full)
        return True

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except BlobNotFoundError:
            return False


class S3BlobStore(BlobStore):
    def __init__(self, settings: Settings, client=None):
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET is required for the s3 storage driver")
        self.bucket = settings.s3_bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url or None,
            aws_access_key_id=settings.s3_access_key_id or None,
            aws_secret_access_key=settings.s3_secret_access_key or None,
            region_name=settings.s3_region,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        logger.info(f"[STORAGE] S3 bucket: {self.bucket}")

    def put(self, path: str, data: bytes, mime_type: str = "application/octet-stream") -> int:
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=mime_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[STORAGE] Upload failed for {path}: {e}")
            raise UpstreamError(f"Failed to store {path}: {e}")
        return len(data)

    def get(self, path: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                raise BlobNotFoundError(path)
            raise UpstreamError(f"Failed to read {path}: {e}")
        except BotoCoreError as e:
            raise UpstreamError(f"Failed to read {path}: {e}")
        return response["Body"].read()

    def delete(self, path: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[STORAGE] Delete failed for {path}: {e}")
            return False
        return True

    def exists(self, path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") not in ("404", "NoSuchKey", "NotFound"):
                logger.error(f"[STORAGE] Existence check failed for {path}: {e}")
            return False
        return True


_store: Optional[BlobStore] = None


def get_blob_store(settings: Settings) -> BlobStore:
    """Process-wide store for the configured driver."""
    global _store
    if _store is None:
        if settings.storage_driver == "s3":
            _store = S3BlobStore(settings)
        else:
            _store = LocalBlobStore(settings.storage_local_path)
    return _store
