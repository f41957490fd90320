"""Object storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
"""

import asyncio
import io
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from transcoder.core.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "StorageConfig":
        config = config or settings
        return cls(
            backend=config.STORAGE_BACKEND,
            bucket=config.STORAGE_BUCKET,
            region=config.STORAGE_REGION,
            access_key=config.STORAGE_ACCESS_KEY,
            secret_key=config.STORAGE_SECRET_KEY,
            endpoint_url=config.STORAGE_ENDPOINT_URL,
            use_ssl=config.STORAGE_USE_SSL,
            local_path=config.LOCAL_STORAGE_PATH,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file to storage."""
        pass

    @abstractmethod
    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to storage."""
        pass

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download a file from storage."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a file from storage."""
        pass

    @abstractmethod
    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Get a time-limited URL for a file."""
        pass

    @abstractmethod
    def ensure_bucket(self) -> None:
        """Create the bucket or root directory if it does not exist yet."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend for development."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(file_path, dest_path)

            return StorageResult(
                success=True,
                key=key,
                url=str(dest_path.absolute()),
                file_size=dest_path.stat().st_size,
            )
        except OSError as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(dest_path, "wb") as f:
                shutil.copyfileobj(fileobj, f)

            return StorageResult(
                success=True,
                key=key,
                url=str(dest_path.absolute()),
                file_size=dest_path.stat().st_size,
            )
        except OSError as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        src_path = self._get_full_path(key)
        if not src_path.exists():
            return False
        try:
            shutil.copy2(src_path, destination)
            return True
        except OSError as e:
            logger.warning(f"Local download of {key} failed: {e}")
            return False

    def delete(self, key: str) -> bool:
        file_path = self._get_full_path(key)
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Local delete of {key} failed: {e}")
            return False

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        return f"file://{self._get_full_path(key).absolute()}"

    def ensure_bucket(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig, client: Any = None):
        self.config = config
        self._client = client

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
            }

            if self.config.access_key and self.config.secret_key:
                client_kwargs["aws_access_key_id"] = self.config.access_key
                client_kwargs["aws_secret_access_key"] = self.config.secret_key

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _location(self, key: str) -> str:
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}/{key}"
        return f"s3://{self.config.bucket}/{key}"

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file to S3/MinIO."""
        try:
            file_size = os.path.getsize(file_path)
            with open(file_path, "rb") as f:
                response = self._get_client().put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type,
                )

            return StorageResult(
                success=True,
                key=key,
                url=self._location(key),
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to S3/MinIO."""
        try:
            fileobj.seek(0, 2)
            file_size = fileobj.tell()
            fileobj.seek(0)

            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=fileobj,
                ContentType=content_type,
            )

            return StorageResult(
                success=True,
                key=key,
                url=self._location(key),
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        try:
            self._get_client().download_file(self.config.bucket, key, destination)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"S3 download of {key} failed: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"S3 delete of {key} failed: {e}")
            return False

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Get a presigned download URL."""
        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def ensure_bucket(self) -> None:
        """Create the bucket, treating an already-owned bucket as success."""
        client = self._get_client()
        kwargs = {"Bucket": self.config.bucket}
        if self.config.region and self.config.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.config.region}

        try:
            client.create_bucket(**kwargs)
            logger.info(f"Created bucket {self.config.bucket}")
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists") or status == 409:
                logger.info(f"Bucket {self.config.bucket} already exists")
                return
            raise


def create_storage_backend(config: StorageConfig) -> StorageBackend:
    """Create the storage backend named in the configuration."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class StorageService:
    """Async wrapper around a storage backend.

    Backend calls block on network or disk, so each one runs in a worker
    thread and never stalls the event loop driving the worker slots.
    """

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    async def put(
        self,
        key: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload in-memory content to storage."""
        return await asyncio.to_thread(
            self._backend.upload_fileobj, io.BytesIO(content), key, content_type
        )

    async def put_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file from local disk to storage."""
        return await asyncio.to_thread(self._backend.upload, file_path, key, content_type)

    async def download(self, key: str, destination: str) -> bool:
        return await asyncio.to_thread(self._backend.download, key, destination)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._backend.delete, key)

    async def signed_url(self, key: str, expires_in: int = 3600) -> str:
        return await asyncio.to_thread(self._backend.get_url, key, expires_in)

    async def ensure_bucket(self) -> None:
        await asyncio.to_thread(self._backend.ensure_bucket)
