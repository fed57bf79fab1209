from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from typus.config import get_settings
from typus.utils.logging import get_logger
from typus.utils.text import safe_filename


logger = get_logger('storage')


class StorageError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ObjectStorage:
    """S3-compatible object storage for uploads and generated images.

    Works against AWS S3 or any S3 interoperable endpoint (GCS XML API,
    MinIO) through ``STORAGE_ENDPOINT_URL``.
    """

    def __init__(self, client: Any | None = None) -> None:
        settings = get_settings()
        self.bucket = settings.storage_bucket
        self.endpoint_url = settings.storage_endpoint_url or None
        self.public_base_url = settings.storage_public_base_url.rstrip('/')
        self._client = client
        if self._client is None and self.bucket:
            self._client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                region_name=settings.storage_region or None,
                aws_access_key_id=settings.storage_access_key_id or None,
                aws_secret_access_key=settings.storage_secret_access_key or None,
            )

    @property
    def enabled(self) -> bool:
        return bool(self.bucket and self._client is not None)

    def _require(self) -> Any:
        if not self.enabled:
            raise StorageError('storage_not_configured', 503)
        return self._client

    @staticmethod
    def unique_key(prefix: str, filename: str | None) -> str:
        return f"{prefix.strip('/')}/{uuid.uuid4().hex}_{safe_filename(filename)}"

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f'{self.public_base_url}/{key}'
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f'https://{self.bucket}.s3.amazonaws.com/{key}'

    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> str:
        client = self._require()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error('storage_upload_failed', key=key, error=str(exc))
            raise StorageError(f'upload failed: {exc}', 502) from exc
        logger.info('storage_uploaded', key=key, size=len(data))
        return self.public_url(key)

    async def presigned_url(self, key: str, expires: int = 3600) -> str:
        client = self._require()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=expires,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f'presign failed: {exc}', 502) from exc

    def key_from_url(self, url: str) -> Optional[str]:
        for base in (self.public_base_url, f"{(self.endpoint_url or '').rstrip('/')}/{self.bucket}",
                     f'https://{self.bucket}.s3.amazonaws.com'):
            if base and url.startswith(f'{base}/'):
                return url[len(base) + 1:]
        return None

    async def delete(self, key: str) -> None:
        client = self._require()
        try:
            await asyncio.to_thread(client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.warning('storage_delete_failed', key=key, error=str(exc))
            raise StorageError(f'delete failed: {exc}', 502) from exc
