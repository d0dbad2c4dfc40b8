"""
S3-compatible blob storage for chat media, generated tracks and preview clips.
Supports Cloudflare R2, AWS S3, GCS interop, MinIO, etc.
"""

import logging
from pathlib import Path

import boto3
from botocore.config import Config
import httpx

from serenata.config import Settings

logger = logging.getLogger(__name__)


class BlobStorage:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._s3_client = None

    def _get_s3_client(self):
        if self._s3_client is None:
            settings = self.settings
            self._s3_client = boto3.client(
                "s3",
                endpoint_url=settings.s3_endpoint_url or None,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                region_name=settings.s3_region or "us-east-1",
                config=Config(signature_version="s3v4"),
            )
        return self._s3_client

    async def upload_bytes(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes under `key` and return a URL WhatsApp can fetch."""
        client = self._get_s3_client()
        client.put_object(
            Bucket=self.settings.s3_bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        url = self.url_for_key(key)
        logger.info("Uploaded %s (%d bytes)", key, len(data))
        return url

    async def upload_file(self, path: str | Path, key: str, content_type: str) -> str:
        return await self.upload_bytes(Path(path).read_bytes(), key, content_type)

    def url_for_key(self, key: str, expires_in: int = 86400) -> str:
        """Public URL when the bucket is public, otherwise a pre-signed one (24h)."""
        if self.settings.s3_public_url:
            return f"{self.settings.s3_public_url}/{key}"
        client = self._get_s3_client()
        return client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.settings.s3_bucket_name, "Key": key},
            ExpiresIn=expires_in,
        )

    async def download(self, url: str) -> bytes:
        """Download a file by URL."""
        async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content
