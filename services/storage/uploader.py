"""
Input Uploader

Turns a local reference image or video into a durable public URL in the
Supabase storage bucket, so the provider can fetch it.

Objects are written as `{account_id}/{epoch_ms}.{ext}` and never overwritten.
"""

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Optional

import aiofiles
import httpx

from core.circuit_breaker import CircuitBreakerOpen, get_provider_breaker
from core.config import get_config
from services.generation.models import ErrorCode, GenerationError

logger = logging.getLogger(__name__)


class UploadError(GenerationError):
    def __init__(self, message: str):
        super().__init__(message, ErrorCode.UPLOAD_FAILED, provider="storage")


class StorageUploader:
    """
    Usage:
        uploader = StorageUploader()
        url = await uploader.upload(account_id, "/tmp/reference.mp4")
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = (config or get_config()).storage
        self._http_client = http_client
        self._breaker = get_provider_breaker("storage")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=300.0)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def object_name(self, account_id: str, path: Path) -> str:
        ext = path.suffix.lstrip(".") or "bin"
        return f"{account_id}/{int(time.time() * 1000)}.{ext}"

    def public_url(self, object_name: str) -> str:
        return f"{self.config.supabase_url}/storage/v1/object/public/{self.config.bucket}/{object_name}"

    async def upload(self, account_id: str, file_path: str) -> str:
        """
        Upload a local file and return its public URL.

        Raises:
            UploadError: on a missing file, a storage rejection or a transport failure
        """
        if not self.config.supabase_url or not self.config.service_role_key:
            raise UploadError("Upload storage is not configured")

        path = Path(file_path)
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            raise UploadError(f"Cannot read {path.name}: {e}") from e

        object_name = self.object_name(account_id, path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        client = await self._get_client()

        try:
            response = await self._breaker.call(
                client.post,
                f"{self.config.supabase_url}/storage/v1/object/{self.config.bucket}/{object_name}",
                content=content,
                headers={
                    "Authorization": f"Bearer {self.config.service_role_key}",
                    "Content-Type": content_type,
                    "Cache-Control": f"max-age={self.config.cache_control}",
                    "x-upsert": "false",
                },
            )
        except CircuitBreakerOpen as e:
            raise UploadError(f"Storage temporarily unavailable: {e}") from e
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise UploadError(f"Upload failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.error(f"Storage rejected {object_name}: HTTP {response.status_code} {response.text[:200]}")
            raise UploadError(f"Upload failed: HTTP {response.status_code}")

        url = self.public_url(object_name)
        logger.info(f"Uploaded {path.name} ({len(content) / 1024:.0f} KB) -> {url}")
        return url
