from __future__ import annotations
"""Artifact store: S3-compatible object storage (Cloudflare R2) for scene media.

All scene outputs live under:
  projects/{project_id}/scenes/{scene_id}/{output}-{timestamp_ms}-{suffix}.{ext}

boto3 is blocking, so every call runs in a worker thread.
"""

import asyncio
import logging
import tempfile
import time
import uuid
from typing import IO, Any

import boto3
import httpx
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from app.config import get_settings
from app.services.errors import NotFound, StorageFailure, TransientNetwork

logger = logging.getLogger(__name__)
settings = get_settings()

# Multipart above 16 MB so multi-GB uploads never sit in memory whole
_TRANSFER_CONFIG = TransferConfig(
    multipart_threshold=16 * 1024 * 1024,
    multipart_chunksize=16 * 1024 * 1024,
)
# Relocated downloads spill to disk past this size
_SPOOL_MAX_BYTES = 8 * 1024 * 1024

_EXTENSIONS = {
    "audio": "mp3",
    "image": "png",
    "video": "mp4",
    "lipsync": "mp4",
    "final": "mp4",
}

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def scene_key(project_id: str, scene_id: str, output_type: str) -> str:
    """Collision-free key for a scene output; a fresh key on every call."""
    ext = _EXTENSIONS.get(output_type, "bin")
    stamp = int(time.time() * 1000)
    suffix = uuid.uuid4().hex[:8]
    return f"projects/{project_id}/scenes/{scene_id}/{output_type}-{stamp}-{suffix}.{ext}"


def _make_client():
    return boto3.client(
        "s3",
        endpoint_url=settings.STORAGE_ENDPOINT,
        aws_access_key_id=settings.R2_ACCESS_KEY_ID,
        aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        region_name="auto",
    )


def _is_missing(err: ClientError) -> bool:
    code = str(err.response.get("Error", {}).get("Code", ""))
    status = err.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in _MISSING_CODES or status == 404


class ArtifactStore:
    """Upload, sign, fetch and delete scene media by key."""

    def __init__(
        self,
        client: Any = None,
        bucket: str | None = None,
        public_url: str | None = None,
        signed_url_ttl: int | None = None,
    ) -> None:
        self._client = client
        self.bucket = bucket or settings.R2_BUCKET_NAME
        self.public_base = (
            settings.R2_PUBLIC_URL if public_url is None else public_url
        ).rstrip("/")
        self.signed_url_ttl = signed_url_ttl or settings.SIGNED_URL_TTL

    @property
    def client(self):
        if self._client is None:
            self._client = _make_client()
        return self._client

    async def put(self, key: str, data: bytes | IO[bytes], content_type: str) -> str:
        """Store ``data`` under ``key`` and return the committed key.

        File-like sources are streamed with multipart upload.
        """
        try:
            if isinstance(data, (bytes, bytearray)):
                await asyncio.to_thread(
                    self.client.put_object,
                    Bucket=self.bucket,
                    Key=key,
                    Body=bytes(data),
                    ContentType=content_type,
                )
            else:
                await asyncio.to_thread(
                    self.client.upload_fileobj,
                    data,
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                    Config=_TRANSFER_CONFIG,
                )
        except (ClientError, BotoCoreError) as e:
            logger.error("Upload failed for key=%s: %s", key, e)
            raise StorageFailure(f"Upload failed for {key}: {e}") from e

        logger.info("Stored %s (%s)", key, content_type)
        return key

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise StorageFailure(f"Could not inspect {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Could not inspect {key}: {e}") from e
        return True

    async def signed_get(self, key: str, ttl_seconds: int | None = None) -> str:
        """Time-limited read URL; NotFound if the object was never written."""
        if not await self.exists(key):
            raise NotFound(f"No stored object at {key}")
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds or self.signed_url_ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Could not sign {key}: {e}") from e

    async def url_for(self, key: str) -> str:
        """URL recorded on the scene: public when a public base is configured."""
        if self.public_base:
            return f"{self.public_base}/{key}"
        return await self.signed_get(key)

    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False when it was already gone."""
        if not await self.exists(key):
            logger.debug("Delete skipped, %s not found", key)
            return False
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise StorageFailure(f"Delete failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Delete failed for {key}: {e}") from e
        logger.info("Deleted %s", key)
        return True

    async def put_from_url(
        self,
        key: str,
        source_url: str,
        content_type: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> str:
        """Relocate a provider-hosted file into the store without holding it in memory."""
        client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=300.0))
        own_client = http_client is None
        try:
            with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as spool:
                try:
                    async with client.stream("GET", source_url, follow_redirects=True) as response:
                        if response.status_code == 404:
                            raise NotFound(f"Provider result not found: {source_url}")
                        response.raise_for_status()
                        async for chunk in response.aiter_bytes(chunk_size=1024 * 1024):
                            spool.write(chunk)
                except httpx.HTTPStatusError as e:
                    raise TransientNetwork(
                        f"Download failed ({e.response.status_code}) for {source_url}"
                    ) from e
                except httpx.TransportError as e:
                    raise TransientNetwork(f"Download failed for {source_url}: {e}") from e

                size = spool.tell()
                spool.seek(0)
                logger.info("Downloaded %.2f MB from provider", size / (1024 * 1024))
                return await self.put(key, spool, content_type)
        finally:
            if own_client:
                await client.aclose()


_store: ArtifactStore | None = None


def get_artifact_store() -> ArtifactStore:
    """Return the process-wide ArtifactStore."""
    global _store
    if _store is None:
        _store = ArtifactStore()
    return _store
