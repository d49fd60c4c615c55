import logging
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .audio import CONTENT_TYPES, FFmpeg, AudioAsset
from .errors import ProviderError, ResourceLimitError

logger = logging.getLogger(__name__)


def get_s3_client():
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def object_url(bucket: str, key: str) -> str:
    """
    Public URL for an object. Uses S3_PUBLIC_BASE_URL when configured (CDN or
    public bucket domain), else the public endpoint in path style.
    """
    if settings.S3_PUBLIC_BASE_URL:
        return f"{settings.S3_PUBLIC_BASE_URL.rstrip('/')}/{key}"
    base = settings.S3_PUBLIC_ENDPOINT.rstrip("/")
    return f"{base}/{bucket}/{key}"


def render_key(track_id: str, fmt: str, now: float | None = None) -> str:
    """
    Destination key unique per render, so re-rendering a track never
    overwrites an earlier artifact: renders/<track>/rendered_<ms>_<rand>.<fmt>
    """
    millis = int((now if now is not None else time.time()) * 1000)
    return f"renders/{track_id}/rendered_{millis}_{uuid4().hex[:8]}.{fmt}"


def _storage_error(exc: Exception, action: str) -> ProviderError:
    status = None
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        code = exc.response.get("Error", {}).get("Code", "")
        return ProviderError("storage", f"{action} failed ({code or status}): {exc}", status_code=status)
    return ProviderError("storage", f"{action} failed: {exc}")


@dataclass(frozen=True)
class UploadResult:
    url: str
    key: str
    duration_seconds: float
    size_bytes: int


class AssetFetcher:
    """Reads pre-existing assets (background music, recorded voices) from one bucket."""

    def __init__(self, client, bucket: str, max_bytes: int):
        self.client = client
        self.bucket = bucket
        self.max_bytes = max_bytes

    def _check_size(self, key: str) -> int:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error(exc, f"lookup of {self.bucket}/{key}") from exc
        size = int(head.get("ContentLength") or 0)
        if size > self.max_bytes:
            raise ResourceLimitError(f"asset {key}", size, self.max_bytes)
        return size

    def fetch(self, asset_id: str, dest: Path) -> Path:
        """Download ``asset_id`` to ``dest`` and return the local path."""
        self._check_size(asset_id)
        try:
            self.client.download_file(self.bucket, asset_id, str(dest))
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error(exc, f"download of {self.bucket}/{asset_id}") from exc
        logger.info("Fetched %s/%s -> %s", self.bucket, asset_id, dest.name)
        return Path(dest)

    def read(self, asset_id: str) -> tuple[bytes, str]:
        """Return (content, content_type) of a small asset."""
        self._check_size(asset_id)
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=asset_id)
            content = obj["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error(exc, f"read of {self.bucket}/{asset_id}") from exc
        content_type = obj.get("ContentType") or mimetypes.guess_type(asset_id)[0] or "application/octet-stream"
        return content, content_type


class StorageUploader:
    """Persists rendered artifacts and returns their public URL."""

    def __init__(self, client, bucket: str, ffmpeg: FFmpeg | None = None):
        self.client = client
        self.bucket = bucket
        self.ffmpeg = ffmpeg or FFmpeg()

    def upload(self, asset: AudioAsset, destination_key: str) -> UploadResult:
        size = asset.size_bytes
        duration = asset.duration_seconds
        if duration is None:
            duration = self.ffmpeg.probe(asset.path).duration_seconds

        content_type = CONTENT_TYPES.get(asset.format, "application/octet-stream")
        try:
            self.client.upload_file(
                str(asset.path), self.bucket, destination_key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error(exc, f"upload of {destination_key}") from exc

        url = object_url(self.bucket, destination_key)
        logger.info("Uploaded %s (%d bytes) to %s/%s", asset.path.name, size, self.bucket, destination_key)
        return UploadResult(url=url, key=destination_key, duration_seconds=round(float(duration), 3), size_bytes=size)

    def delete(self, key: str) -> None:
        """Remove an artifact that no job will reference."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error(exc, f"delete of {key}") from exc
        logger.info("Deleted %s/%s", self.bucket, key)
