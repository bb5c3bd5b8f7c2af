"""
Image attachment pipeline.

Validates attachments (size, type, per-item count) before any network call,
then uploads the batch concurrently to the image host (ImgBB API) and
returns public URLs in input order.

If one upload of a batch fails after others succeeded, the whole batch
fails and the already-uploaded images stay on the host. Their URLs are
logged so they can be cleaned up by hand.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import httpx

from ..errors import ReviewDeskError, UpstreamServiceError, ValidationError
from ..settings import Settings

logger = logging.getLogger(__name__)

ACCEPTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_MAX_PER_ITEM = 4


@dataclass(frozen=True)
class ImageHostConfig:
    api_key: str | None
    upload_url: str = "https://api.imgbb.com/1/upload"
    timeout_sec: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageHostConfig":
        return cls(
            api_key=settings.imgbb_api_key,
            upload_url=settings.imgbb_upload_url,
            timeout_sec=settings.image_upload_timeout_sec,
        )


@dataclass(frozen=True)
class ImageLimits:
    max_bytes: int = DEFAULT_MAX_BYTES
    max_per_item: int = DEFAULT_MAX_PER_ITEM

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageLimits":
        return cls(max_bytes=settings.image_max_bytes, max_per_item=settings.max_images_per_item)

    @property
    def max_megabytes(self) -> int:
        return self.max_bytes // (1024 * 1024)


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ImageContext:
    """Image host plus the limits uploads are checked against."""

    host: "ImageHostClient"
    limits: ImageLimits = ImageLimits()


class ImageHostClient:
    """Uploads single images to ImgBB."""

    def __init__(self, config: ImageHostConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        if not self.enabled:
            logger.error("Image upload requested but IMGBB_API_KEY is not configured")
            raise UpstreamServiceError("Image upload service is not configured.")

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_sec, transport=self._transport) as client:
                response = await client.post(
                    self.config.upload_url,
                    params={"key": self.config.api_key},
                    files={"image": (filename, data, content_type)},
                )
        except httpx.HTTPError as e:
            logger.error("Image host unreachable while uploading %s: %s", filename, e)
            raise UpstreamServiceError(f'Failed to upload image "{filename}": {e}') from e

        if response.status_code != 200:
            detail = _error_message(response)
            logger.error("Image host rejected %s: %s %s", filename, response.status_code, detail)
            raise UpstreamServiceError(
                f'Upload failed for "{filename}": {response.status_code} - {detail}'
            )

        try:
            url = response.json()["data"]["url"]
        except (ValueError, KeyError, TypeError):
            url = None
        if not url:
            logger.error("Invalid image host response for %s: %s", filename, response.text[:200])
            raise UpstreamServiceError(f'Invalid response from image host after uploading "{filename}".')
        return url


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or "Unknown image host error"
    except (ValueError, AttributeError):
        return response.text[:200] or "Unknown image host error"


def validate_batch(
    files: Iterable[ImageUpload],
    *,
    existing_count: int = 0,
    limits: ImageLimits = ImageLimits(),
) -> list[ImageUpload]:
    """Check a batch against the per-item limits.

    Empty files are dropped (browsers submit them for untouched inputs).
    Raises ValidationError naming the first offending file.
    """
    batch = [f for f in files if f.size > 0]
    if existing_count + len(batch) > limits.max_per_item:
        raise ValidationError(f"Cannot exceed {limits.max_per_item} images in total.")
    for f in batch:
        if f.size > limits.max_bytes:
            raise ValidationError(f'File "{f.filename}" size exceeds {limits.max_megabytes}MB limit.')
        if f.content_type not in ACCEPTED_IMAGE_TYPES:
            raise ValidationError(
                f'File "{f.filename}" has an invalid type ({f.content_type}). Only JPEG, PNG, and WebP are supported.'
            )
    return batch


async def upload_batch(
    host: ImageHostClient,
    files: Sequence[ImageUpload],
    *,
    existing_count: int = 0,
    limits: ImageLimits = ImageLimits(),
) -> list[str]:
    """Validate then upload `files` concurrently; returns URLs in input order."""
    batch = validate_batch(files, existing_count=existing_count, limits=limits)
    if not batch:
        return []
    if not host.enabled:
        raise UpstreamServiceError("Image upload service is not configured.")

    results = await asyncio.gather(
        *(host.upload(f.data, f.filename, f.content_type) for f in batch),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        orphaned = [r for r in results if isinstance(r, str)]
        if orphaned:
            logger.warning("Image batch failed; %d uploaded image(s) left orphaned: %s", len(orphaned), orphaned)
        first = failures[0]
        if isinstance(first, ReviewDeskError):
            raise first
        raise UpstreamServiceError(f"Image upload failed: {first}") from first

    logger.info("Uploaded %d image(s)", len(results))
    return list(results)
