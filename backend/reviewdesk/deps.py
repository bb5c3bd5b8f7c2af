"""
Request-scoped dependencies shared by the editor and review routers.

The acting user is resolved by the upstream auth gateway and forwarded in
the X-User-Id header; requests without it act as anonymous visitors.
"""
from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, Header, UploadFile

from .services.access import ANONYMOUS, Actor
from .services.images import ImageContext, ImageHostClient, ImageHostConfig, ImageLimits, ImageUpload
from .services.password_gate import ProofStore
from .services.revalidate import Revalidator
from .settings import get_settings

_redis_client: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def get_actor(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Actor:
    user_id = (x_user_id or "").strip()
    return Actor(user_id=user_id) if user_id else ANONYMOUS


def get_image_context() -> ImageContext:
    settings = get_settings()
    return ImageContext(
        host=ImageHostClient(ImageHostConfig.from_settings(settings)),
        limits=ImageLimits.from_settings(settings),
    )


def get_proof_store(redis: aioredis.Redis = Depends(get_redis)) -> ProofStore:
    return ProofStore(redis, ttl_hours=get_settings().project_proof_ttl_hours)


def get_revalidator(redis: aioredis.Redis = Depends(get_redis)) -> Revalidator:
    return Revalidator(redis, get_settings().revalidate_channel)


async def read_upload(file: UploadFile) -> ImageUpload:
    data = await file.read()
    return ImageUpload(
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        data=data,
    )
