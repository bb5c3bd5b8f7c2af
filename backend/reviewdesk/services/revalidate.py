"""
Cache invalidation signal.

After a mutation commits, the affected view paths are published on a Redis
channel; the rendering layer subscribes and drops its cached pages.
Publishing is best effort: a Redis outage never fails a committed mutation.
"""
from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def project_path(project_id: str) -> str:
    return f"/dashboard/projects/{project_id}"


def review_path(track_id: str) -> str:
    return f"/review/{track_id}"


PROJECTS_LIST_PATH = "/dashboard/projects"


class Revalidator:
    def __init__(self, redis: aioredis.Redis, channel: str):
        self.redis = redis
        self.channel = channel

    async def revalidate(self, *paths: str) -> None:
        for path in dict.fromkeys(paths):
            try:
                await self.redis.publish(self.channel, path)
            except RedisError as e:
                logger.warning("[revalidate] publish failed for %s: %s", path, e)
            else:
                logger.debug("[revalidate] %s", path)
