"""
Password gate for protected projects.

A successful verification issues a random proof token stored in Redis for
PROOF_TTL_HOURS and handed to the client as the `project_auth_<id>` cookie.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Project

logger = logging.getLogger(__name__)

PROOF_TTL_HOURS = 24


def cookie_name(project_id: str) -> str:
    return f"project_auth_{project_id}"


def _proof_key(project_id: str, token: str) -> str:
    return f"project_auth:{project_id}:{token}"


class ProofStore:
    """Per-project "verified" markers with a fixed lifetime."""

    def __init__(self, redis: aioredis.Redis, ttl_hours: int = PROOF_TTL_HOURS):
        self.redis = redis
        self.ttl_sec = ttl_hours * 3600

    async def issue(self, project_id: str) -> str:
        token = secrets.token_urlsafe(32)
        await self.redis.set(_proof_key(project_id, token), "verified", ex=self.ttl_sec)
        return token

    async def is_verified(self, project_id: str, token: str | None) -> bool:
        if not token:
            return False
        return await self.redis.get(_proof_key(project_id, token)) is not None


@dataclass
class VerifyResult:
    success: bool
    message: str
    token: str | None = None


async def verify_project_password(
    session: AsyncSession,
    proofs: ProofStore,
    project_id: str,
    password: str,
) -> VerifyResult:
    if not project_id or not password:
        return VerifyResult(False, "Missing project ID or password")

    project = await session.get(Project, project_id)
    if project is None:
        return VerifyResult(False, "Project not found")

    if not project.password_protected:
        return VerifyResult(True, "Project is not password protected")

    if not project.access_password or not secrets.compare_digest(
        password.encode(), project.access_password.encode()
    ):
        logger.warning("Incorrect password for project %s", project_id)
        return VerifyResult(False, "Incorrect password")

    token = await proofs.issue(project_id)
    logger.info("Password verified for project %s", project_id)
    return VerifyResult(True, "Password verified successfully", token=token)


async def has_access(proofs: ProofStore, project: Project, token: str | None) -> bool:
    if not project.password_protected:
        return True
    return await proofs.is_verified(project.id, token)
