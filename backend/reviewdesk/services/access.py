"""
Authorization guard.

Actors are resolved upstream: an authenticated user carries a user id, an
anonymous visitor carries none. Comment ownership and editor ownership of a
project are decided here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthorizationError, NotAuthenticatedError
from ..models import EditorProfile, Project, ReviewComment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    user_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


ANONYMOUS = Actor()


def is_own_comment(actor: Actor, commenter_id: str | None) -> bool:
    """Authenticated users own their comments; anonymous comments belong to anonymous requests only."""
    if actor.is_authenticated:
        return commenter_id is not None and actor.user_id == commenter_id
    return commenter_id is None


def require_comment_owner(actor: Actor, comment: ReviewComment, action: str) -> None:
    if not is_own_comment(actor, comment.commenter_id):
        logger.warning("Actor %s tried to %s comment %s", actor.user_id or "anonymous", action, comment.id)
        raise AuthorizationError(f"You can only {action} your own comments.")


async def get_editor_profile(session: AsyncSession, actor: Actor) -> EditorProfile:
    if not actor.is_authenticated:
        raise NotAuthenticatedError("Editor not authenticated")
    res = await session.execute(select(EditorProfile).where(EditorProfile.user_id == actor.user_id))
    profile = res.scalar_one_or_none()
    if profile is None:
        raise AuthorizationError("Editor profile not found.")
    return profile


async def require_project_owner(session: AsyncSession, actor: Actor, project: Project) -> EditorProfile:
    profile = await get_editor_profile(session, actor)
    if project.editor_id != profile.id:
        logger.warning("Editor %s is not the owner of project %s", profile.id, project.id)
        raise AuthorizationError("Unauthorized: Project track does not belong to this editor.")
    return profile
