"""
Persistence gateway for tracks and review comments.

Reads validate the JSON documents before handing them out; writes replace
the whole steps list and go through `atomic()`, which commits once and maps
store failures onto the workflow error taxonomy.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Sequence

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from ..errors import NotFoundError, PersistenceError, ReviewDeskError, VersionConflictError
from ..models import ClientDecision, Project, ProjectStatus, ProjectTrack, ReviewComment, TrackStatus
from ..schemas import CommentData, WorkStep
from .steps import CarryOverComment, dump_steps, parse_steps

logger = logging.getLogger(__name__)


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit everything done inside the block as one transaction."""
    try:
        yield session
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        logger.warning("Concurrent track modification detected: %s", e)
        raise VersionConflictError(None, None) from e
    except ReviewDeskError:
        await session.rollback()
        raise
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("Database write failed: %s", e)
        raise PersistenceError(f"Database error: {e.__class__.__name__}") from e


async def get_track(
    session: AsyncSession,
    track_id: str,
    *,
    for_update: bool = False,
    with_project: bool = False,
) -> ProjectTrack:
    stmt = select(ProjectTrack).where(ProjectTrack.id == track_id)
    if with_project:
        stmt = stmt.options(selectinload(ProjectTrack.project))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await session.execute(stmt)
    track = res.scalar_one_or_none()
    if track is None:
        raise NotFoundError("Track not found.")
    return track


async def latest_tracks(session: AsyncSession, project_ids: Sequence[str]) -> dict[str, ProjectTrack]:
    if not project_ids:
        return {}
    res = await session.execute(
        select(ProjectTrack)
        .where(ProjectTrack.project_id.in_(project_ids))
        .order_by(ProjectTrack.project_id, ProjectTrack.round_number)
    )
    latest: dict[str, ProjectTrack] = {}
    for track in res.scalars().all():
        latest[track.project_id] = track
    return latest


async def list_project_tracks(session: AsyncSession, project_id: str) -> list[ProjectTrack]:
    res = await session.execute(
        select(ProjectTrack).where(ProjectTrack.project_id == project_id).order_by(ProjectTrack.round_number)
    )
    return list(res.scalars().all())


def load_steps(track: ProjectTrack) -> list[WorkStep]:
    return parse_steps(track.steps, track_id=track.id)


def check_version(track: ProjectTrack, expected: int | None) -> None:
    if expected is None or expected != track.version:
        logger.warning("Stale write on track %s: caller read v%s, store has v%s", track.id, expected, track.version)
        raise VersionConflictError(expected, track.version)


def write_steps(track: ProjectTrack, steps: Sequence[WorkStep]) -> None:
    track.steps = dump_steps(steps)
    track.updated_at = datetime.now(timezone.utc)


async def get_comment(session: AsyncSession, comment_id: str) -> ReviewComment:
    res = await session.execute(
        select(ReviewComment)
        .where(ReviewComment.id == comment_id)
        .options(selectinload(ReviewComment.track))
    )
    comment = res.scalar_one_or_none()
    if comment is None:
        raise NotFoundError("Comment/track not found.")
    return comment


def comment_data(comment: ReviewComment) -> CommentData:
    try:
        return CommentData.model_validate(comment.comment)
    except pydantic.ValidationError as e:
        logger.error("Malformed persisted comment %s: %s", comment.id, e)
        raise PersistenceError(f"Comment {comment.id} has malformed persisted data.") from e


def _created_sort_key(comment: ReviewComment) -> float:
    return comment.created_at.timestamp() if comment.created_at else 0.0


async def list_comments(session: AsyncSession, track_id: str) -> list[tuple[ReviewComment, CommentData]]:
    """Comments of a track ordered by deliverable timestamp, then creation time."""
    res = await session.execute(select(ReviewComment).where(ReviewComment.track_id == track_id))
    rows = [(c, comment_data(c)) for c in res.scalars().all()]
    rows.sort(key=lambda row: (row[1].timestamp, _created_sort_key(row[0])))
    return rows


def carry_over(comment: ReviewComment, data: CommentData) -> CarryOverComment:
    return CarryOverComment(
        id=comment.id,
        text=data.text,
        timestamp=data.timestamp,
        images=list(data.images),
        links=[link.model_dump() for link in data.links],
        created_at=comment.created_at,
    )


# ============ Round transitions ============
# Both run inside the caller's atomic() block with the current track locked.

def open_next_round(session: AsyncSession, track: ProjectTrack, next_steps: Sequence[WorkStep]) -> ProjectTrack:
    next_track = ProjectTrack(
        project_id=track.project_id,
        round_number=track.round_number + 1,
        status=TrackStatus.in_progress.value,
        client_decision=ClientDecision.pending.value,
        steps=dump_steps(next_steps),
    )
    session.add(next_track)
    track.client_decision = ClientDecision.revisions_requested.value
    track.updated_at = datetime.now(timezone.utc)
    return next_track


async def close_round_approved(session: AsyncSession, track: ProjectTrack) -> Project:
    project = await session.get(Project, track.project_id, with_for_update=True)
    if project is None:
        raise NotFoundError("Project not found.")
    now = datetime.now(timezone.utc)
    track.client_decision = ClientDecision.approved.value
    track.updated_at = now
    project.status = ProjectStatus.completed.value
    project.updated_at = now
    return project
