"""
Client-side review workflow: comments on a delivered round and the
client's decision that closes it.

Comment mutations and both decisions are refused once the round's
decision has left "pending". The decisions run as one transaction each:
request-revisions closes round N and opens round N+1 from the comments;
approve closes the round and completes the project.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Sequence

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, PasswordRequiredError, ValidationError
from ..models import Project, ProjectTrack, ReviewComment
from ..schemas import CommentData, CommentRead, Link, LiveRound, LiveTrackRead, ProjectRead, ReviewRead
from . import steps as sm
from .access import Actor, is_own_comment, require_comment_owner
from .images import ImageContext, ImageUpload, upload_batch, validate_batch
from .links import decode_links, encode_links
from .password_gate import ProofStore, cookie_name, has_access
from .revalidate import Revalidator, project_path, review_path
from .tracks import (
    atomic,
    carry_over,
    close_round_approved,
    comment_data,
    get_comment,
    get_track,
    list_comments,
    list_project_tracks,
    load_steps,
    open_next_round,
)

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "Anonymous Visitor"


def _comment_read(actor: Actor, comment: ReviewComment, data: CommentData) -> CommentRead:
    return CommentRead(
        id=comment.id,
        created_at=comment.created_at,
        comment=data,
        commenter_display_name=comment.commenter_name or ANONYMOUS_NAME,
        is_own_comment=is_own_comment(actor, comment.commenter_id),
    )


def parse_timestamp(value: Any) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Required data missing.")
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid timestamp.") from None
    if math.isnan(timestamp) or math.isinf(timestamp) or timestamp < 0:
        raise ValidationError("Invalid timestamp.")
    return timestamp


def _parse_links(raw: Sequence[Any] | None) -> list[Link]:
    try:
        return [Link.model_validate(item) for item in (raw or [])]
    except pydantic.ValidationError:
        raise ValidationError("Invalid links format.") from None


# ============ Review view ============

async def get_review(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    *,
    proofs: ProofStore,
    cookies: Mapping[str, str],
) -> ReviewRead:
    track = await get_track(session, track_id, with_project=True)
    project = track.project
    if not await has_access(proofs, project, cookies.get(cookie_name(project.id))):
        raise PasswordRequiredError(project.id)

    steps = load_steps(track)
    finish = sm.final_step(steps)
    review = ReviewRead(
        ready=bool(finish.deliverable_link),
        track_id=track.id,
        project_id=project.id,
        project_title=project.title,
        round_number=track.round_number,
        client_decision=track.client_decision,
        deliverable_link=finish.deliverable_link,
        deliverable_media_type=track.final_deliverable_media_type,
    )
    if not review.ready:
        return review

    rows = await list_comments(session, track.id)
    review.comments = [_comment_read(actor, c, data) for c, data in rows]
    return review


def _live_round(track: ProjectTrack) -> LiveRound:
    steps = load_steps(track)
    return LiveRound(
        id=track.id,
        round_number=track.round_number,
        status=track.status,
        client_decision=track.client_decision,
        steps=steps,
        completed_steps=sm.completed_count(steps),
        total_steps=len(steps),
        progress=sm.track_progress(steps),
        deliverable_link=sm.final_step(steps).deliverable_link,
        final_deliverable_media_type=track.final_deliverable_media_type,
        updated_at=track.updated_at,
    )


async def get_live_track(
    session: AsyncSession,
    actor: Actor,
    project_id: str,
    *,
    proofs: ProofStore,
    cookies: Mapping[str, str],
) -> LiveTrackRead:
    """Every round of a project with its progress.

    The active track is the latest round. `comments` is the client feedback
    the active round was built from, i.e. the comments on the round before it.
    """
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found.")
    if not await has_access(proofs, project, cookies.get(cookie_name(project.id))):
        raise PasswordRequiredError(project.id)

    tracks = await list_project_tracks(session, project.id)
    if not tracks:
        raise NotFoundError("No tracks found for this project.")
    rounds = [_live_round(t) for t in tracks]

    comments: list[CommentRead] = []
    if len(tracks) > 1:
        rows = await list_comments(session, tracks[-2].id)
        comments = [_comment_read(actor, c, data) for c, data in rows]

    return LiveTrackRead(
        project=ProjectRead.model_validate(project),
        active_track=rounds[-1],
        tracks=rounds,
        comments=comments,
    )


async def require_review_access(
    session: AsyncSession,
    track_id: str,
    *,
    proofs: ProofStore,
    cookies: Mapping[str, str],
) -> None:
    """Raise PasswordRequiredError unless the track's project is open or unlocked."""
    track = await get_track(session, track_id, with_project=True)
    if not await has_access(proofs, track.project, cookies.get(cookie_name(track.project_id))):
        raise PasswordRequiredError(track.project_id)


async def require_comment_access(
    session: AsyncSession,
    comment_id: str,
    *,
    proofs: ProofStore,
    cookies: Mapping[str, str],
) -> None:
    comment = await get_comment(session, comment_id)
    await require_review_access(session, comment.track_id, proofs=proofs, cookies=cookies)


# ============ Comments ============

async def add_review_comment(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    *,
    text: str | None,
    timestamp: Any,
    commenter_name: str | None,
    files: Sequence[ImageUpload],
    links: Sequence[Any] | None,
    images: ImageContext,
    revalidator: Revalidator,
) -> CommentRead:
    if not track_id:
        raise ValidationError("Required data missing.")
    when = parse_timestamp(timestamp)
    text = (text or "").strip()
    batch = validate_batch(files, limits=images.limits)
    if not text and not batch:
        raise ValidationError("Comment cannot be empty.")
    seed = _parse_links(links)

    track = await get_track(session, track_id)
    sm.require_pending(track.client_decision)

    urls = await upload_batch(images.host, batch, limits=images.limits)
    encoded = encode_links(text, seed)
    data = CommentData(text=encoded.processed_text, timestamp=when, images=urls, links=encoded.links)

    async with atomic(session):
        track = await get_track(session, track_id, for_update=True)
        sm.require_pending(track.client_decision)
        comment = ReviewComment(
            track_id=track_id,
            comment=data.to_document(),
            commenter_name=(commenter_name or "").strip() or ANONYMOUS_NAME,
            commenter_id=actor.user_id,
        )
        session.add(comment)

    logger.info("Comment %s added to track %s", comment.id, track_id)
    await revalidator.revalidate(review_path(track_id))
    return _comment_read(actor, comment, data)


async def update_review_comment(
    session: AsyncSession,
    actor: Actor,
    comment_id: str,
    *,
    text: str | None,
    existing_images: Sequence[str] | None,
    commenter_name: str | None,
    files: Sequence[ImageUpload],
    images: ImageContext,
    revalidator: Revalidator,
) -> CommentRead:
    if not comment_id or text is None or existing_images is None:
        raise ValidationError("Required data missing.")

    comment = await get_comment(session, comment_id)
    require_comment_owner(actor, comment, "edit")
    sm.require_pending(comment.track.client_decision)

    current = comment_data(comment)
    kept = list(existing_images)
    foreign = [url for url in kept if url not in current.images]
    if foreign:
        logger.warning("Comment %s edit kept %d image(s) it never had", comment_id, len(foreign))
        raise ValidationError("Existing images must belong to the comment.")
    batch = validate_batch(files, existing_count=len(kept), limits=images.limits)
    if not text.strip() and not kept and not batch:
        raise ValidationError("Cannot save comment with no text and no images.")

    urls = await upload_batch(images.host, batch, existing_count=len(kept), limits=images.limits)

    plain = decode_links(text.strip(), current.links)
    encoded = encode_links(plain)
    data = CommentData(
        text=encoded.processed_text,
        timestamp=current.timestamp,
        images=kept + urls,
        links=encoded.links,
    )

    track_id = comment.track_id
    async with atomic(session):
        track = await get_track(session, track_id, for_update=True)
        sm.require_pending(track.client_decision)
        comment.comment = data.to_document()
        if commenter_name and commenter_name.strip() and commenter_name.strip() != comment.commenter_name:
            comment.commenter_name = commenter_name.strip()

    logger.info("Comment %s updated", comment_id)
    await revalidator.revalidate(review_path(track_id))
    return _comment_read(actor, comment, data)


async def delete_review_comment(
    session: AsyncSession,
    actor: Actor,
    comment_id: str,
    *,
    revalidator: Revalidator,
) -> None:
    if not comment_id:
        raise ValidationError("Comment ID missing.")

    comment = await get_comment(session, comment_id)
    require_comment_owner(actor, comment, "delete")
    sm.require_pending(comment.track.client_decision)

    track_id = comment.track_id
    async with atomic(session):
        track = await get_track(session, track_id, for_update=True)
        sm.require_pending(track.client_decision)
        await session.delete(comment)

    logger.info("Comment %s deleted from track %s", comment_id, track_id)
    await revalidator.revalidate(review_path(track_id))


# ============ Decisions ============

async def request_revisions(
    session: AsyncSession,
    track_id: str,
    *,
    revalidator: Revalidator,
) -> ProjectTrack:
    """Close round N as revisions_requested and open round N+1 from its comments."""
    async with atomic(session):
        track = await get_track(session, track_id, for_update=True)
        sm.require_pending(track.client_decision)

        rows = await list_comments(session, track.id)
        next_steps = sm.steps_from_comments(carry_over(c, data) for c, data in rows)

        next_track = open_next_round(session, track, next_steps)

    logger.info(
        "Revisions requested on track %s; round %d opened as %s (%d step(s))",
        track_id, next_track.round_number, next_track.id, len(next_steps) - 1,
    )
    await revalidator.revalidate(review_path(track_id), project_path(track.project_id))
    return next_track


async def approve_project(
    session: AsyncSession,
    project_id: str,
    track_id: str,
    *,
    revalidator: Revalidator,
) -> ProjectTrack:
    """Close the round as approved and mark the project completed."""
    async with atomic(session):
        track = await get_track(session, track_id, for_update=True)
        if track.project_id != project_id:
            raise NotFoundError("Track not found or invalid.")
        sm.require_pending(track.client_decision)

        await close_round_approved(session, track)

    logger.info("Track %s approved; project %s completed", track_id, project_id)
    await revalidator.revalidate(review_path(track_id), project_path(project_id))
    return track
