"""
Editor-side workflow: projects, round 1 content and step edits.

Every track mutation follows the same order: authorize the editor, check the
decision is still pending, check the caller's version, validate input, upload
images, compute the new steps, commit, then signal revalidation.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import NotFoundError, ValidationError
from ..models import ClientDecision, Project, ProjectStatus, ProjectTrack, TrackStatus
from ..schemas import DashboardStats, FinalStep, ProjectCounts, ProjectUpdate, StepDescriptor, WorkStep
from . import steps as sm
from .access import Actor, get_editor_profile, require_project_owner
from .images import ImageContext, ImageUpload, upload_batch, validate_batch
from .links import EncodedText, decode_links, encode_links
from .revalidate import PROJECTS_LIST_PATH, Revalidator, project_path, review_path
from .tracks import atomic, check_version, get_track, latest_tracks, load_steps, write_steps

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255


@dataclass
class FeedbackItemInput:
    text: str = ""
    files: list[ImageUpload] = field(default_factory=list)


@dataclass
class NewProject:
    title: str
    client_name: str
    description: str | None = None
    deadline: date | None = None
    client_email: str | None = None
    password_protected: bool = False
    access_password: str | None = None


@dataclass
class EditableTrack:
    track: ProjectTrack
    steps: list[WorkStep]


async def _editable_track(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    expected_version: int | None,
) -> EditableTrack:
    track = await get_track(session, track_id, with_project=True)
    await require_project_owner(session, actor, track.project)
    sm.require_pending(track.client_decision)
    check_version(track, expected_version)
    return EditableTrack(track=track, steps=load_steps(track))


async def _upload_items(items: Sequence[FeedbackItemInput], images: ImageContext) -> list[sm.FeedbackItem]:
    for item in items:
        validate_batch(item.files, limits=images.limits)
    encoded: list[sm.FeedbackItem] = []
    for item in items:
        urls = await upload_batch(images.host, item.files, limits=images.limits)
        encoded.append(sm.FeedbackItem(encoded=encode_links(item.text), images=urls))
    return encoded


async def _signal(revalidator: Revalidator, track: ProjectTrack) -> None:
    await revalidator.revalidate(project_path(track.project_id), review_path(track.id))


# ============ Projects ============

def _clean_project_fields(title: str | None, client_name: str | None) -> tuple[str, str]:
    title = (title or "").strip()
    client_name = (client_name or "").strip()
    if not title:
        raise ValidationError("Project title cannot be empty.")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Project title is too long (max {MAX_TITLE_LENGTH} chars).")
    if not client_name:
        raise ValidationError("Client name cannot be empty.")
    return title, client_name


async def create_project(
    session: AsyncSession,
    actor: Actor,
    data: NewProject,
    items: Sequence[FeedbackItemInput],
    *,
    images: ImageContext,
    revalidator: Revalidator,
) -> tuple[Project, ProjectTrack]:
    """Create a project and its round 1 track with one pending step per item."""
    profile = await get_editor_profile(session, actor)
    title, client_name = _clean_project_fields(data.title, data.client_name)
    password = (data.access_password or "").strip() or None
    if data.password_protected and not password:
        raise ValidationError("Password is required when enabling protection.")

    feedback = await _upload_items(items, images)

    async with atomic(session):
        project = Project(
            editor_id=profile.id,
            title=title,
            description=(data.description or "").strip() or None,
            deadline=data.deadline,
            status=ProjectStatus.active.value,
            client_name=client_name,
            client_email=(data.client_email or "").strip() or None,
            password_protected=data.password_protected,
            access_password=password if data.password_protected else None,
        )
        session.add(project)
        await session.flush()
        track = ProjectTrack(
            project_id=project.id,
            round_number=1,
            status=TrackStatus.in_progress.value,
            client_decision=ClientDecision.pending.value,
            steps=sm.dump_steps(sm.build_round_steps(feedback)),
        )
        session.add(track)

    logger.info("Project %s created with %d initial step(s)", project.id, len(feedback))
    await revalidator.revalidate(PROJECTS_LIST_PATH)
    return project, track


async def _owned_project(session: AsyncSession, actor: Actor, project_id: str) -> Project:
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found or you don't have permission to access it.")
    await require_project_owner(session, actor, project)
    return project


async def update_project(
    session: AsyncSession,
    actor: Actor,
    project_id: str,
    data: ProjectUpdate,
    *,
    revalidator: Revalidator,
) -> Project:
    project = await _owned_project(session, actor, project_id)
    title, client_name = _clean_project_fields(data.title, data.client_name)
    password = data.access_password.strip() if data.access_password is not None else None
    if data.password_protected and not project.password_protected and not password:
        raise ValidationError("Password is required when enabling protection.")

    async with atomic(session):
        project.title = title
        project.description = (data.description or "").strip() or None
        project.deadline = data.deadline
        project.client_name = client_name
        project.client_email = (data.client_email or "").strip() or None
        project.password_protected = data.password_protected
        if not data.password_protected:
            project.access_password = None
        elif password:
            project.access_password = password
        project.updated_at = datetime.now(timezone.utc)

    logger.info("Project %s updated", project_id)
    await revalidator.revalidate(project_path(project_id), PROJECTS_LIST_PATH)
    return project


async def delete_project(
    session: AsyncSession,
    actor: Actor,
    project_id: str,
    *,
    revalidator: Revalidator,
) -> None:
    """Delete a project; its tracks and comments go with it."""
    await _owned_project(session, actor, project_id)
    async with atomic(session):
        await session.execute(delete(Project).where(Project.id == project_id))
    logger.info("Project %s deleted", project_id)
    await revalidator.revalidate(project_path(project_id), PROJECTS_LIST_PATH)


async def list_projects(session: AsyncSession, actor: Actor) -> list[tuple[Project, ProjectTrack | None]]:
    profile = await get_editor_profile(session, actor)
    res = await session.execute(
        select(Project).where(Project.editor_id == profile.id).order_by(Project.created_at.desc())
    )
    projects = list(res.scalars().all())
    latest = await latest_tracks(session, [p.id for p in projects])
    return [(p, latest.get(p.id)) for p in projects]


def _dashboard_bucket(project: Project, latest: ProjectTrack | None) -> str:
    """completed, pending (latest round waiting on the client) or active."""
    if project.status == ProjectStatus.completed.value:
        return "completed"
    if (
        latest is not None
        and latest.status == TrackStatus.in_review.value
        and latest.client_decision == ClientDecision.pending.value
    ):
        return "pending"
    return "active"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def get_dashboard_stats(
    session: AsyncSession,
    actor: Actor,
    *,
    now: datetime | None = None,
) -> DashboardStats:
    """Project counts per bucket, all time and for projects created this month (UTC)."""
    rows = await list_projects(session, actor)
    now = now or datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    all_time: Counter[str] = Counter()
    this_month: Counter[str] = Counter()
    for project, latest in rows:
        bucket = _dashboard_bucket(project, latest)
        all_time[bucket] += 1
        if project.created_at is not None and _as_utc(project.created_at) >= month_start:
            this_month[bucket] += 1

    return DashboardStats(
        all_time=ProjectCounts(**all_time),
        this_month=ProjectCounts(**this_month),
        month_start=month_start,
    )


async def get_project(session: AsyncSession, actor: Actor, project_id: str) -> Project:
    res = await session.execute(
        select(Project).where(Project.id == project_id).options(selectinload(Project.tracks))
    )
    project = res.scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project not found.")
    await require_project_owner(session, actor, project)
    for track in project.tracks:
        load_steps(track)
    return project


# ============ Round 1 ============

async def _initial_track(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    expected_version: int | None,
) -> EditableTrack:
    editable = await _editable_track(session, actor, track_id, expected_version)
    if editable.track.round_number != 1:
        raise NotFoundError("Initial track not found.")
    return editable


async def create_initial_round(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    items: Sequence[FeedbackItemInput],
    *,
    expected_version: int | None,
    images: ImageContext,
    revalidator: Revalidator,
) -> ProjectTrack:
    """Replace round 1 with pending steps built from `items`."""
    editable = await _initial_track(session, actor, track_id, expected_version)
    feedback = await _upload_items(items, images)

    track = editable.track
    async with atomic(session):
        write_steps(track, sm.build_round_steps(feedback))
        track.status = TrackStatus.in_progress.value

    logger.info("Initial round created for track %s", track_id)
    await _signal(revalidator, track)
    return track


async def deliver_initial_round(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    deliverable_link: str,
    media_type: str,
    items: Sequence[FeedbackItemInput],
    *,
    expected_version: int | None,
    images: ImageContext,
    revalidator: Revalidator,
) -> ProjectTrack:
    """Populate round 1 as already worked through and hand it to the client."""
    editable = await _initial_track(session, actor, track_id, expected_version)
    # Validate the final step transition before any upload happens.
    sm.set_step_status(
        editable.steps, None, len(editable.steps) - 1, "completed",
        deliverable_link=deliverable_link, new_media_type=media_type,
    )
    feedback = await _upload_items(items, images)
    steps = sm.build_delivered_steps(feedback, deliverable_link)

    track = editable.track
    async with atomic(session):
        write_steps(track, steps)
        track.status = TrackStatus.in_review.value
        track.final_deliverable_media_type = media_type

    logger.info("Initial round delivered for track %s", track_id)
    await _signal(revalidator, track)
    return track


# ============ Step edits ============

async def update_step_status(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    step_index: int,
    new_status: str,
    *,
    expected_version: int | None,
    revalidator: Revalidator,
    deliverable_link: str | None = None,
    media_type: str | None = None,
) -> ProjectTrack:
    editable = await _editable_track(session, actor, track_id, expected_version)
    track = editable.track
    change = sm.set_step_status(
        editable.steps,
        track.final_deliverable_media_type,
        step_index,
        new_status,
        deliverable_link=deliverable_link,
        new_media_type=media_type,
    )
    if not change.changed:
        return track

    async with atomic(session):
        write_steps(track, change.steps)
        track.final_deliverable_media_type = change.media_type
        if isinstance(change.steps[step_index], FinalStep) and new_status == "completed":
            track.status = TrackStatus.in_review.value

    logger.info("Track %s step %d set to %s", track_id, step_index, new_status)
    await _signal(revalidator, track)
    return track


async def update_track_structure(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    descriptors: Sequence[StepDescriptor],
    *,
    expected_version: int | None,
    revalidator: Revalidator,
) -> ProjectTrack:
    editable = await _editable_track(session, actor, track_id, expected_version)
    steps = sm.restructure_steps(editable.steps, descriptors)

    track = editable.track
    async with atomic(session):
        write_steps(track, steps)

    logger.info("Track %s structure updated (%d step(s))", track_id, len(steps) - 1)
    await _signal(revalidator, track)
    return track


async def update_step_content(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    step_index: int,
    text: str,
    existing_images: Sequence[str],
    new_files: Sequence[ImageUpload],
    *,
    expected_version: int | None,
    images: ImageContext,
    revalidator: Revalidator,
) -> ProjectTrack:
    editable = await _editable_track(session, actor, track_id, expected_version)
    if step_index < 0 or step_index >= len(editable.steps):
        raise ValidationError("Invalid step index or steps format issue.")
    if isinstance(editable.steps[step_index], FinalStep):
        raise ValidationError("The final deliverable step content cannot be edited directly.")

    kept = list(existing_images)
    uploaded = await upload_batch(images.host, new_files, existing_count=len(kept), limits=images.limits)
    steps = sm.update_step_content(editable.steps, step_index, encode_links((text or "").strip()), kept + uploaded)

    track = editable.track
    async with atomic(session):
        write_steps(track, steps)

    logger.info("Step %d content updated for track %s", step_index, track_id)
    await _signal(revalidator, track)
    return track


async def update_all_step_content(
    session: AsyncSession,
    actor: Actor,
    track_id: str,
    descriptors: Sequence[StepDescriptor],
    steps_to_process: Sequence[int],
    new_files: dict[int, list[ImageUpload]],
    *,
    expected_version: int | None,
    images: ImageContext,
    revalidator: Revalidator,
) -> ProjectTrack:
    """Bulk edit of the non-final steps: re-encode changed text, append new images."""
    editable = await _editable_track(session, actor, track_id, expected_version)
    sm.check_descriptors(descriptors)

    for index in list(steps_to_process) + list(new_files):
        if index < 0 or index >= len(descriptors):
            raise ValidationError(f"Invalid step index: {index}")
    for index, files in new_files.items():
        validate_batch(files, existing_count=len(descriptors[index].images), limits=images.limits)

    encoded_text: dict[int, EncodedText] = {}
    for index in steps_to_process:
        metadata = descriptors[index].metadata
        plain = decode_links(metadata.text or "", metadata.links or []) if metadata else ""
        encoded_text[index] = encode_links(plain)

    uploaded: dict[int, list[str]] = {}
    for index, files in new_files.items():
        uploaded[index] = await upload_batch(
            images.host, files, existing_count=len(descriptors[index].images), limits=images.limits
        )

    steps = sm.apply_bulk_content(editable.steps, descriptors, encoded_text=encoded_text, new_images=uploaded)

    track = editable.track
    async with atomic(session):
        write_steps(track, steps)

    logger.info("All steps updated for track %s", track_id)
    await _signal(revalidator, track)
    return track
