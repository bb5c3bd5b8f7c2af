"""
Editor-side HTTP surface: projects, round 1 and step edits.

Multipart endpoints carry feedback items as a JSON `comments` field plus
files named `image_<item>_<n>`; the bulk step edit uses `stepsStructure`,
`stepsToProcess` and files named `newImage_<step>_<n>`.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, List

import pydantic
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import FormData, UploadFile as StarletteUploadFile

from .db import get_session
from .deps import get_actor, get_image_context, get_revalidator, read_upload
from .errors import ValidationError
from .models import Project, ProjectTrack
from .schemas import (
    DashboardStats,
    FeedbackItemIn,
    MessageResponse,
    ProjectDetail,
    ProjectRead,
    ProjectSummary,
    ProjectUpdate,
    StepDescriptor,
    StepStatusUpdate,
    TrackRead,
    TrackStructureUpdate,
)
from .services import editor_service
from .services.access import Actor
from .services.editor_service import FeedbackItemInput, NewProject
from .services.images import ImageContext, ImageUpload
from .services.revalidate import Revalidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["projects"])

SessionDep = Depends(get_session)
ActorDep = Depends(get_actor)
ImagesDep = Depends(get_image_context)
RevalidatorDep = Depends(get_revalidator)

_feedback_adapter = pydantic.TypeAdapter(List[FeedbackItemIn])
_descriptors_adapter = pydantic.TypeAdapter(List[StepDescriptor])
_indices_adapter = pydantic.TypeAdapter(List[int])
_strings_adapter = pydantic.TypeAdapter(List[str])

TRUTHY = {"1", "true", "on", "yes"}


# ============ Form helpers ============

def _text(form: FormData, name: str) -> str | None:
    value = form.get(name)
    return value if isinstance(value, str) else None


def _flag(form: FormData, name: str) -> bool:
    return (_text(form, name) or "").strip().lower() in TRUTHY


def _json_field(form: FormData, name: str, adapter: pydantic.TypeAdapter, default: Any) -> Any:
    raw = _text(form, name)
    if raw is None or not raw.strip():
        return default
    try:
        return adapter.validate_python(json.loads(raw))
    except (json.JSONDecodeError, pydantic.ValidationError) as e:
        logger.warning("Malformed %s payload: %s", name, e)
        raise ValidationError(f"Invalid {name} format.") from e


def _version(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("Invalid track version.") from None


def _deadline(raw: str | None) -> date | None:
    if not raw or not raw.strip():
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise ValidationError("Invalid deadline date.") from None


async def _files_by_prefix(form: FormData, prefix: str) -> dict[int, list[ImageUpload]]:
    """Collect files named `<prefix>_<index>_<n>`, grouped by index in `n` order."""
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)_(\d+)$")
    found: dict[int, list[tuple[int, StarletteUploadFile]]] = {}
    for key, value in form.multi_items():
        match = pattern.match(key)
        if match and isinstance(value, StarletteUploadFile):
            found.setdefault(int(match.group(1)), []).append((int(match.group(2)), value))
    grouped: dict[int, list[ImageUpload]] = {}
    for index, entries in found.items():
        grouped[index] = [await read_upload(f) for _, f in sorted(entries, key=lambda e: e[0])]
    return grouped


async def _feedback_items(form: FormData) -> list[FeedbackItemInput]:
    items = _json_field(form, "comments", _feedback_adapter, [])
    files = await _files_by_prefix(form, "image")
    return [FeedbackItemInput(text=item.text, files=files.get(i, [])) for i, item in enumerate(items)]


def _project_detail(project: Project, tracks: list[ProjectTrack]) -> ProjectDetail:
    return ProjectDetail(
        **ProjectRead.model_validate(project).model_dump(),
        tracks=[TrackRead.model_validate(t) for t in tracks],
    )


# ============ Projects ============

@router.post("/projects", response_model=ProjectDetail, status_code=status.HTTP_201_CREATED)
async def create_project(
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    images: ImageContext = ImagesDep,
    revalidator: Revalidator = RevalidatorDep,
):
    form = await request.form()
    data = NewProject(
        title=_text(form, "title") or "",
        client_name=_text(form, "client_name") or "",
        description=_text(form, "description"),
        deadline=_deadline(_text(form, "deadline")),
        client_email=_text(form, "client_email"),
        password_protected=_flag(form, "password_protected"),
        access_password=_text(form, "access_password"),
    )
    items = await _feedback_items(form)
    project, track = await editor_service.create_project(
        session, actor, data, items, images=images, revalidator=revalidator
    )
    return _project_detail(project, [track])


@router.get("/projects", response_model=list[ProjectSummary])
async def list_projects(session: AsyncSession = SessionDep, actor: Actor = ActorDep):
    rows = await editor_service.list_projects(session, actor)
    return [
        ProjectSummary(
            **ProjectRead.model_validate(project).model_dump(),
            latest_round=latest.round_number if latest else None,
            latest_track_id=latest.id if latest else None,
            latest_decision=latest.client_decision if latest else None,
        )
        for project, latest in rows
    ]


@router.get("/projects/stats", response_model=DashboardStats)
async def dashboard_stats(session: AsyncSession = SessionDep, actor: Actor = ActorDep):
    return await editor_service.get_dashboard_stats(session, actor)


@router.get("/projects/{project_id}", response_model=ProjectDetail)
async def get_project(project_id: str, session: AsyncSession = SessionDep, actor: Actor = ActorDep):
    project = await editor_service.get_project(session, actor, project_id)
    return _project_detail(project, list(project.tracks))


@router.patch("/projects/{project_id}", response_model=ProjectRead)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    revalidator: Revalidator = RevalidatorDep,
):
    project = await editor_service.update_project(session, actor, project_id, data, revalidator=revalidator)
    return ProjectRead.model_validate(project)


@router.delete("/projects/{project_id}", response_model=MessageResponse)
async def delete_project(
    project_id: str,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await editor_service.delete_project(session, actor, project_id, revalidator=revalidator)
    return MessageResponse(message="Project deleted successfully.")


# ============ Round 1 ============

@router.post("/tracks/{track_id}/initial-round", response_model=TrackRead)
async def create_initial_round(
    track_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    images: ImageContext = ImagesDep,
    revalidator: Revalidator = RevalidatorDep,
):
    form = await request.form()
    items = await _feedback_items(form)
    track = await editor_service.create_initial_round(
        session,
        actor,
        track_id,
        items,
        expected_version=_version(_text(form, "version")),
        images=images,
        revalidator=revalidator,
    )
    return TrackRead.model_validate(track)


@router.post("/tracks/{track_id}/deliver", response_model=TrackRead)
async def deliver_initial_round(
    track_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    images: ImageContext = ImagesDep,
    revalidator: Revalidator = RevalidatorDep,
):
    form = await request.form()
    items = await _feedback_items(form)
    track = await editor_service.deliver_initial_round(
        session,
        actor,
        track_id,
        _text(form, "deliverable_link") or "",
        _text(form, "media_type") or "",
        items,
        expected_version=_version(_text(form, "version")),
        images=images,
        revalidator=revalidator,
    )
    return TrackRead.model_validate(track)


# ============ Steps ============

@router.patch("/tracks/{track_id}/steps/{step_index}/status", response_model=TrackRead)
async def update_step_status(
    track_id: str,
    step_index: int,
    data: StepStatusUpdate,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    revalidator: Revalidator = RevalidatorDep,
):
    track = await editor_service.update_step_status(
        session,
        actor,
        track_id,
        step_index,
        data.status,
        expected_version=data.version,
        revalidator=revalidator,
        deliverable_link=data.deliverable_link,
        media_type=data.media_type.value if data.media_type else None,
    )
    return TrackRead.model_validate(track)


@router.put("/tracks/{track_id}/structure", response_model=TrackRead)
async def update_track_structure(
    track_id: str,
    data: TrackStructureUpdate,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    revalidator: Revalidator = RevalidatorDep,
):
    track = await editor_service.update_track_structure(
        session, actor, track_id, data.steps, expected_version=data.version, revalidator=revalidator
    )
    return TrackRead.model_validate(track)


@router.post("/tracks/{track_id}/steps/{step_index}/content", response_model=TrackRead)
async def update_step_content(
    track_id: str,
    step_index: int,
    version: str = Form(""),
    text: str = Form(""),
    existing_images: str = Form("[]"),
    new_images: List[UploadFile] = File(default=[]),
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    images: ImageContext = ImagesDep,
    revalidator: Revalidator = RevalidatorDep,
):
    try:
        kept = _strings_adapter.validate_python(json.loads(existing_images or "[]"))
    except (json.JSONDecodeError, pydantic.ValidationError) as e:
        raise ValidationError("Invalid existing images format.") from e
    files = [await read_upload(f) for f in new_images]
    track = await editor_service.update_step_content(
        session,
        actor,
        track_id,
        step_index,
        text,
        kept,
        files,
        expected_version=_version(version),
        images=images,
        revalidator=revalidator,
    )
    return TrackRead.model_validate(track)


@router.post("/tracks/{track_id}/steps", response_model=TrackRead)
async def update_all_step_content(
    track_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    images: ImageContext = ImagesDep,
    revalidator: Revalidator = RevalidatorDep,
):
    form = await request.form()
    if _text(form, "stepsStructure") is None or _text(form, "stepsToProcess") is None:
        raise ValidationError("Missing required data.")
    descriptors = _json_field(form, "stepsStructure", _descriptors_adapter, [])
    to_process = _json_field(form, "stepsToProcess", _indices_adapter, [])
    new_files = await _files_by_prefix(form, "newImage")
    track = await editor_service.update_all_step_content(
        session,
        actor,
        track_id,
        descriptors,
        to_process,
        new_files,
        expected_version=_version(_text(form, "version")),
        images=images,
        revalidator=revalidator,
    )
    return TrackRead.model_validate(track)
