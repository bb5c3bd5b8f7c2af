"""
Client-side HTTP surface: the review page, comments, the client's decision
and the password gate for protected projects.
"""
from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .deps import get_actor, get_image_context, get_proof_store, get_revalidator, read_upload
from .errors import ValidationError
from .schemas import (
    ApproveRequest,
    CommentRead,
    LiveTrackRead,
    MessageResponse,
    PasswordVerifyRequest,
    PasswordVerifyResult,
    ReviewRead,
    TrackRead,
)
from .services import review_service
from .services.access import Actor
from .services.images import ImageContext
from .services.password_gate import ProofStore, cookie_name, verify_project_password
from .services.revalidate import Revalidator
from .settings import get_settings

router = APIRouter(prefix="/api/review", tags=["review"])

SessionDep = Depends(get_session)
ActorDep = Depends(get_actor)
ImagesDep = Depends(get_image_context)
ProofsDep = Depends(get_proof_store)
RevalidatorDep = Depends(get_revalidator)


def _json_list(raw: Optional[str], name: str) -> Optional[list]:
    if raw is None:
        return None
    if not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid {name} format.") from e
    if not isinstance(value, list):
        raise ValidationError(f"Invalid {name} format.")
    return value


@router.get("/{track_id}", response_model=ReviewRead)
async def get_review(
    track_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    proofs: ProofStore = ProofsDep,
):
    return await review_service.get_review(session, actor, track_id, proofs=proofs, cookies=request.cookies)


@router.get("/projects/{project_id}/live", response_model=LiveTrackRead)
async def get_live_track(
    project_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    proofs: ProofStore = ProofsDep,
):
    return await review_service.get_live_track(session, actor, project_id, proofs=proofs, cookies=request.cookies)


# ============ Comments ============

@router.post("/{track_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
async def add_comment(
    track_id: str,
    request: Request,
    text: str = Form(""),
    timestamp: Optional[str] = Form(None),
    commenter_name: Optional[str] = Form(None),
    links: Optional[str] = Form(None),
    images: List[UploadFile] = File(default=[]),
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    image_ctx: ImageContext = ImagesDep,
    proofs: ProofStore = ProofsDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await review_service.require_review_access(session, track_id, proofs=proofs, cookies=request.cookies)
    files = [await read_upload(f) for f in images]
    return await review_service.add_review_comment(
        session,
        actor,
        track_id,
        text=text,
        timestamp=timestamp,
        commenter_name=commenter_name,
        files=files,
        links=_json_list(links, "links"),
        images=image_ctx,
        revalidator=revalidator,
    )


@router.patch("/comments/{comment_id}", response_model=CommentRead)
async def update_comment(
    comment_id: str,
    request: Request,
    text: Optional[str] = Form(None),
    existing_images: Optional[str] = Form(None),
    commenter_name: Optional[str] = Form(None),
    new_images: List[UploadFile] = File(default=[]),
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    image_ctx: ImageContext = ImagesDep,
    proofs: ProofStore = ProofsDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await review_service.require_comment_access(session, comment_id, proofs=proofs, cookies=request.cookies)
    kept = _json_list(existing_images, "existing images")
    if kept is not None and not all(isinstance(url, str) for url in kept):
        raise ValidationError("Invalid existing images format.")
    files = [await read_upload(f) for f in new_images]
    return await review_service.update_review_comment(
        session,
        actor,
        comment_id,
        text=text,
        existing_images=kept,
        commenter_name=commenter_name,
        files=files,
        images=image_ctx,
        revalidator=revalidator,
    )


@router.delete("/comments/{comment_id}", response_model=MessageResponse)
async def delete_comment(
    comment_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    actor: Actor = ActorDep,
    proofs: ProofStore = ProofsDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await review_service.require_comment_access(session, comment_id, proofs=proofs, cookies=request.cookies)
    await review_service.delete_review_comment(session, actor, comment_id, revalidator=revalidator)
    return MessageResponse(message="Comment deleted successfully.")


# ============ Decisions ============

@router.post("/{track_id}/request-revisions", response_model=TrackRead, status_code=status.HTTP_201_CREATED)
async def request_revisions(
    track_id: str,
    request: Request,
    session: AsyncSession = SessionDep,
    proofs: ProofStore = ProofsDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await review_service.require_review_access(session, track_id, proofs=proofs, cookies=request.cookies)
    next_track = await review_service.request_revisions(session, track_id, revalidator=revalidator)
    return TrackRead.model_validate(next_track)


@router.post("/{track_id}/approve", response_model=TrackRead)
async def approve(
    track_id: str,
    data: ApproveRequest,
    request: Request,
    session: AsyncSession = SessionDep,
    proofs: ProofStore = ProofsDep,
    revalidator: Revalidator = RevalidatorDep,
):
    await review_service.require_review_access(session, track_id, proofs=proofs, cookies=request.cookies)
    track = await review_service.approve_project(session, data.project_id, track_id, revalidator=revalidator)
    return TrackRead.model_validate(track)


# ============ Password gate ============

@router.post("/projects/{project_id}/verify-password", response_model=PasswordVerifyResult)
async def verify_password(
    project_id: str,
    data: PasswordVerifyRequest,
    response: Response,
    session: AsyncSession = SessionDep,
    proofs: ProofStore = ProofsDep,
):
    """
    Check the project password.
    On success the proof token is set as an httponly cookie valid for 24 hours.
    """
    result = await verify_project_password(session, proofs, project_id, data.password)
    if result.token:
        settings = get_settings()
        response.set_cookie(
            cookie_name(project_id),
            result.token,
            max_age=settings.project_proof_ttl_hours * 3600,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            path="/",
        )
    return PasswordVerifyResult(success=result.success, message=result.message)
