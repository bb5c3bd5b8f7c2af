from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStatus(str, Enum):
    active = "active"
    completed = "completed"


class TrackStatus(str, Enum):
    in_progress = "in_progress"
    in_review = "in_review"


class ClientDecision(str, Enum):
    pending = "pending"
    approved = "approved"
    revisions_requested = "revisions_requested"


class MediaType(str, Enum):
    video = "video"
    image = "image"


class EditorProfile(Base):
    __tablename__ = "editor_profiles"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    has_password: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), nullable=False
    )

    projects: Mapped[list["Project"]] = relationship(
        back_populates="editor", cascade="all, delete-orphan", passive_deletes=True
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    editor_id: Mapped[str] = mapped_column(
        sa.ForeignKey("editor_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    deadline: Mapped[date | None] = mapped_column(sa.Date(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=ProjectStatus.active.value)
    client_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    client_email: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    password_protected: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False)
    access_password: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), onupdate=_utcnow, nullable=False
    )

    editor: Mapped[EditorProfile] = relationship(back_populates="projects")
    tracks: Mapped[list["ProjectTrack"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProjectTrack.round_number",
    )


class ProjectTrack(Base):
    __tablename__ = "project_tracks"
    __table_args__ = (sa.UniqueConstraint("project_id", "round_number", name="uq_project_tracks_project_round"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(
        sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    round_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=TrackStatus.in_progress.value)
    client_decision: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=ClientDecision.pending.value
    )
    # Ordered list of step documents; see schemas.WorkStep for the shape.
    steps: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=list)
    final_deliverable_media_type: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    version: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), onupdate=_utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    project: Mapped[Project] = relationship(back_populates="tracks")
    comments: Mapped[list["ReviewComment"]] = relationship(
        back_populates="track", cascade="all, delete-orphan", passive_deletes=True
    )


class ReviewComment(Base):
    __tablename__ = "review_comments"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    track_id: Mapped[str] = mapped_column(
        sa.ForeignKey("project_tracks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # {text, timestamp, images?, links?}; see schemas.CommentData.
    comment: Mapped[dict] = mapped_column(sa.JSON(), nullable=False)
    commenter_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    commenter_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, server_default=sa.func.now(), nullable=False
    )

    track: Mapped[ProjectTrack] = relationship(back_populates="comments")
