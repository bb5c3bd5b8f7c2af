"""project tracks and review comments

Revision ID: 0002_tracks_and_comments
Revises: 0001_editor_projects
Create Date: 2026-10-12 10:30:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_tracks_and_comments"
down_revision = "0001_editor_projects"
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "project_tracks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="in_progress"),
        sa.Column("client_decision", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("steps", JSONType, nullable=False, server_default=sa.text("'[]'")),
        sa.Column("final_deliverable_media_type", sa.String(length=16), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_project_tracks_project_id", "project_tracks", ["project_id"], unique=False)
    op.create_unique_constraint("uq_project_tracks_project_round", "project_tracks", ["project_id", "round_number"])

    op.create_table(
        "review_comments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "track_id",
            sa.String(length=36),
            sa.ForeignKey("project_tracks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("comment", JSONType, nullable=False),
        sa.Column("commenter_name", sa.String(length=255), nullable=True),
        sa.Column("commenter_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_review_comments_track_id", "review_comments", ["track_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_review_comments_track_id", table_name="review_comments")
    op.drop_table("review_comments")
    op.drop_constraint("uq_project_tracks_project_round", "project_tracks", type_="unique")
    op.drop_index("ix_project_tracks_project_id", table_name="project_tracks")
    op.drop_table("project_tracks")
