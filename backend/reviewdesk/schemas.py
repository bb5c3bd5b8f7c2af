from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

from .models import ClientDecision, MediaType


# ============ Persisted documents ============

class Link(BaseModel):
    url: str
    text: str


class StepMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["comment", "general_revision"] = "comment"
    comment_id: str | None = None
    text: str | None = None
    timestamp: float | None = None
    images: list[str] = Field(default_factory=list, max_length=4)
    links: list[Link] = Field(default_factory=list)
    created_at: str | None = None
    step_index: int | None = None


class ItemStep(BaseModel):
    """A feedback item the editor works through."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    status: Literal["pending", "completed"] = "pending"
    is_final: Literal[False] = False
    deliverable_link: None = None
    metadata: StepMetadata = Field(default_factory=StepMetadata)


class FinalStep(BaseModel):
    """The round's single deliverable marker; always the last step."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    status: Literal["pending", "completed"] = "pending"
    is_final: Literal[True] = True
    deliverable_link: str | None = None


def _step_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "final" if value.get("is_final") else "item"
    return "final" if getattr(value, "is_final", False) else "item"


WorkStep = Annotated[
    Union[Annotated[ItemStep, Tag("item")], Annotated[FinalStep, Tag("final")]],
    Discriminator(_step_kind),
]

steps_adapter: TypeAdapter[list[WorkStep]] = TypeAdapter(list[WorkStep])


class CommentData(BaseModel):
    """Stored body of a ReviewComment."""

    model_config = ConfigDict(extra="ignore")

    text: str = ""
    timestamp: float = Field(ge=0)
    images: list[str] = Field(default_factory=list, max_length=4)
    links: list[Link] = Field(default_factory=list)

    def to_document(self) -> dict:
        doc: dict[str, Any] = {"text": self.text, "timestamp": self.timestamp}
        if self.images:
            doc["images"] = list(self.images)
        if self.links:
            doc["links"] = [link.model_dump() for link in self.links]
        return doc


# ============ Requests ============

class FeedbackItemIn(BaseModel):
    """Initial feedback item; `images` counts the files attached under image_<i>_<j>."""

    text: str = ""
    images: list[str] = Field(default_factory=list)


class DescriptorMetadata(BaseModel):
    """Step metadata as the editor sends it back; every field optional."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["comment", "general_revision"] | None = None
    comment_id: str | None = None
    text: str | None = None
    timestamp: float | None = None
    images: list[str] | None = None
    links: list[Link] | None = None
    created_at: str | None = None
    step_index: int | None = None


class StepDescriptor(BaseModel):
    """Editor-supplied non-final step for restructure / bulk update."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    status: Literal["pending", "completed"] | None = None
    is_final: bool = False
    metadata: DescriptorMetadata | None = None

    @property
    def images(self) -> list[str]:
        return list(self.metadata.images or []) if self.metadata else []


class StepStatusUpdate(BaseModel):
    version: int
    status: Literal["pending", "completed"]
    deliverable_link: str | None = None
    media_type: MediaType | None = None


class TrackStructureUpdate(BaseModel):
    version: int
    steps: list[StepDescriptor]


class ProjectUpdate(BaseModel):
    title: str
    description: str | None = None
    deadline: date | None = None
    client_name: str
    client_email: str | None = None
    password_protected: bool = False
    access_password: str | None = None


class ApproveRequest(BaseModel):
    project_id: str


class PasswordVerifyRequest(BaseModel):
    password: str = ""


# ============ Responses ============

class TrackRead(BaseModel):
    id: str
    project_id: str
    round_number: int
    status: str
    client_decision: ClientDecision
    steps: list[WorkStep]
    final_deliverable_media_type: MediaType | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ProjectRead(BaseModel):
    id: str
    title: str
    description: str | None = None
    deadline: date | None = None
    status: str
    client_name: str
    client_email: str | None = None
    password_protected: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ProjectSummary(ProjectRead):
    latest_round: int | None = None
    latest_track_id: str | None = None
    latest_decision: ClientDecision | None = None


class ProjectDetail(ProjectRead):
    tracks: list[TrackRead]


class CommentRead(BaseModel):
    id: str
    created_at: datetime | None = None
    comment: CommentData
    commenter_display_name: str
    is_own_comment: bool


class ReviewRead(BaseModel):
    ready: bool
    track_id: str
    project_id: str
    project_title: str
    round_number: int
    client_decision: ClientDecision
    deliverable_link: str | None = None
    deliverable_media_type: MediaType | None = None
    comments: list[CommentRead] = Field(default_factory=list)


class LiveRound(BaseModel):
    """One round on the client's live-track page."""

    id: str
    round_number: int
    status: str
    client_decision: ClientDecision
    steps: list[WorkStep]
    completed_steps: int
    total_steps: int
    progress: int
    deliverable_link: str | None = None
    final_deliverable_media_type: MediaType | None = None
    updated_at: datetime | None = None


class LiveTrackRead(BaseModel):
    project: ProjectRead
    active_track: LiveRound
    tracks: list[LiveRound]
    comments: list[CommentRead] = Field(default_factory=list)


class ProjectCounts(BaseModel):
    active: int = 0
    pending: int = 0
    completed: int = 0


class DashboardStats(BaseModel):
    all_time: ProjectCounts
    this_month: ProjectCounts
    month_start: datetime


class PasswordVerifyResult(BaseModel):
    success: bool
    message: str


class MessageResponse(BaseModel):
    message: str
