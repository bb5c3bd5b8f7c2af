"""
Track/step state machine.

Pure functions over a round's ordered step list. Every function returns a
new list; callers persist it as a whole. A valid list holds exactly one
FinalStep and it is the last element.

Decision:  pending -> approved | revisions_requested (terminal)
Track:     in_progress -> in_review
Step:      pending <-> completed (final step completion needs link + media type)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

import pydantic

from ..errors import PersistenceError, StateConflictError, ValidationError
from ..models import ClientDecision, MediaType
from ..schemas import FinalStep, ItemStep, StepDescriptor, StepMetadata, WorkStep, steps_adapter
from .links import EncodedText

logger = logging.getLogger(__name__)

FINAL_STEP_NAME = "Finish"
REVISION_FINAL_STEP_NAME = "Finish Revisions"


@dataclass
class FeedbackItem:
    """Link-encoded feedback text plus the URLs of its uploaded images."""

    encoded: EncodedText
    images: list[str] = field(default_factory=list)


@dataclass
class CarryOverComment:
    id: str
    text: str
    timestamp: float
    images: list[str] = field(default_factory=list)
    links: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class StatusChange:
    steps: list[WorkStep]
    media_type: str | None
    changed: bool


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============ Read / write boundary ============

def check_shape(steps: Sequence[WorkStep]) -> None:
    finals = [i for i, step in enumerate(steps) if isinstance(step, FinalStep)]
    if len(finals) != 1 or finals[0] != len(steps) - 1:
        raise ValueError(f"expected exactly one final step at the end, found final steps at {finals}")


def parse_steps(raw: Any, *, track_id: str | None = None) -> list[WorkStep]:
    """Validate persisted steps before any mutation is computed from them."""
    try:
        steps = steps_adapter.validate_python(raw if raw is not None else [])
        check_shape(steps)
    except (pydantic.ValidationError, ValueError) as e:
        logger.error("Malformed persisted steps on track %s: %s", track_id, e)
        raise PersistenceError(f"Track {track_id} has malformed persisted steps.") from e
    return steps


def dump_steps(steps: Sequence[WorkStep]) -> list[dict]:
    check_shape(steps)
    return steps_adapter.dump_python(list(steps), mode="json")


def require_pending(decision: str) -> None:
    if decision != ClientDecision.pending.value:
        raise StateConflictError(decision)


def final_step(steps: Sequence[WorkStep]) -> FinalStep:
    return steps[-1]  # type: ignore[return-value]


def completed_count(steps: Sequence[WorkStep]) -> int:
    return sum(1 for step in steps if step.status == "completed")


def track_progress(steps: Sequence[WorkStep]) -> int:
    """Percent of completed steps, final step included, rounded half up."""
    if not steps:
        return 0
    total = len(steps)
    return (completed_count(steps) * 200 + total) // (2 * total)


# ============ Round construction ============

def _item_step(
    item: FeedbackItem,
    index: int,
    *,
    status: str,
    name: str | None,
    created_at: str,
) -> ItemStep:
    return ItemStep(
        name=name,
        status=status,
        metadata=StepMetadata(
            type="comment",
            text=item.encoded.processed_text,
            images=list(item.images),
            links=list(item.encoded.links),
            created_at=created_at,
            step_index=index,
        ),
    )


def build_round_steps(items: Sequence[FeedbackItem]) -> list[WorkStep]:
    """Round 1 before delivery: named pending items, then a pending "Finish"."""
    created_at = _now_iso()
    steps: list[WorkStep] = [
        _item_step(item, i, status="pending", name=f"Step {i + 1}", created_at=created_at)
        for i, item in enumerate(items)
    ]
    steps.append(FinalStep(name=FINAL_STEP_NAME, status="pending", deliverable_link=None))
    return steps


def build_delivered_steps(items: Sequence[FeedbackItem], deliverable_link: str) -> list[WorkStep]:
    """Round 1 delivered in one go: completed items and a completed final step."""
    if not deliverable_link or not deliverable_link.strip():
        raise ValidationError("Deliverable link is required.")
    created_at = _now_iso()
    steps: list[WorkStep] = [
        _item_step(item, i, status="completed", name=None, created_at=created_at)
        for i, item in enumerate(items)
    ]
    steps.append(FinalStep(status="completed", deliverable_link=deliverable_link.strip()))
    return steps


def steps_from_comments(comments: Iterable[CarryOverComment]) -> list[WorkStep]:
    """Next round's steps: one pending item per comment by ascending timestamp."""
    ordered = sorted(
        comments,
        key=lambda c: (c.timestamp, c.created_at.timestamp() if c.created_at else 0.0),
    )
    steps: list[WorkStep] = []
    for i, c in enumerate(ordered):
        steps.append(
            ItemStep(
                status="pending",
                metadata=StepMetadata(
                    type="comment",
                    comment_id=c.id,
                    text=c.text,
                    timestamp=c.timestamp,
                    images=list(c.images),
                    links=list(c.links),
                    created_at=c.created_at.isoformat() if c.created_at else None,
                    step_index=i,
                ),
            )
        )
    steps.append(FinalStep(name=REVISION_FINAL_STEP_NAME, status="pending", deliverable_link=None))
    return steps


# ============ Mutations ============

def _check_index(steps: Sequence[WorkStep], index: int) -> None:
    if index < 0 or index >= len(steps):
        raise ValidationError(f"Invalid step index: {index}")


def set_step_status(
    steps: Sequence[WorkStep],
    media_type: str | None,
    index: int,
    new_status: str,
    *,
    deliverable_link: str | None = None,
    new_media_type: str | None = None,
) -> StatusChange:
    """Flip one step's status.

    Completing the final step records the deliverable link and media type;
    reverting it clears both.
    """
    _check_index(steps, index)
    if new_status not in ("pending", "completed"):
        raise ValidationError(f"Invalid step status: {new_status}")

    target = steps[index]
    updated = list(steps)

    if isinstance(target, FinalStep):
        if new_status == "completed":
            link = (deliverable_link or "").strip()
            if not link or not new_media_type:
                raise ValidationError("Completing the final step requires a deliverable link and media type.")
            if new_media_type not in {m.value for m in MediaType}:
                raise ValidationError(f"Invalid media type: {new_media_type}")
            media = MediaType(new_media_type).value
            new_step = target.model_copy(update={"status": "completed", "deliverable_link": link})
        else:
            media = None
            new_step = target.model_copy(update={"status": "pending", "deliverable_link": None})
    else:
        media = media_type
        new_step = target.model_copy(update={"status": new_status})

    changed = new_step != target or media != media_type
    updated[index] = new_step
    return StatusChange(steps=updated, media_type=media, changed=changed)


def _descriptor_metadata(descriptor: StepDescriptor) -> dict[str, Any]:
    if descriptor.metadata is None:
        return {}
    return descriptor.metadata.model_dump(mode="json", exclude_unset=True, exclude_none=True)


def check_descriptors(descriptors: Sequence[StepDescriptor]) -> None:
    """Descriptors cover the item steps only; the final step is never resent."""
    for i, descriptor in enumerate(descriptors):
        if descriptor.is_final:
            raise ValidationError(f"Step {i} is the final step; send only the non-final steps.")



def restructure_steps(steps: Sequence[WorkStep], descriptors: Sequence[StepDescriptor]) -> list[WorkStep]:
    """Replace the non-final steps with `descriptors`, reconciling by comment id.

    A descriptor whose metadata.comment_id matches a prior step keeps that
    step's status and timestamp; everything else starts pending. The prior
    final step is re-appended unchanged.
    """
    check_descriptors(descriptors)
    previous = {
        step.metadata.comment_id: step
        for step in steps
        if isinstance(step, ItemStep) and step.metadata.comment_id
    }
    finish = final_step(steps)

    rebuilt: list[WorkStep] = []
    for i, descriptor in enumerate(descriptors):
        incoming = _descriptor_metadata(descriptor)
        old = previous.get(incoming.get("comment_id")) if incoming.get("comment_id") else None

        merged: dict[str, Any] = {}
        if old is not None:
            merged.update(old.metadata.model_dump(mode="json"))
        merged.update(incoming)
        merged["type"] = old.metadata.type if old is not None else incoming.get("type", "comment")
        if old is not None:
            merged["comment_id"] = old.metadata.comment_id
            merged["timestamp"] = old.metadata.timestamp

        rebuilt.append(
            ItemStep(
                name=descriptor.name or f"Step {i + 1}",
                status=old.status if old is not None else "pending",
                metadata=_metadata(merged),
            )
        )

    rebuilt.append(finish)
    return rebuilt


def apply_bulk_content(
    steps: Sequence[WorkStep],
    descriptors: Sequence[StepDescriptor],
    *,
    encoded_text: dict[int, EncodedText],
    new_images: dict[int, list[str]],
) -> list[WorkStep]:
    """Apply an editor's bulk edit of the non-final steps.

    `encoded_text` holds re-encoded text for the descriptors whose text
    changed; `new_images` holds freshly uploaded URLs to append, both keyed
    by descriptor index. Timestamps are kept from the descriptor, else from
    the prior step with the same comment id, else 0.
    """
    check_descriptors(descriptors)
    previous = {
        step.metadata.comment_id: step
        for step in steps
        if isinstance(step, ItemStep) and step.metadata.comment_id
    }

    rebuilt: list[WorkStep] = []
    for i, descriptor in enumerate(descriptors):
        metadata = _descriptor_metadata(descriptor)
        comment_id = metadata.get("comment_id")
        old = previous.get(comment_id) if comment_id else None

        if i in encoded_text:
            encoded = encoded_text[i]
            metadata["text"] = encoded.processed_text
            metadata["links"] = [link.model_dump() for link in encoded.links]
            if metadata.get("timestamp") is None:
                metadata["timestamp"] = old.metadata.timestamp if old is not None and old.metadata.timestamp is not None else 0
        if new_images.get(i):
            metadata["images"] = list(metadata.get("images") or []) + list(new_images[i])
        metadata.setdefault("type", "comment")

        if old is not None:
            status = old.status
        else:
            status = descriptor.status or "pending"
        rebuilt.append(ItemStep(name=descriptor.name, status=status, metadata=_metadata(metadata)))

    rebuilt.append(final_step(steps))
    return rebuilt


def update_step_content(
    steps: Sequence[WorkStep],
    index: int,
    encoded: EncodedText,
    images: list[str],
) -> list[WorkStep]:
    """Replace one item step's text, links and images."""
    _check_index(steps, index)
    target = steps[index]
    if isinstance(target, FinalStep):
        raise ValidationError("The final deliverable step content cannot be edited directly.")

    metadata = target.metadata.model_copy(
        update={
            "text": encoded.processed_text,
            "links": list(encoded.links),
            "images": list(images),
            "created_at": target.metadata.created_at or _now_iso(),
        }
    )
    updated = list(steps)
    updated[index] = target.model_copy(update={"metadata": metadata})
    return updated


def _metadata(raw: dict[str, Any]) -> StepMetadata:
    try:
        return StepMetadata.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid step metadata: {e.errors()[0].get('msg', 'invalid value')}") from e
