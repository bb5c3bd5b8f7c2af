from datetime import datetime, timedelta, timezone

import pydantic
import pytest

from reviewdesk.errors import PersistenceError, StateConflictError, ValidationError
from reviewdesk.schemas import FinalStep, ItemStep, StepDescriptor
from reviewdesk.services import steps as sm
from reviewdesk.services.links import encode_links

from conftest import final_step, item_step


def _steps(*raw: dict):
    return sm.parse_steps(list(raw), track_id="t1")


def test_parse_rejects_missing_final_step() -> None:
    with pytest.raises(PersistenceError, match="malformed"):
        sm.parse_steps([item_step("a")], track_id="t1")


def test_parse_rejects_final_step_not_last() -> None:
    with pytest.raises(PersistenceError):
        sm.parse_steps([final_step(), item_step("a")], track_id="t1")


def test_parse_rejects_unknown_status() -> None:
    with pytest.raises(PersistenceError):
        sm.parse_steps([item_step("a", status="done"), final_step()], track_id="t1")


def test_parse_discriminates_on_is_final() -> None:
    steps = _steps(item_step("a"), final_step())
    assert isinstance(steps[0], ItemStep)
    assert isinstance(steps[1], FinalStep)


def test_require_pending() -> None:
    sm.require_pending("pending")
    with pytest.raises(StateConflictError) as exc:
        sm.require_pending("approved")
    assert exc.value.decision == "approved"


def test_build_round_steps_names_items_and_finish() -> None:
    items = [sm.FeedbackItem(encoded=encode_links("one https://a.test")), sm.FeedbackItem(encoded=encode_links("two"))]
    steps = sm.build_round_steps(items)

    assert [s.name for s in steps] == ["Step 1", "Step 2", "Finish"]
    assert all(s.status == "pending" for s in steps)
    assert steps[0].metadata.text == "one [LINK:0]"
    assert steps[0].metadata.links[0].url == "https://a.test"
    assert steps[1].metadata.step_index == 1


def test_build_delivered_steps_completes_everything() -> None:
    steps = sm.build_delivered_steps([sm.FeedbackItem(encoded=encode_links("fix color"))], "https://vimeo.com/9")

    assert [s.status for s in steps] == ["completed", "completed"]
    assert steps[-1].is_final and steps[-1].deliverable_link == "https://vimeo.com/9"


def test_build_delivered_steps_requires_link() -> None:
    with pytest.raises(ValidationError):
        sm.build_delivered_steps([], "  ")


def test_steps_from_comments_orders_by_timestamp() -> None:
    now = datetime.now(timezone.utc)
    comments = [
        sm.CarryOverComment(id="c1", text="two", timestamp=2.0, created_at=now),
        sm.CarryOverComment(id="c2", text="ten", timestamp=10.5, created_at=now + timedelta(seconds=1)),
        sm.CarryOverComment(id="c3", text="one", timestamp=1.0, created_at=now + timedelta(seconds=2)),
    ]
    steps = sm.steps_from_comments(comments)

    assert [s.metadata.timestamp for s in steps[:-1]] == [1.0, 2.0, 10.5]
    assert [s.metadata.comment_id for s in steps[:-1]] == ["c3", "c1", "c2"]
    assert all(s.status == "pending" for s in steps)
    assert steps[-1].is_final and steps[-1].name == "Finish Revisions"


def test_complete_final_step_requires_link_and_media_type() -> None:
    steps = _steps(item_step("a"), final_step())
    with pytest.raises(ValidationError):
        sm.set_step_status(steps, None, 1, "completed", deliverable_link="https://v.test/1")
    with pytest.raises(ValidationError):
        sm.set_step_status(steps, None, 1, "completed", new_media_type="video")
    with pytest.raises(ValidationError, match="Invalid media type"):
        sm.set_step_status(steps, None, 1, "completed", deliverable_link="https://v.test/1", new_media_type="audio")


def test_complete_and_revert_final_step() -> None:
    steps = _steps(item_step("a"), final_step())
    done = sm.set_step_status(steps, None, 1, "completed", deliverable_link="https://v.test/1", new_media_type="image")

    assert done.changed
    assert done.media_type == "image"
    assert done.steps[1].deliverable_link == "https://v.test/1"

    reverted = sm.set_step_status(done.steps, done.media_type, 1, "pending")
    assert reverted.changed
    assert reverted.media_type is None
    assert reverted.steps[1].deliverable_link is None
    assert reverted.steps[1].status == "pending"


def test_setting_same_status_is_not_a_change() -> None:
    steps = _steps(item_step("a", status="completed"), final_step())
    change = sm.set_step_status(steps, None, 0, "completed")
    assert not change.changed


def test_set_step_status_bounds() -> None:
    steps = _steps(item_step("a"), final_step())
    with pytest.raises(ValidationError, match="Invalid step index"):
        sm.set_step_status(steps, None, 2, "completed")
    with pytest.raises(ValidationError, match="Invalid step index"):
        sm.set_step_status(steps, None, -1, "completed")


def test_restructure_preserves_status_and_timestamp_by_comment_id() -> None:
    steps = _steps(
        item_step("first", status="completed", comment_id="c1", timestamp=4.5),
        item_step("second", status="pending", comment_id="c2", timestamp=9.0),
        final_step(name="Finish Revisions"),
    )
    descriptors = [
        StepDescriptor(name="New", metadata={"text": "brand new"}),
        StepDescriptor(name="Second", status="completed", metadata={"comment_id": "c2", "text": "second edited"}),
        StepDescriptor(name="First", status="pending", metadata={"comment_id": "c1", "text": "first", "timestamp": 99}),
    ]
    rebuilt = sm.restructure_steps(steps, descriptors)

    assert [s.name for s in rebuilt] == ["New", "Second", "First", "Finish Revisions"]
    assert rebuilt[0].status == "pending"
    assert rebuilt[1].status == "pending" and rebuilt[1].metadata.timestamp == 9.0
    assert rebuilt[2].status == "completed" and rebuilt[2].metadata.timestamp == 4.5
    assert rebuilt[1].metadata.text == "second edited"
    assert [s.is_final for s in rebuilt].count(True) == 1
    assert rebuilt[-1].is_final


def test_restructure_to_empty_keeps_final_step() -> None:
    steps = _steps(item_step("a"), final_step(status="completed", link="https://v.test"))
    rebuilt = sm.restructure_steps(steps, [])
    assert len(rebuilt) == 1
    assert rebuilt[0].deliverable_link == "https://v.test"


def test_apply_bulk_content_reencodes_and_appends_images() -> None:
    steps = _steps(item_step("old", status="completed", comment_id="c1", timestamp=3.0), final_step())
    descriptors = [StepDescriptor(name="Step 1", metadata={"comment_id": "c1", "text": "see https://x.test", "images": ["https://i/1.png"]})]
    rebuilt = sm.apply_bulk_content(
        steps,
        descriptors,
        encoded_text={0: encode_links("see https://x.test")},
        new_images={0: ["https://i/2.png"]},
    )

    assert rebuilt[0].metadata.text == "see [LINK:0]"
    assert rebuilt[0].metadata.timestamp == 3.0
    assert rebuilt[0].metadata.images == ["https://i/1.png", "https://i/2.png"]
    assert rebuilt[0].status == "completed"
    assert rebuilt[-1].is_final


def test_update_step_content_refuses_final_step() -> None:
    steps = _steps(item_step("a"), final_step())
    with pytest.raises(ValidationError):
        sm.update_step_content(steps, 1, encode_links("x"), [])

    updated = sm.update_step_content(steps, 0, encode_links("new https://y.test"), ["https://i/1.png"])
    assert updated[0].metadata.text == "new [LINK:0]"
    assert updated[0].metadata.images == ["https://i/1.png"]


def test_dump_steps_round_trips_wire_shape() -> None:
    raw = [item_step("a", comment_id="c1", timestamp=1.0), final_step()]
    dumped = sm.dump_steps(_steps(*raw))
    assert dumped[-1]["is_final"] is True
    assert dumped[0]["metadata"]["comment_id"] == "c1"


@pytest.mark.parametrize(
    "metadata",
    [
        {"links": [{"href": "https://a.test"}]},
        {"links": "not-a-list"},
        {"links": [{"url": 5, "text": "five"}]},
        {"comment_id": ["c1"]},
        {"images": "https://i/1.png"},
    ],
)
def test_descriptor_rejects_malformed_metadata(metadata) -> None:
    with pytest.raises(pydantic.ValidationError):
        StepDescriptor(name="x", metadata=metadata)


def test_descriptor_metadata_keeps_only_sent_fields() -> None:
    steps = _steps(item_step("kept text", comment_id="c1", timestamp=2.0), final_step())
    rebuilt = sm.restructure_steps(steps, [StepDescriptor(name="Renamed", metadata={"comment_id": "c1"})])
    assert rebuilt[0].name == "Renamed"
    assert rebuilt[0].metadata.text == "kept text"
    assert rebuilt[0].metadata.timestamp == 2.0


def test_final_step_descriptor_is_refused() -> None:
    steps = _steps(item_step("a"), final_step())
    descriptors = [StepDescriptor(name="a"), StepDescriptor(name="Finish", is_final=True)]

    with pytest.raises(ValidationError, match="final step"):
        sm.restructure_steps(steps, descriptors)
    with pytest.raises(ValidationError, match="final step"):
        sm.apply_bulk_content(steps, descriptors, encoded_text={}, new_images={})


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], 0),
        (["pending"], 0),
        (["completed", "completed"], 100),
        (["completed", "pending", "pending"], 33),
        (["completed", "completed", "pending"], 67),
        (["completed"] + ["pending"] * 7, 13),
    ],
)
def test_track_progress_rounds_half_up(statuses, expected) -> None:
    raw = [item_step(str(i), status=s) for i, s in enumerate(statuses[:-1])]
    if statuses:
        raw.append(final_step(status=statuses[-1], link="https://v.test" if statuses[-1] == "completed" else None))
    steps = _steps(*raw) if raw else []
    assert sm.track_progress(steps) == expected
