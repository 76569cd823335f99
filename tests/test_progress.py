"""
Tests for progress tracking and the progress channel.
"""

import pytest

from media_digest.core.progress import (
    DONE,
    INITIALIZATION,
    MEDIA,
    SUMMARIZATION,
    TRANSCRIPTION,
    ProgressChannel,
    ProgressTracker,
    bytes_progress_percent,
)
from media_digest.models.schemas import ProgressEvent, ProgressStatus
from media_digest.utils.error_handling import GENERIC_ERROR_MESSAGE, BadRequestError


@pytest.fixture
def events():
    return []


@pytest.fixture
def tracker(events):
    return ProgressTracker(sink=events.append)


def test_stage_percent_maps_onto_overall_range(tracker):
    assert tracker.update(INITIALIZATION, 0).progress == 0
    assert tracker.update(MEDIA, 50).progress == 20
    assert tracker.update(TRANSCRIPTION, 100).progress == 70
    assert tracker.update(SUMMARIZATION, 100).progress == 95


def test_event_carries_stage_status_and_message(tracker):
    event = tracker.update(TRANSCRIPTION, 0)
    assert event.status == ProgressStatus.TRANSCRIBING
    assert event.message == "Converting speech to text (0%)"

    event = tracker.update(MEDIA, 100, status=ProgressStatus.UPLOADING, message="Uploading")
    assert event.status == ProgressStatus.UPLOADING
    assert event.message == "Uploading"


def test_progress_never_regresses(tracker, events):
    tracker.update(TRANSCRIPTION, 100)
    tracker.update(MEDIA, 0)

    assert tracker.progress == 70
    assert [event.progress for event in events] == [70, 70]


def test_progress_stays_below_100_until_complete(tracker):
    assert tracker.update(DONE, 100).progress == 99
    assert tracker.complete().progress == 100


def test_small_advances_are_throttled(tracker, events):
    tracker.update(MEDIA, 0)
    assert tracker.update(MEDIA, 10) is None
    assert tracker.update(MEDIA, 20) is not None
    assert [event.progress for event in events] == [5, 11]
    assert tracker.events_emitted == 2


def test_status_change_is_never_throttled(tracker, events):
    tracker.update(MEDIA, 10)
    tracker.update(MEDIA, 11, status=ProgressStatus.UPLOADING)
    assert [event.status for event in events] == [ProgressStatus.PROCESSING, ProgressStatus.UPLOADING]


def test_advance_follows_current_stage(tracker):
    assert tracker.advance(50) is None

    tracker.update(TRANSCRIPTION, 0)
    event = tracker.advance(100)
    assert event.status == ProgressStatus.TRANSCRIBING
    assert event.progress == 70


def test_exactly_one_terminal_event(tracker, events):
    tracker.update(SUMMARIZATION, 50)
    done = tracker.complete("All done")

    assert done.status == ProgressStatus.DONE
    assert done.progress == 100
    assert done.message == "All done"

    assert tracker.update(SUMMARIZATION, 100) is None
    assert tracker.fail(RuntimeError("late")) is None
    assert tracker.complete() is None
    assert [event.is_terminal for event in events] == [False, True]


def test_fail_hides_internal_details(tracker, events):
    tracker.update(MEDIA, 50)
    event = tracker.fail(RuntimeError("connection string with password"))

    assert event.status == ProgressStatus.ERROR
    assert event.message == GENERIC_ERROR_MESSAGE
    assert event.error == GENERIC_ERROR_MESSAGE
    assert event.progress == 20
    assert tracker.finished


def test_fail_uses_domain_error_message(tracker):
    event = tracker.fail(BadRequestError("Invalid URL"))
    assert event.message == "Invalid URL"


def test_unknown_stage_is_rejected(tracker):
    with pytest.raises(ValueError):
        tracker.update("uploading-to-mars", 10)


def test_observer_errors_do_not_stop_other_observers(events):
    def broken(event):
        raise RuntimeError("observer failed")

    tracker = ProgressTracker(sink=broken)
    tracker.subscribe(events.append)

    tracker.update(MEDIA, 0)
    assert len(events) == 1


def test_unsubscribe(tracker, events):
    extra = []
    unsubscribe = tracker.subscribe(extra.append)
    tracker.update(MEDIA, 0)
    unsubscribe()
    unsubscribe()
    tracker.update(MEDIA, 100)

    assert len(extra) == 1
    assert len(events) == 2


def test_bytes_progress_percent():
    assert bytes_progress_percent(0) == 0
    assert bytes_progress_percent(4096) == pytest.approx(47.5)
    assert bytes_progress_percent(1024) < bytes_progress_percent(2048) < 95
    assert bytes_progress_percent(10 ** 9) < 95


def make_event(progress, status=ProgressStatus.PROCESSING):
    return ProgressEvent(status=status, message=f"{progress}%", progress=progress)


@pytest.mark.asyncio
async def test_channel_yields_in_order_and_stops_after_terminal():
    channel = ProgressChannel(maxsize=10)
    channel.publish(make_event(10))
    channel.publish(make_event(20))
    channel.publish(make_event(100, ProgressStatus.DONE))
    channel.publish(make_event(50))

    received = [event.progress async for event in channel]

    assert received == [10, 20, 100]


@pytest.mark.asyncio
async def test_full_channel_drops_progress_but_keeps_terminal():
    channel = ProgressChannel(maxsize=2)
    channel.publish(make_event(10))
    channel.publish(make_event(20))
    channel.publish(make_event(30))
    channel.publish(make_event(40, ProgressStatus.ERROR))

    received = [event async for event in channel]

    assert [event.progress for event in received] == [20, 40]
    assert received[-1].status == ProgressStatus.ERROR
    assert channel.dropped == 2


@pytest.mark.asyncio
async def test_close_ends_iteration():
    channel = ProgressChannel()
    channel.publish(make_event(10))
    channel.close()
    channel.publish(make_event(20))

    received = [event.progress async for event in channel]

    assert received == [10]
