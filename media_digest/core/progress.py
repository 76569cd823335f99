"""
Progress tracking for the summary pipeline.

The five pipeline stages each own a slice of the 0-100 scale. Components
report a percentage within their own stage; the tracker maps it onto the
overall scale, keeps it from going backwards, throttles emission and hands
the events to its observers. ProgressChannel is the bounded queue between
the pipeline and whatever transport drains it.
"""

import asyncio
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from media_digest.config import config
from media_digest.models.schemas import ProgressEvent, ProgressStatus, StageDescriptor
from media_digest.utils.error_handling import user_message
from media_digest.utils.logger import logging


INITIALIZATION = "initialization"
MEDIA = "media"
TRANSCRIPTION = "transcription"
SUMMARIZATION = "summarization"
DONE = "done"

PROCESSING_STAGES = (
    StageDescriptor(
        name=INITIALIZATION,
        status=ProgressStatus.PENDING,
        progress_range=(0, 5),
        message_template="Preparing your request...",
    ),
    StageDescriptor(
        name=MEDIA,
        status=ProgressStatus.PROCESSING,
        progress_range=(5, 35),
        message_template="Processing media ({progress}%)",
    ),
    StageDescriptor(
        name=TRANSCRIPTION,
        status=ProgressStatus.TRANSCRIBING,
        progress_range=(35, 70),
        message_template="Converting speech to text ({progress}%)",
    ),
    StageDescriptor(
        name=SUMMARIZATION,
        status=ProgressStatus.SUMMARIZING,
        progress_range=(70, 95),
        message_template="Generating summary ({progress}%)",
    ),
    StageDescriptor(
        name=DONE,
        status=ProgressStatus.DONE,
        progress_range=(95, 100),
        message_template="Complete",
    ),
)

ProgressObserver = Callable[[ProgressEvent], None]


def bytes_progress_percent(kilobytes: float, half_point_kb: float = 4096.0) -> float:
    """
    Map streamed kilobytes onto a coarse percentage when the total is unknown.

    The curve reaches half of its 95% ceiling at ``half_point_kb`` and never
    reaches the ceiling.
    """
    if kilobytes <= 0:
        return 0.0
    return 95.0 * kilobytes / (kilobytes + half_point_kb)


class ProgressTracker:
    """Stage machine that turns per-stage percentages into ProgressEvents."""

    def __init__(
        self,
        sink: Optional[ProgressObserver] = None,
        min_delta: int = config.PROGRESS_MIN_DELTA,
        stages: Sequence[StageDescriptor] = PROCESSING_STAGES,
    ):
        self.min_delta = min_delta
        self.stages: Dict[str, StageDescriptor] = {stage.name: stage for stage in stages}
        self.current_stage: Optional[str] = None
        self.progress = 0
        self.finished = False
        self.events_emitted = 0
        self._last_emitted: Optional[ProgressEvent] = None
        self._observers: List[ProgressObserver] = []
        if sink is not None:
            self.subscribe(sink)

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """
        Register an observer for emitted events.

        Returns:
            A function that removes the observer again
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def update(
        self,
        stage: str,
        percent: float,
        message: Optional[str] = None,
        status: Optional[ProgressStatus] = None,
    ) -> Optional[ProgressEvent]:
        """
        Report progress within a stage.

        Args:
            stage: Stage name from the stage table
            percent: Progress within the stage, 0-100
            message: Overrides the stage's message template
            status: Overrides the stage's status (e.g. uploading during media)

        Returns:
            The emitted event, or None when it was throttled or the request already finished
        """
        if self.finished:
            return None
        if stage not in self.stages:
            raise ValueError(f"Unknown stage: {stage}")

        descriptor = self.stages[stage]
        percent = min(100.0, max(0.0, float(percent)))
        low, high = descriptor.progress_range
        absolute = round(low + percent / 100 * (high - low))

        # Never regress and never report 100 before the terminal event
        self.progress = min(99, max(self.progress, absolute))
        self.current_stage = stage

        event = ProgressEvent(
            status=status or descriptor.status,
            message=message or descriptor.render(round(percent)),
            progress=self.progress,
        )
        if not self._should_emit(event, percent):
            return None
        self._emit(event)
        return event

    def advance(
        self,
        percent: float,
        status: Optional[ProgressStatus] = None,
        message: Optional[str] = None,
    ) -> Optional[ProgressEvent]:
        """Report progress for whichever stage is currently running."""
        if self.current_stage is None:
            return None
        return self.update(self.current_stage, percent, message=message, status=status)

    def _should_emit(self, event: ProgressEvent, percent: float) -> bool:
        last = self._last_emitted
        if last is None or percent in (0.0, 100.0):
            return True
        if event.status != last.status:
            return True
        return event.progress - last.progress >= self.min_delta

    def complete(self, message: Optional[str] = None) -> Optional[ProgressEvent]:
        """Emit the terminal done event at 100."""
        if self.finished:
            return None
        self.finished = True
        self.progress = 100
        self.current_stage = DONE
        event = ProgressEvent(
            status=ProgressStatus.DONE,
            message=message or self.stages[DONE].render(100),
            progress=100,
        )
        self._emit(event)
        return event

    def fail(self, error: Union[BaseException, str]) -> Optional[ProgressEvent]:
        """Emit the terminal error event. Only a user-facing message is sent."""
        if self.finished:
            return None
        self.finished = True
        text = error if isinstance(error, str) else user_message(error)
        event = ProgressEvent(
            status=ProgressStatus.ERROR,
            message=text,
            progress=self.progress,
            error=text,
        )
        self._emit(event)
        return event

    def _emit(self, event: ProgressEvent) -> None:
        self._last_emitted = event
        self.events_emitted += 1
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logging.error(f"Progress observer failed: {str(e)}")


_CLOSED = object()


class ProgressChannel:
    """
    Bounded, ordered, single-consumer queue of progress events.

    ``publish`` never blocks the pipeline. When the queue is full a
    non-terminal event is dropped, since a later event supersedes it, and a
    terminal event evicts the oldest queued event. Iteration ends after the
    terminal event or after ``close()``.
    """

    def __init__(self, maxsize: int = config.PROGRESS_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if not event.is_terminal:
                logging.debug(f"Progress queue full, dropped {event.status.value} event at {event.progress}%")
                return
            self._queue.get_nowait()
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
            if item.is_terminal:
                return
