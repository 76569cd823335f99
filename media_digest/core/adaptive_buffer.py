"""
Adaptive batching for byte streams coming out of subprocess pipes.
"""

import asyncio
import time
from typing import AsyncIterator, Callable, Dict, List, Optional

from media_digest.utils.logger import logging


KB = 1024

HIGH_LATENCY = "High latency"
BUFFER_PRESSURE = "Buffer pressure"
BUFFER_UNDERUTILIZED = "Buffer underutilized"

_END_OF_STREAM = object()


class AdaptiveBuffer:
    """
    Batch chunks from an async byte source and resize the flush threshold
    according to how quickly the consumer takes each batch.

    A batch is flushed when the buffered bytes reach the current threshold or
    when ``max_idle`` seconds have passed since the previous flush. Every
    ``evaluation_interval`` seconds the threshold is re-evaluated:

    - average flush latency above ``latency_threshold``: shrink by ``shrink_factor``
    - buffered bytes above 90% of the threshold: grow by ``growth_factor``
    - buffered bytes below 30% of the threshold: shrink by ``underutilized_factor``

    The threshold always stays within ``[min_size, max_size]``.

    Usage:
        async for batch in AdaptiveBuffer(source):
            ...
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        initial_size: int = 128 * KB,
        min_size: int = 16 * KB,
        max_size: int = 2 * 1024 * KB,
        growth_factor: float = 1.5,
        shrink_factor: float = 0.5,
        underutilized_factor: float = 0.8,
        evaluation_interval: float = 1.0,
        latency_threshold: float = 0.5,
        max_idle: float = 5.0,
        queue_size: int = 16,
        on_buffer_size_change: Optional[Callable[[int, str], None]] = None,
    ):
        if min_size <= 0 or min_size > max_size:
            raise ValueError("min_size must be positive and not larger than max_size")

        self.source = source
        self.min_size = min_size
        self.max_size = max_size
        self.size = self._clamp(initial_size)
        self.growth_factor = growth_factor
        self.shrink_factor = shrink_factor
        self.underutilized_factor = underutilized_factor
        self.evaluation_interval = evaluation_interval
        self.latency_threshold = latency_threshold
        self.max_idle = max_idle
        self.queue_size = queue_size
        self.on_buffer_size_change = on_buffer_size_change

        self.total_bytes = 0
        self.flush_count = 0
        self._chunks: List[bytes] = []
        self._buffered = 0
        self._latencies: List[float] = []
        self._last_flush = time.monotonic()
        self._generator: Optional[AsyncIterator[bytes]] = None

    def _clamp(self, size: float) -> int:
        return int(min(self.max_size, max(self.min_size, size)))

    @property
    def buffered_bytes(self) -> int:
        return self._buffered

    def record_flush_latency(self, seconds: float) -> None:
        """Record how long the consumer held on to one flushed batch."""
        self._latencies.append(seconds)

    def evaluate(self) -> Optional[str]:
        """
        Run one evaluation tick.

        Returns:
            The resize reason, or None when the threshold did not change
        """
        if self.total_bytes == 0:
            return None

        # An interval without flushes means the consumer was never waited on.
        average_latency = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        self._latencies.clear()

        if average_latency > self.latency_threshold:
            new_size, reason = self.size * self.shrink_factor, HIGH_LATENCY
        elif self._buffered > self.size * 0.9:
            new_size, reason = self.size * self.growth_factor, BUFFER_PRESSURE
        elif self._buffered < self.size * 0.3:
            new_size, reason = self.size * self.underutilized_factor, BUFFER_UNDERUTILIZED
        else:
            return None

        new_size = self._clamp(new_size)
        if new_size == self.size:
            return None

        logging.debug(f"Adaptive buffer resized {self.size} -> {new_size} bytes ({reason})")
        self.size = new_size
        if self.on_buffer_size_change:
            self.on_buffer_size_change(new_size, reason)
        return reason

    @property
    def stats(self) -> Dict[str, float]:
        return {
            "current_size": self.size,
            "buffered_bytes": self._buffered,
            "total_bytes": self.total_bytes,
            "flush_count": self.flush_count,
            "average_latency": (
                sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
            ),
        }

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._generator is not None:
            raise RuntimeError("AdaptiveBuffer can only be iterated once")
        self._generator = self._batches()
        return self._generator

    async def aclose(self) -> None:
        """Stop iteration early and release the pump and evaluation tasks."""
        if self._generator is not None:
            await self._generator.aclose()

    async def _pump(self, queue: asyncio.Queue) -> None:
        try:
            async for chunk in self.source:
                if chunk:
                    await queue.put(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            await queue.put(error)
        else:
            await queue.put(_END_OF_STREAM)

    async def _evaluate_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.evaluation_interval)
            self.evaluate()

    def _take_batch(self) -> bytes:
        batch = b"".join(self._chunks)
        self._chunks = []
        self._buffered = 0
        self._last_flush = time.monotonic()
        self.flush_count += 1
        return batch

    async def _batches(self) -> AsyncIterator[bytes]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        pump = asyncio.create_task(self._pump(queue))
        ticker = asyncio.create_task(self._evaluate_periodically())
        self._last_flush = time.monotonic()

        try:
            finished = False
            while not finished:
                idle_left = self.max_idle - (time.monotonic() - self._last_flush)
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=max(idle_left, 0.01))
                except asyncio.TimeoutError:
                    item = None
                    if pump.done() and queue.empty():
                        finished = True

                if item is _END_OF_STREAM:
                    finished = True
                elif isinstance(item, Exception):
                    raise item
                elif item is not None:
                    self._chunks.append(item)
                    self._buffered += len(item)
                    self.total_bytes += len(item)

                idle = time.monotonic() - self._last_flush >= self.max_idle
                if self._chunks and (finished or idle or self._buffered >= self.size):
                    batch = self._take_batch()
                    handed_over = time.monotonic()
                    yield batch
                    self.record_flush_latency(time.monotonic() - handed_over)
                elif idle:
                    self._last_flush = time.monotonic()
        finally:
            ticker.cancel()
            pump.cancel()
            await asyncio.gather(ticker, pump, return_exceptions=True)
