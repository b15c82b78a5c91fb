"""Inference execution layer.

Architecture:
    async caller -> run_in_executor -> ThreadPoolExecutor(N) -> ONNX Runtime

Session construction and ``session.run`` are blocking; they are pushed onto a
small dedicated thread pool so the event loop stays responsive. Batches are
already serialized upstream, so one worker is the default.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from autogallery.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Ticket:
    dequeued: bool = False


class InferencePool:
    """Runs blocking inference work off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=settings.inference_workers,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._submitted: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread and await its result.

        Exceptions raised by ``func`` propagate to the awaiting caller.
        """
        ticket = _Ticket()
        with self._counter_lock:
            self._submitted += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, self._tracked, ticket, func, args)
        finally:
            # Rejected or cancelled before a worker picked it up.
            self._leave_queue(ticket)

    def _leave_queue(self, ticket: _Ticket) -> None:
        with self._counter_lock:
            if not ticket.dequeued:
                ticket.dequeued = True
                self._submitted -= 1

    def _tracked(self, ticket: _Ticket, func: Callable[..., T], args: tuple[object, ...]) -> T:
        self._leave_queue(ticket)
        with self._counter_lock:
            self._active_count += 1
        try:
            return func(*args)
        finally:
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of submitted tasks still waiting for a worker thread."""
        with self._counter_lock:
            return self._submitted

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.info("Inference pool shut down")
