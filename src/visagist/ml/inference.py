"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Callers wait up to ``queue_timeout`` for a slot (unless they override it per
call) and up to the per-call timeout for the result; either wait raises
TimeoutError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from visagist.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Unset:
    pass


_CONFIGURED = _Unset()


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="meme-inference",
        )
        self._queue_timeout = settings.queue_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(
        self,
        func: Callable[..., T],
        *args: object,
        timeout: float | None = None,
        queue_timeout: float | None | _Unset = _CONFIGURED,
    ) -> T:
        """Submit a synchronous function to the inference thread pool.

        ``queue_timeout`` defaults to the configured queue timeout; pass
        ``None`` to wait for a slot without limit. The worker thread is not
        interrupted when ``timeout`` expires; its slot is released and the
        result is discarded.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout, or the
                call does not finish within ``timeout`` seconds.
        """
        if isinstance(queue_timeout, _Unset):
            queue_timeout = self._queue_timeout

        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=queue_timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(loop.run_in_executor(self._executor, func, *args), timeout=timeout)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def queue_timeout(self) -> float:
        """Configured seconds to wait for a slot."""
        return self._queue_timeout

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        logger.debug("Shutting down inference executor")
        self._executor.shutdown(wait=True)
