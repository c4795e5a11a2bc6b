"""Tests for the inference pool."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import pytest

from visagist.config import Settings
from visagist.ml.inference import InferencePool

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture()
def single_slot() -> Iterator[InferencePool]:
    pool = InferencePool(Settings(max_concurrent=1, queue_timeout=0.05))
    yield pool
    pool.shutdown()


class TestInferencePool:
    async def test_runs_in_worker_thread(self, single_slot: InferencePool) -> None:
        assert await single_slot.run(sum, [1, 2, 3]) == 6
        assert single_slot.active_count == 0
        assert single_slot.queue_depth == 0

    async def test_configured_queue_timeout(self, single_slot: InferencePool) -> None:
        busy = asyncio.ensure_future(single_slot.run(time.sleep, 0.3))
        await asyncio.sleep(0.01)

        with pytest.raises(TimeoutError):
            await single_slot.run(time.sleep, 0)
        await busy
        assert single_slot.queue_depth == 0

    async def test_unbounded_queue_wait(self, single_slot: InferencePool) -> None:
        busy = asyncio.ensure_future(single_slot.run(time.sleep, 0.2))
        await asyncio.sleep(0.01)

        assert await single_slot.run(sum, [4, 5], queue_timeout=None) == 9
        await busy

    async def test_call_timeout_releases_slot(self, single_slot: InferencePool) -> None:
        with pytest.raises(TimeoutError):
            await single_slot.run(time.sleep, 0.3, timeout=0.05)
        assert single_slot.active_count == 0
        assert await single_slot.run(sum, [1], queue_timeout=1.0) == 1
