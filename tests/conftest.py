from __future__ import annotations

from datetime import timezone

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from agent_scheduler.executor import ExecutionResult

# 2025-06-15T15:06:40Z, a whole second
T0 = 1_750_000_000_000


class FakeClock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeExecutor:
    def __init__(self, results=None, *, on_execute=None) -> None:
        self.calls: list[str] = []
        self._results = list(results or [])
        self._on_execute = on_execute

    async def execute(self, job):
        self.calls.append(job.id)
        if self._on_execute is not None:
            await self._on_execute(job)
        result = self._results.pop(0) if self._results else ExecutionResult(status="ok")
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def paused_scheduler():
    # Jobs can be armed and inspected, but the real timer never fires.
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)
