from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from league_funnel.services.scheduler import AsyncCallback


class ManualCall:
    def __init__(self, delay: float, callback: AsyncCallback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers only fire when the test says so."""

    def __init__(self) -> None:
        self.calls: List[ManualCall] = []

    def call_later(self, delay: float, callback: AsyncCallback) -> ManualCall:
        call = ManualCall(delay, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> List[ManualCall]:
        return [call for call in self.calls if not call.cancelled]

    async def fire(self) -> int:
        due = self.pending
        self.calls = []
        for call in due:
            await call.callback()
        return len(due)


class MemoryCache:
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = dict(initial or {})
        self.writes: List[Tuple[str, Any]] = []

    def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.writes.append((key, value))

    def remove(self, key: str) -> None:
        self.data.pop(key, None)

    def exists(self, key: str) -> bool:
        return key in self.data


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def memory_cache() -> MemoryCache:
    return MemoryCache()
