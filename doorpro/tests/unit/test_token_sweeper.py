from __future__ import annotations

import asyncio

import pytest

from doorpro.services import maintenance
from doorpro.services.maintenance import TokenSweeper


class _StubManager:
    def __init__(self) -> None:
        self.calls = 0

    async def sweep(self) -> int:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("transient failure")
        return 3


@pytest.mark.asyncio
async def test_run_once_delegates_to_manager() -> None:
    manager = _StubManager()
    manager.calls = 1
    assert await TokenSweeper(manager, 300).run_once() == 3


@pytest.mark.asyncio
async def test_loop_survives_errors_and_stops_cleanly(monkeypatch) -> None:
    real_sleep = asyncio.sleep

    async def no_wait(_seconds: float) -> None:
        await real_sleep(0)

    monkeypatch.setattr(maintenance.asyncio, "sleep", no_wait)
    manager = _StubManager()
    sweeper = TokenSweeper(manager, 300)
    sweeper.start()
    assert sweeper.running is True

    for _ in range(200):
        if manager.calls >= 3:
            break
        await real_sleep(0)
    await sweeper.stop()

    assert manager.calls >= 3
    assert sweeper.running is False
    # Stopping twice is harmless.
    await sweeper.stop()
