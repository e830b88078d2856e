from __future__ import annotations

import asyncio
import logging

from doorpro.services.auth.tokens import TokenManager


logger = logging.getLogger(__name__)


class TokenSweeper:
    """Periodic expired-token cleanup owned by the process lifecycle."""

    def __init__(self, manager: TokenManager, interval_s: float) -> None:
        self._manager = manager
        self._interval_s = max(1.0, float(interval_s))
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        return await self._manager.sweep()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - one bad pass must not stop future sweeps
                logger.exception("token_sweep_loop_error", exc_info=exc)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="doorpro-token-sweeper")
        logger.info("token_sweeper_started interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("token_sweeper_stopped")
