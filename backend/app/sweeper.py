from __future__ import annotations

import asyncio
import logging

from app.otp import OtpGatekeeper

logger = logging.getLogger(__name__)


class OtpSweeper:
    """
    Periodically drops expired OTP codes and stale send windows.

    Owned by the application lifecycle: `start()` on startup, `stop()` on shutdown.
    """

    def __init__(self, gatekeeper: OtpGatekeeper, *, interval_seconds: float) -> None:
        self._gatekeeper = gatekeeper
        self.interval_seconds = float(interval_seconds)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> int:
        removed = self._gatekeeper.sweep_expired()
        if removed:
            logger.info("OTP sweep removed %s expired codes", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.tick()
            except Exception:
                # Keep the loop alive; the next tick retries.
                logger.exception("OTP sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
