import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Callable

from .engine import RunReport

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_run_at(value: str) -> time:
    try:
        hour, minute = value.strip().split(":", 1)
        return time(hour=int(hour), minute=int(minute))
    except ValueError as exc:
        raise ValueError(f"run time must look like HH:MM, got {value!r}") from exc


class DailyTrigger:
    """Fires ``run_due(today)`` once per UTC day, at or after ``run_at``.

    The loop only decides *when* to run; idempotence comes from the engine, so
    a restart that runs the same day twice is harmless.
    """

    def __init__(
        self,
        run_due: Callable[[date], RunReport],
        run_at: str = "00:01",
        poll_seconds: float = 60,
        clock: Callable[[], datetime] = _utc_now,
        enabled: bool = True,
    ) -> None:
        self.run_due = run_due
        self.run_at = parse_run_at(run_at)
        self.poll_seconds = poll_seconds
        self.clock = clock
        self.enabled = enabled
        self.last_run_date: date | None = None
        self.last_report: RunReport | None = None
        self._task: asyncio.Task | None = None
        self._current: asyncio.Future | None = None

    def is_due(self) -> bool:
        now = self.clock()
        return self.last_run_date != now.date() and now.time() >= self.run_at

    def tick(self) -> RunReport | None:
        if not self.is_due():
            return None
        today = self.clock().date()
        logger.info("Daily trigger firing recurring run for %s", today)
        self.last_report = self.run_due(today)
        self.last_run_date = today
        return self.last_report

    async def _loop(self) -> None:
        while True:
            self._current = asyncio.ensure_future(asyncio.to_thread(self.tick))
            try:
                # stop() awaits _current after cancelling the loop
                await asyncio.shield(self._current)
            except Exception:
                logger.exception("Scheduled recurring run failed")
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if not self.enabled:
            logger.info("Daily trigger disabled by configuration")
            return
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())
            logger.info("Daily trigger started; runs at %s UTC", self.run_at.strftime("%H:%M"))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        current, self._current = self._current, None
        if current is not None and not current.done():
            logger.info("Waiting for the running recurring run to finish")
            try:
                await current
            except Exception:
                logger.exception("Scheduled recurring run failed")
        logger.info("Daily trigger stopped")

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._task is not None and not self._task.done(),
            "runAt": self.run_at.strftime("%H:%M"),
            "lastRunDate": self.last_run_date,
            "lastRunAttempted": self.last_report.attempted if self.last_report else None,
            "lastRunFailed": len(self.last_report.failed) if self.last_report else None,
        }
