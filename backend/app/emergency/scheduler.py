"""
scheduler.py — One-shot, cancellable escalation countdowns keyed by alert id.

    arm(id, delay, callback)   start a countdown; error if id already armed
    cancel(id)                 stop it; no-op if unarmed or already fired

Each countdown is an asyncio task sleeping on the injected clock. When the
sleep completes the handle is removed *before* the callback runs, so a
cancel() arriving while the callback executes is a harmless no-op and never
interrupts the callback half-way through a ledger append.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from backend.app.core.errors import SchedulerError
from backend.app.emergency.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str], Awaitable[None]]


@dataclass
class _TimerHandle:
    alert_id: str
    deadline: datetime
    task: asyncio.Task


class EscalationScheduler:
    """Timer-handle index; owned by a single engine instance."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._handles: Dict[str, _TimerHandle] = {}
        self._firing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._handles)

    def is_armed(self, alert_id: str) -> bool:
        return alert_id in self._handles

    def armed_ids(self) -> List[str]:
        return list(self._handles)

    def deadline(self, alert_id: str) -> Optional[datetime]:
        handle = self._handles.get(alert_id)
        return handle.deadline if handle else None

    def arm(
        self,
        alert_id: str,
        delay: Union[timedelta, float],
        callback: TimerCallback,
    ) -> datetime:
        """Schedule ``callback(alert_id)`` after ``delay``; returns the deadline."""
        if alert_id in self._handles:
            raise SchedulerError(alert_id, f"Escalation timer already armed for {alert_id}")

        seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
        seconds = max(seconds, 0.0)
        deadline = self._clock.now() + timedelta(seconds=seconds)

        task = asyncio.get_running_loop().create_task(
            self._run(alert_id, seconds, callback),
            name=f"escalation-{alert_id}",
        )
        self._handles[alert_id] = _TimerHandle(alert_id, deadline, task)
        logger.debug(
            "Escalation timer armed for %s: %.0fs (deadline %s)",
            alert_id, seconds, deadline.isoformat(),
            extra={"alert_id": alert_id},
        )
        return deadline

    def cancel(self, alert_id: str) -> bool:
        """Returns True if a pending countdown was stopped."""
        handle = self._handles.pop(alert_id, None)
        if handle is None:
            return False
        handle.task.cancel()
        logger.debug("Escalation timer cancelled for %s", alert_id, extra={"alert_id": alert_id})
        return True

    async def _run(self, alert_id: str, seconds: float, callback: TimerCallback) -> None:
        await self._clock.sleep(seconds)

        handle = self._handles.get(alert_id)
        if handle is None or handle.task is not asyncio.current_task():
            return
        del self._handles[alert_id]

        task = asyncio.current_task()
        self._firing.add(task)
        try:
            await callback(alert_id)
        except Exception:
            logger.exception(
                "Escalation callback failed for %s", alert_id,
                extra={"alert_id": alert_id},
            )
        finally:
            self._firing.discard(task)

    async def drain(self) -> None:
        """Wait for callbacks that have already fired to finish."""
        while self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every pending countdown and wait for in-flight callbacks."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        await self.drain()
        logger.info("Escalation scheduler stopped (%d pending timers cancelled)", len(handles))
