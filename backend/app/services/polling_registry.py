"""
In-process registry of fallback pollers, one asyncio task per provider task id.

Pollers are a safety net for lost callbacks. They live only as long as the
API process; the Celery stale-job sweep covers jobs whose poller died with it.
"""
import asyncio
import enum
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from app.utils.metrics import video_polls_active

logger = logging.getLogger(__name__)


class PollOutcome(str, enum.Enum):
    """Result of one poll tick."""
    CONTINUE = "continue"  # nothing yet, poll again after the interval
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"  # cancelled, or the job was already terminal


class CancellationToken:
    """One-shot flag shared by a poller and whoever wants to stop it."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled meanwhile."""
        if timeout <= 0:
            # Still yield so other tasks (e.g. a webhook) get a turn
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


TickFn = Callable[[int, CancellationToken], Awaitable[PollOutcome]]


class _Poller:
    def __init__(self, token: CancellationToken):
        self.token = token
        self.task: Optional[asyncio.Task] = None


class PollingRegistry:
    """
    Owns the polling tasks. start() and cancel() are idempotent.

    The tick callback receives the 1-based attempt number and the token,
    and must re-check the token right before any write it makes.
    """

    def __init__(self, interval_seconds: float, max_attempts: int):
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._pollers: Dict[str, _Poller] = {}

    def start(self, task_id: str, tick: TickFn) -> bool:
        """Start polling task_id unless a poller is already running. Returns True if started."""
        if task_id in self._pollers:
            return False

        poller = _Poller(CancellationToken())
        self._pollers[task_id] = poller
        poller.task = asyncio.get_running_loop().create_task(
            self._run(task_id, poller, tick),
            name=f"poll:{task_id}",
        )
        video_polls_active.inc()
        logger.info(f"Started polling for task {task_id}")
        return True

    def cancel(self, task_id: str) -> bool:
        """
        Stop the poller for task_id. Safe to call for unknown or finished ids.
        Returns True if a running poller was cancelled.
        """
        poller = self._pollers.get(task_id)
        if poller is None:
            return False

        poller.token.cancel()
        if poller.task is not None and poller.task is not asyncio.current_task():
            poller.task.cancel()
        # A task cancelled before its first step never reaches _run's finally
        self._forget(task_id, poller)
        logger.info(f"Cancelled polling for task {task_id}")
        return True

    def is_active(self, task_id: str) -> bool:
        return task_id in self._pollers

    def active_task_ids(self) -> List[str]:
        return list(self._pollers)

    async def drain(self) -> None:
        """Cancel every poller and wait for them to exit (shutdown)."""
        tasks = [p.task for p in self._pollers.values() if p.task is not None]
        for task_id in list(self._pollers):
            self.cancel(task_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, task_id: str, poller: _Poller) -> None:
        if self._pollers.get(task_id) is poller:
            del self._pollers[task_id]
            video_polls_active.dec()

    async def _run(self, task_id: str, poller: _Poller, tick: TickFn) -> PollOutcome:
        outcome = PollOutcome.STOPPED
        attempt = 0
        try:
            while attempt < self.max_attempts:
                if await poller.token.wait(self.interval_seconds):
                    outcome = PollOutcome.STOPPED
                    break

                attempt += 1
                outcome = await tick(attempt, poller.token)
                if outcome != PollOutcome.CONTINUE:
                    break
        except asyncio.CancelledError:
            outcome = PollOutcome.STOPPED
        except Exception as e:
            # A crashing tick ends this poller; the stale-job sweep picks the job up later
            logger.error(f"Poller for task {task_id} crashed: {e}", exc_info=True)
            outcome = PollOutcome.STOPPED
        finally:
            self._forget(task_id, poller)

        logger.info(f"Polling for task {task_id} ended: {outcome.value} after {attempt} attempt(s)")
        return outcome
