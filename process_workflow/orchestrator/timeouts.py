"""
Cancellable timeout scheduling for join and validation deadlines.

Each deadline is an asyncio task keyed by a string. Scheduling a key again
replaces the previous task; satisfying the condition cancels it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from process_workflow.core.semantics import JoinSynchronizer, ValidationGate
from process_workflow.core.state_machine import JoinState, ValidationState

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[], Awaitable[None]]


def join_key(instance_id: str, node_id: str) -> str:
    return f"join:{instance_id}:{node_id}"


def validation_key(instance_id: str, node_id: str) -> str:
    return f"validation:{instance_id}:{node_id}"


class TimeoutScheduler:
    """Runs a callback after a delay unless cancelled first."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay_seconds: float, callback: TimeoutCallback) -> None:
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._run(key, max(delay_seconds, 0.0), callback))
        logger.debug(f"Scheduled timeout {key} in {delay_seconds:.1f}s")

    def schedule_at(
        self,
        key: str,
        when: datetime,
        callback: TimeoutCallback,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self.schedule(key, (when - now).total_seconds(), callback)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(f"Cancelled timeout {key}")
        return True

    def is_scheduled(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def pending(self) -> set[str]:
        return {key for key, task in self._tasks.items() if not task.done()}

    async def shutdown(self) -> None:
        """Cancel every pending timeout and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, key: str, delay: float, callback: TimeoutCallback) -> None:
        try:
            await asyncio.sleep(delay)
            logger.info(f"Timeout {key} elapsed")
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Timeout callback {key} failed: {e}", exc_info=True)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    # ==================== Node helpers ====================

    def watch_join(
        self,
        instance_id: str,
        node_id: str,
        synchronizer: JoinSynchronizer,
        on_settled: Optional[Callable[[JoinState], Awaitable[None]]] = None,
    ) -> bool:
        """
        Schedule the join's timeout action at its deadline.

        Returns:
            False when the join has no timeout configured
        """
        synchronizer.start()
        deadline = synchronizer.deadline()
        if deadline is None:
            return False

        async def fire() -> None:
            state = synchronizer.on_timeout()
            if on_settled is not None and state != JoinState.WAITING:
                await on_settled(state)

        self.schedule_at(join_key(instance_id, node_id), deadline, fire)
        return True

    def join_completed(
        self,
        instance_id: str,
        node_id: str,
        synchronizer: JoinSynchronizer,
        branch_id: str,
    ) -> bool:
        """Record a branch completion, cancelling the timeout once the join fires."""
        fired = synchronizer.complete(branch_id)
        if fired:
            self.cancel(join_key(instance_id, node_id))
        return fired

    def watch_validation(
        self,
        instance_id: str,
        node_id: str,
        gate: ValidationGate,
        on_settled: Optional[Callable[[ValidationState], Awaitable[None]]] = None,
    ) -> bool:
        """Schedule the SLA action of an open validation gate."""
        due_at = gate.due_at
        if due_at is None:
            return False

        async def breach() -> None:
            state = gate.on_sla_breach()
            if on_settled is not None:
                await on_settled(state)

        self.schedule_at(validation_key(instance_id, node_id), due_at, breach)
        return True

    def validation_decided(self, instance_id: str, node_id: str) -> bool:
        return self.cancel(validation_key(instance_id, node_id))
