import asyncio
from typing import Callable, Dict, FrozenSet, List, Optional

from knowflow.core.exceptions import InvalidStateTransition
from knowflow.schemas.execution import ExecutionStatus

ALLOWED_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
            ExecutionStatus.PAUSED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
}


def ensure_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    current, target = ExecutionStatus(current), ExecutionStatus(target)
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransition(current.value, target.value)


class ExecutionControl:
    """
    Cooperative cancel/pause flags. The executor looks at them between
    node invocations; work already in flight is never interrupted.
    """

    PAUSE_POLL_SECONDS = 1.0

    def __init__(self):
        self._cancelled = False
        self._cancel_reason: Optional[str] = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._cancel_listeners: List[Callable[[Optional[str]], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def add_cancel_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        self._cancel_listeners.append(listener)

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_reason = reason
        # Wake anything waiting on a pause so it can see the cancellation
        self._resumed.set()
        for listener in self._cancel_listeners:
            listener(reason)

    def pause(self) -> None:
        if not self._cancelled:
            self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    async def refresh(self) -> None:
        """Pull flags from an outside source; nothing to do in-process."""

    async def wait_until_resumed(self) -> None:
        while self.paused and not self.cancelled:
            try:
                await asyncio.wait_for(self._resumed.wait(), timeout=self.PAUSE_POLL_SECONDS)
            except asyncio.TimeoutError:
                await self.refresh()
