"""Task status state machine.

Transitions are looked up, never improvised: callers ask for an action and
get back a result naming the target status, or the reason it is refused.
Persisting the move is the caller's job (a compare-and-set on the old status).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from gigledger.db_models import Task, TaskStatus
from gigledger.errors import StateTransitionError

logger = logging.getLogger("gigledger.state_machine")


class TaskAction(str, enum.Enum):
    accept = "accept"
    hold_recorded = "hold_recorded"
    hold_failed = "hold_failed"
    cancel_unfunded = "cancel_unfunded"
    request_cancel = "request_cancel"
    release_recorded = "release_recorded"
    refund_recorded = "refund_recorded"


TRANSITIONS: dict[tuple[TaskStatus, TaskAction], TaskStatus] = {
    (TaskStatus.open, TaskAction.accept): TaskStatus.pending_escrow,
    (TaskStatus.pending_escrow, TaskAction.hold_recorded): TaskStatus.in_progress,
    (TaskStatus.pending_escrow, TaskAction.hold_failed): TaskStatus.open,
    (TaskStatus.pending_escrow, TaskAction.cancel_unfunded): TaskStatus.cancelled,
    (TaskStatus.pending_escrow, TaskAction.request_cancel): TaskStatus.cancellation_requested,
    (TaskStatus.in_progress, TaskAction.request_cancel): TaskStatus.cancellation_requested,
    (TaskStatus.in_progress, TaskAction.release_recorded): TaskStatus.completed,
    (TaskStatus.cancellation_requested, TaskAction.refund_recorded): TaskStatus.cancelled,
}

TERMINAL = frozenset({TaskStatus.completed, TaskStatus.cancelled})


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    source: TaskStatus
    target: TaskStatus | None = None
    reason: str | None = None


def transition(status: TaskStatus, action: TaskAction) -> TransitionResult:
    status = TaskStatus(status)
    target = TRANSITIONS.get((status, action))
    if target is not None:
        return TransitionResult(ok=True, source=status, target=target)
    if status in TERMINAL:
        reason = f"Task is {status.value}; no further transitions are allowed"
    else:
        reason = f"Cannot {action.value} a task that is {status.value}"
    return TransitionResult(ok=False, source=status, reason=reason)


def require_transition(status: TaskStatus, action: TaskAction) -> TaskStatus:
    """Return the target status or raise StateTransitionError."""
    result = transition(status, action)
    if not result.ok:
        raise StateTransitionError(result.reason or "", current=result.source.value)
    assert result.target is not None
    return result.target


def sources_for(action: TaskAction) -> list[TaskStatus]:
    return [src for (src, act) in TRANSITIONS if act == action]


def target_for(action: TaskAction) -> TaskStatus:
    targets = {dst for (_, act), dst in TRANSITIONS.items() if act == action}
    assert len(targets) == 1, f"{action} must have exactly one target"
    return targets.pop()


async def apply_transition(
    session: AsyncSession,
    task_id: str,
    action: TaskAction,
    now: datetime | None = None,
    **values: Any,
) -> bool:
    """Compare-and-set the task's status for `action`.

    A single UPDATE guarded by the allowed source statuses; exactly one
    concurrent caller can win. Returns False when the task was not in a
    source status. Does not commit.
    """
    result = await session.execute(
        update(Task)
        .where(Task.id == task_id, Task.status.in_(sources_for(action)))
        .values(status=target_for(action), updated_at=now or datetime.now(UTC), **values)
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    if moved:
        logger.info("Task %s: %s -> %s", task_id, action.value, target_for(action).value)
    return moved
