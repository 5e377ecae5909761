"""
Retention policies: when an online worker should be terminated.
"""

import logging
import threading
import time
from typing import Callable, Optional, Protocol

from models import Task, TerminationReason, WorkerRecord, WorkerState

logger = logging.getLogger(__name__)

PREEMPTED_RESUBMIT_CAUSE = "Rebuilding preempted job"


class JobQueue(Protocol):
    """The part of the CI scheduler retention talks to."""

    def schedule(self, task: Task, cause: str) -> None:
        ...


class IdleTimeoutRetention:
    """Terminate a worker once it has been idle longer than the timeout."""

    def __init__(self, retention_time_minutes: int):
        self.timeout_seconds = retention_time_minutes * 60

    def should_terminate(
        self, record: WorkerRecord, now: Optional[float] = None
    ) -> Optional[TerminationReason]:
        if record.state != WorkerState.ONLINE or not record.is_idle():
            return None
        if record.idle_seconds(now) > self.timeout_seconds:
            return TerminationReason.IDLE_TIMEOUT
        return None

    def task_accepted(self, record: WorkerRecord, task: Task) -> None:
        pass

    def task_completed(self, record: WorkerRecord, task: Task) -> Optional[TerminationReason]:
        return None


class OneShotRetention(IdleTimeoutRetention):
    """Run exactly one task, then terminate. The idle timeout still applies
    to a worker that never gets a task."""

    def task_accepted(self, record: WorkerRecord, task: Task) -> None:
        record.stop_accepting()

    def task_completed(self, record: WorkerRecord, task: Task) -> Optional[TerminationReason]:
        return TerminationReason.ONE_SHOT_COMPLETE


class WorkerRetention:
    """Binds a retention policy to one worker and acts on task events."""

    def __init__(
        self,
        policy: IdleTimeoutRetention,
        record: WorkerRecord,
        job_queue: Optional[JobQueue],
        terminate: Callable[[TerminationReason], None],
    ):
        self.policy = policy
        self.record = record
        self.job_queue = job_queue
        self.terminate = terminate
        self._resubmitted = False
        self._lock = threading.Lock()

    def task_accepted(self, task: Task) -> None:
        self.record.task_started()
        self.policy.task_accepted(self.record, task)

    def task_completed(
        self, task: Task, duration: float = 0.0, problems: Optional[BaseException] = None
    ) -> None:
        self.record.task_finished(failed=problems is not None, now=time.time())
        if problems is not None:
            logger.info(f"Task {task.task_id} on {self.record.name} failed: {problems}")
        else:
            logger.debug(f"Task {task.task_id} on {self.record.name} took {duration:.1f}s")

        if self.check_preempted(task):
            self.terminate(TerminationReason.PREEMPTED)
            return
        reason = self.policy.task_completed(self.record, task)
        if reason:
            self.terminate(reason)

    def check_preempted(self, task: Task) -> bool:
        """Re-queue the task's root once if the worker was preempted."""
        if not (self.record.preemptible and self.record.preempted):
            return False
        with self._lock:
            if self._resubmitted:
                return True
            self._resubmitted = True
        root = task.root()
        if self.job_queue is not None:
            logger.info(
                f"Rescheduling {root.task_id} after preemption of {self.record.name}"
            )
            self.job_queue.schedule(root, PREEMPTED_RESUBMIT_CAUSE)
        else:
            logger.warning(
                f"Worker {self.record.name} was preempted but no job queue is attached; "
                f"{root.task_id} is not rescheduled"
            )
        return True

    def check(self, now: Optional[float] = None) -> Optional[TerminationReason]:
        """Periodic check; terminates the worker when the policy says so."""
        if self.record.is_terminal:
            return None
        if self.record.preempted and self.record.is_idle():
            reason = TerminationReason.PREEMPTED
        else:
            reason = self.policy.should_terminate(self.record, now)
        if reason:
            logger.info(f"Terminating {self.record.name}: {reason.value}")
            self.terminate(reason)
        return reason


def policy_for(one_shot: bool, retention_time_minutes: int) -> IdleTimeoutRetention:
    if one_shot:
        return OneShotRetention(retention_time_minutes)
    return IdleTimeoutRetention(retention_time_minutes)
