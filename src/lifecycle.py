"""
Worker lifecycle: launch to Online, and termination with optional snapshot.
"""

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from launcher import AgentChannel, ComputeEngineLauncher, LaunchError
from models import TerminationReason, WorkerRecord, WorkerState, WorkerTemplate
from preemption import PreemptionWatcher
from registry import FleetRegistry
from retention import JobQueue, WorkerRetention, policy_for

if TYPE_CHECKING:
    from fleet import FleetController

logger = logging.getLogger(__name__)

LauncherFactory = Callable[["FleetController", WorkerTemplate], ComputeEngineLauncher]

DEFAULT_TERMINATION_POOL_SIZE = 4


class WorkerLifecycle:
    """Drives worker records through their states.

    States only move forward (see ``WorkerState``). Launches run on the
    given executor. ``terminate`` flips the record to TERMINATING on the
    calling thread and leaves the snapshot and the instance delete to the
    termination pool. Preemption watchers block for as long as a worker is
    online, so each gets its own daemon thread.
    """

    def __init__(
        self,
        registry: FleetRegistry,
        executor: Executor,
        launcher_factory: LauncherFactory,
        job_queue: Optional[JobQueue] = None,
        terminator: Optional[Executor] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.launcher_factory = launcher_factory
        self.job_queue = job_queue
        self.terminator = terminator or ThreadPoolExecutor(
            max_workers=DEFAULT_TERMINATION_POOL_SIZE, thread_name_prefix="fleet-terminate"
        )
        self._retentions: Dict[str, WorkerRetention] = {}
        self._watchers: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def launch(
        self, controller: "FleetController", record: WorkerRecord, template: WorkerTemplate
    ) -> Future:
        """Submit the bootstrap. The future yields the worker name once Online."""
        return self.executor.submit(self._launch, controller, record, template)

    def _launch(
        self, controller: "FleetController", record: WorkerRecord, template: WorkerTemplate
    ) -> str:
        record.advance(WorkerState.LAUNCHING)
        launcher = self.launcher_factory(controller, template)
        try:
            channel = launcher.launch(record)
        except Exception as e:
            logger.error(f"Launch of {record.name} failed: {e}")
            self.terminate(controller, record, TerminationReason.LAUNCH_FAILED)
            raise

        if not record.advance(WorkerState.ONLINE):
            # terminated while the agent was starting
            channel.close()
            raise LaunchError(f"Worker {record.name} was terminated during launch")

        record.channel = channel
        self._start_retention(controller, record)
        if record.preemptible:
            self._watch_preemption(controller, record, channel, template)
        logger.info(f"Worker {record.name} is online")
        return record.name

    def _start_retention(self, controller: "FleetController", record: WorkerRecord) -> None:
        policy = policy_for(record.one_shot, record.retention_time_minutes)
        retention = WorkerRetention(
            policy,
            record,
            self.job_queue,
            terminate=lambda reason: self.terminate(controller, record, reason),
        )
        with self._lock:
            self._retentions[record.name] = retention

    def _watch_preemption(
        self,
        controller: "FleetController",
        record: WorkerRecord,
        channel: AgentChannel,
        template: WorkerTemplate,
    ) -> None:
        watcher = PreemptionWatcher(
            channel.transport,
            channel.session,
            record,
            windows=template.is_windows,
            on_preempted=lambda r: self._preempted(controller, r),
        )
        thread = threading.Thread(
            target=watcher.run, name=f"preemption-{record.name}", daemon=True
        )
        with self._lock:
            self._watchers[record.name] = thread
        thread.start()

    def _preempted(self, controller: "FleetController", record: WorkerRecord) -> None:
        # a busy worker is terminated once its task completes
        if record.is_idle():
            self.terminate(controller, record, TerminationReason.PREEMPTED)

    def retention(self, name: str) -> Optional[WorkerRetention]:
        with self._lock:
            return self._retentions.get(name)

    def check_retention(self, now: Optional[float] = None) -> List[str]:
        """Run every Online worker's retention check; returns terminated names."""
        now = now if now is not None else time.time()
        with self._lock:
            retentions = list(self._retentions.values())
        terminated = []
        for retention in retentions:
            try:
                if retention.check(now):
                    terminated.append(retention.record.name)
            except Exception as e:
                logger.error(f"Retention check of {retention.record.name} failed: {e}")
        return terminated

    def terminate(
        self,
        controller: "FleetController",
        record: WorkerRecord,
        reason: TerminationReason,
    ) -> bool:
        """
        Terminate a worker. Only the first call for a record has an effect.

        The record enters TERMINATING before this returns; the snapshot and
        the instance delete run on the termination pool.

        Args:
            controller: Controller owning the worker
            record: Worker record
            reason: Why the worker is leaving

        Returns:
            True if this call started the termination
        """
        if not record.begin_termination(reason):
            return False
        logger.info(f"Terminating {record.name} ({reason.value})")

        with self._lock:
            self._retentions.pop(record.name, None)
            self._watchers.pop(record.name, None)
        if record.channel is not None:
            try:
                record.channel.close()
            except Exception as e:
                logger.debug(f"Closing channel of {record.name} failed: {e}")

        try:
            self.terminator.submit(self._dispose, controller, record)
        except RuntimeError:
            # pool already shut down
            logger.warning(f"Termination pool is closed, disposing of {record.name} inline")
            self._dispose(controller, record)
        return True

    def _dispose(self, controller: "FleetController", record: WorkerRecord) -> None:
        """Optional snapshot, async instance delete, then drop the record."""
        try:
            if record.create_snapshot and record.failed_builds > 0:
                record.advance(WorkerState.SNAPSHOTTING)
                logger.info(
                    f"Creating snapshot of {record.name} after "
                    f"{record.failed_builds} failed build(s)"
                )
                try:
                    controller.client.create_snapshot(record.zone, record.name)
                except Exception as e:
                    logger.error(f"Snapshot of {record.name} failed: {e}")

            try:
                controller.client.terminate_instance_async(record.zone, record.name)
            except Exception as e:
                logger.error(f"Delete of instance {record.name} failed: {e}")
        finally:
            self.registry.remove(record.name)
            record.advance(WorkerState.TERMINATED)

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting terminations; with ``wait`` drain those in flight."""
        self.terminator.shutdown(wait=wait)
