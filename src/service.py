"""
Process facade: what the CI scheduler calls into.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from clients import ComputeRestClient
from config import FleetConfig
from fleet import FleetController, ProvisioningError
from launcher import ComputeEngineLauncher, launcher_for
from lifecycle import WorkerLifecycle
from models import (
    LoadSnapshot,
    PendingWorker,
    ProvisioningRequest,
    Task,
    TerminationReason,
    WorkerTemplate,
)
from provisioner import NoDelayProvisioningStrategy, ProvisioningListener, StrategyDecision
from reconciler import OrphanReconciler, SweepResult
from registry import FleetRegistry
from remote import RemoteTransport
from retention import JobQueue

logger = logging.getLogger(__name__)


class FleetService:
    """Wires controllers, lifecycle, strategy and reconciler together."""

    def __init__(
        self,
        config: FleetConfig,
        registry: Optional[FleetRegistry] = None,
        job_queue: Optional[JobQueue] = None,
        listeners: Optional[List[ProvisioningListener]] = None,
        transport: Optional[RemoteTransport] = None,
        client_factory: Callable[..., ComputeRestClient] = ComputeRestClient,
        agent_payload: Optional[bytes] = None,
    ):
        self.config = config
        self.registry = registry or FleetRegistry()
        self.transport = transport
        self.client_factory = client_factory
        self._agent_payload = agent_payload
        self.executor = ThreadPoolExecutor(
            max_workers=config.launch_pool_size, thread_name_prefix="fleet-launch"
        )
        self.lifecycle = WorkerLifecycle(
            self.registry, self.executor, self._launcher, job_queue=job_queue
        )
        self.strategy = NoDelayProvisioningStrategy(
            self.registry,
            listeners,
            enabled=config.no_delay_provisioning,
            credit_pending_launches=config.credit_pending_launches,
        )
        self.reconciler = OrphanReconciler(
            self.registry, config.reconcile_interval, dry_run=config.dry_run
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def agent_payload(self) -> bytes:
        if self._agent_payload is None:
            self._agent_payload = self.config.read_agent_payload()
        return self._agent_payload

    def _launcher(
        self, controller: FleetController, template: WorkerTemplate
    ) -> ComputeEngineLauncher:
        return launcher_for(controller.client, template, self.agent_payload, self.transport)

    # ------------------------------------------------------------------
    # Controllers
    # ------------------------------------------------------------------

    def add_controller(
        self,
        name: Optional[str] = None,
        project_id: Optional[str] = None,
        templates: Optional[Sequence[WorkerTemplate]] = None,
        instance_cap: Optional[int] = None,
        fleet_id: Optional[str] = None,
        client: Optional[ComputeRestClient] = None,
    ) -> FleetController:
        """Register a controller; arguments default to the service config."""
        project_id = project_id or self.config.project_id
        if client is None:
            client = self.client_factory(
                project_id, credentials_file=self.config.credentials_file
            )
        controller = FleetController(
            name=name or self.config.controller_name,
            project_id=project_id,
            client=client,
            templates=self.config.templates if templates is None else templates,
            registry=self.registry,
            lifecycle=self.lifecycle,
            instance_cap=self.config.instance_cap if instance_cap is None else instance_cap,
            no_delay_provisioning=self.config.no_delay_provisioning,
            fleet_id=fleet_id or self.config.fleet_id,
        )
        self.registry.add_controller(controller)
        logger.info(f"Registered controller {controller.name} (fleet id {controller.fleet_id})")
        return controller

    def _controller_of(self, worker_name: str) -> Optional[FleetController]:
        record = self.registry.get(worker_name)
        if record is None:
            return None
        return self.registry.get_controller(record.fleet_id)

    # ------------------------------------------------------------------
    # Scheduler boundary
    # ------------------------------------------------------------------

    def can_provision(self, label: Optional[str]) -> bool:
        return any(c.can_provision(label) for c in self.registry.controllers())

    def provision(self, label: Optional[str], excess_workload: int) -> List[PendingWorker]:
        """
        Provision on the first controller that can serve the label.

        Raises:
            ProvisioningError: If no controller can serve the label
        """
        for controller in self.registry.controllers():
            if controller.can_provision(label):
                return controller.provision(label, excess_workload)
        raise ProvisioningError(f"No controller can provision label {label!r}")

    def submit(self, request: ProvisioningRequest) -> List[PendingWorker]:
        return self.provision(request.label, request.excess_workload)

    def apply_strategy(self, label: Optional[str], snapshot: LoadSnapshot) -> StrategyDecision:
        return self.strategy.apply(label, snapshot)

    def task_accepted(self, worker_name: str, task: Task) -> None:
        retention = self.lifecycle.retention(worker_name)
        if retention is None:
            logger.warning(f"Task {task.task_id} accepted by unknown worker {worker_name}")
            return
        retention.task_accepted(task)

    def task_completed(
        self,
        worker_name: str,
        task: Task,
        duration: float = 0.0,
        problems: Optional[BaseException] = None,
    ) -> None:
        retention = self.lifecycle.retention(worker_name)
        if retention is None:
            logger.warning(f"Task {task.task_id} completed on unknown worker {worker_name}")
            return
        retention.task_completed(task, duration, problems)

    def delete_worker(self, worker_name: str) -> bool:
        """Administrative delete of a worker."""
        controller = self._controller_of(worker_name)
        if controller is None:
            logger.warning(f"No worker named {worker_name}")
            return False
        return controller.terminate_worker(worker_name, TerminationReason.ADMINISTRATIVE)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def on_tick(self, now: Optional[float] = None) -> Optional[SweepResult]:
        """Retention checks for every Online worker, plus the sweep when due."""
        self.lifecycle.check_retention(now)
        return self.reconciler.maybe_run()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="fleet-tick", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.on_tick()
            except Exception as e:
                logger.error(f"Fleet tick failed: {e}")
            self._stop.wait(self.config.tick_interval)

    def stop(self, wait: bool = False) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(self.config.tick_interval)
            self._thread = None
        self.executor.shutdown(wait=wait)
        self.lifecycle.shutdown(wait=wait)

    def status(self) -> Dict:
        """Controllers and their workers as a JSON-friendly dict."""
        controllers = []
        for controller in self.registry.controllers():
            controllers.append(
                {
                    "name": controller.name,
                    "fleet_id": controller.fleet_id,
                    "project_id": controller.project_id,
                    "templates": [t.description for t in controller.templates],
                    "workers": [
                        {
                            "name": r.name,
                            "state": r.state.name,
                            "template": r.template_description,
                            "zone": r.zone,
                            "running_tasks": r.running_tasks,
                            "preempted": r.preempted,
                        }
                        for r in controller.workers()
                    ],
                }
            )
        return {"timestamp": time.time(), "controllers": controllers}
