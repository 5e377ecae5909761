"""
No-delay provisioning strategy run by the scheduler each round.
"""

import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Protocol

from models import LoadSnapshot, PendingWorker, WorkerState
from registry import FleetRegistry

if TYPE_CHECKING:
    from fleet import FleetController

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES = frozenset({WorkerState.INSERTING, WorkerState.LAUNCHING})


class StrategyDecision(Enum):
    PROVISIONING_COMPLETED = "PROVISIONING_COMPLETED"
    CONSULT_REMAINING_STRATEGIES = "CONSULT_REMAINING_STRATEGIES"


class ProvisioningListener(Protocol):
    """Observer that may veto a controller and hears about launches."""

    def can_provision(
        self, controller: "FleetController", label: Optional[str], workload: int
    ) -> Optional[str]:
        """Return a reason to veto, or None."""
        ...

    def on_started(
        self, controller: "FleetController", label: Optional[str], pending: List[PendingWorker]
    ) -> None:
        ...


class NoDelayProvisioningStrategy:
    """Provision immediately for queued work instead of waiting for load
    statistics to settle."""

    def __init__(
        self,
        registry: FleetRegistry,
        listeners: Optional[List[ProvisioningListener]] = None,
        rng: Optional[random.Random] = None,
        enabled: bool = True,
        credit_pending_launches: bool = True,
    ):
        self.registry = registry
        self.listeners = list(listeners or [])
        self.rng = rng or random.Random()
        self.enabled = enabled
        self.credit_pending_launches = credit_pending_launches

    def apply(self, label: Optional[str], snapshot: LoadSnapshot) -> StrategyDecision:
        """
        One provisioning pass for a label.

        Args:
            label: Job label being scheduled
            snapshot: Scheduler counters; pending launches are added to it

        Returns:
            PROVISIONING_COMPLETED if capacity now covers the queue
        """
        if not self.enabled:
            return StrategyDecision.CONSULT_REMAINING_STRATEGIES

        demand = snapshot.queue_length
        available = snapshot.available_capacity
        if self.credit_pending_launches:
            # workers from earlier rounds that have not come online yet
            available += self._in_flight_executors(label)
        logger.debug(f"Label {label!r}: available={available}, demand={demand}")
        if available >= demand:
            return StrategyDecision.PROVISIONING_COMPLETED

        controllers = self.registry.controllers()
        self.rng.shuffle(controllers)
        for controller in controllers:
            if not controller.no_delay_provisioning or not controller.can_provision(label):
                continue
            workload = demand - available
            if workload <= 0:
                break
            veto = self._veto(controller, label, workload)
            if veto:
                logger.info(f"Provisioning on {controller.name} vetoed: {veto}")
                continue

            try:
                pending = controller.provision(label, workload)
            except Exception as e:
                logger.error(f"Provisioning on {controller.name} failed: {e}")
                continue
            if not pending:
                continue

            self._fire_started(controller, label, pending)
            launched = sum(p.num_executors for p in pending)
            snapshot.record_pending_launches(pending)
            if self.credit_pending_launches:
                snapshot.additional_planned_capacity += launched
            available += launched
            logger.info(
                f"Started provisioning {len(pending)} worker(s) on {controller.name} "
                f"for label {label!r} ({launched} executor(s))"
            )

        if available >= demand:
            return StrategyDecision.PROVISIONING_COMPLETED
        return StrategyDecision.CONSULT_REMAINING_STRATEGIES

    def _in_flight_executors(self, label: Optional[str]) -> int:
        return sum(
            self.registry.executors(controller.fleet_id, IN_FLIGHT_STATES)
            for controller in self.registry.controllers()
            if controller.no_delay_provisioning and controller.can_provision(label)
        )

    def _veto(
        self, controller: "FleetController", label: Optional[str], workload: int
    ) -> Optional[str]:
        for listener in self.listeners:
            try:
                reason = listener.can_provision(controller, label, workload)
            except Exception as e:
                logger.error(f"Provisioning listener {listener!r} failed: {e}")
                continue
            if reason is not None:
                return reason
        return None

    def _fire_started(
        self, controller: "FleetController", label: Optional[str], pending: List[PendingWorker]
    ) -> None:
        for listener in self.listeners:
            try:
                listener.on_started(controller, label, pending)
            except Exception as e:
                logger.error(f"Provisioning listener {listener!r} failed on start: {e}")
