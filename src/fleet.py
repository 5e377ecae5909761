"""
Fleet controller: one per cloud account, provisions workers from templates.
"""

import logging
import random
import sys
import uuid
from typing import Dict, List, Optional, Sequence

import requests

from clients import ComputeApiError, ComputeRestClient
from lifecycle import WorkerLifecycle
from matcher import TemplateMatcher
from models import (
    PendingWorker,
    TerminationReason,
    WorkerRecord,
    WorkerState,
    WorkerTemplate,
    name_from_self_link,
)
from registry import FleetRegistry

logger = logging.getLogger(__name__)

CONTROLLER_NAME_PREFIX = "gce-"
LABEL_CONFIG_NAME = "fleet_config_name"
LABEL_CONTROLLER_ID = "fleet_controller_id"
ACTIVE_STATUSES = ("PROVISIONING", "STAGING", "RUNNING")


class ProvisioningError(Exception):
    """No worker could be provisioned."""


class FleetController:
    """Provisions and owns the workers of one project."""

    def __init__(
        self,
        name: str,
        project_id: str,
        client: ComputeRestClient,
        templates: Sequence[WorkerTemplate],
        registry: FleetRegistry,
        lifecycle: WorkerLifecycle,
        instance_cap: Optional[int] = None,
        no_delay_provisioning: bool = True,
        fleet_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        if not name:
            raise ValueError("A controller name is required")
        if not project_id:
            raise ValueError("A project id is required")
        for template in templates:
            template.validate()

        self.display_name = name
        self.name = name if name.startswith(CONTROLLER_NAME_PREFIX) else CONTROLLER_NAME_PREFIX + name
        self.project_id = project_id
        self.client = client
        self.registry = registry
        self.lifecycle = lifecycle
        self.instance_cap = instance_cap if instance_cap and instance_cap > 0 else sys.maxsize
        self.no_delay_provisioning = no_delay_provisioning
        self.fleet_id = fleet_id or str(uuid.uuid4())
        self.rng = rng or random.Random()
        self.matcher = TemplateMatcher(templates, self.rng)

    @property
    def templates(self) -> List[WorkerTemplate]:
        return self.matcher.templates

    def fleet_labels(self) -> Dict[str, str]:
        return {LABEL_CONTROLLER_ID: self.fleet_id}

    def can_provision(self, label: Optional[str]) -> bool:
        return self.matcher.match(label) is not None

    def available_capacity(self) -> int:
        """Instance cap minus fleet instances that are starting or running."""
        instances = self.client.list_instances_by_label(self.fleet_labels())
        active = sum(1 for i in instances if i.get("status") in ACTIVE_STATUSES)
        logger.debug(f"{self.name}: {active} active instance(s), cap {self.instance_cap}")
        return self.instance_cap - active

    def provision(self, label: Optional[str], excess_workload: int) -> List[PendingWorker]:
        """
        Insert instances until the excess workload is covered or the cap is hit.

        Args:
            label: Job label to serve
            excess_workload: Executors needed

        Returns:
            Pending workers whose launches are in flight

        Raises:
            NoConfigurationError: If no template serves the label
            ProvisioningError: If not a single instance could be inserted
        """
        candidates = self.matcher.require(label, self.name)
        try:
            capacity = self.available_capacity()
        except (ComputeApiError, requests.exceptions.RequestException) as e:
            raise ProvisioningError(f"{self.name}: could not count instances: {e}") from e

        pending: List[PendingWorker] = []
        index = 0
        while excess_workload > 0 and capacity > 0:
            template = candidates[index % len(candidates)]
            index += 1
            try:
                worker = self._insert(template)
            except (ComputeApiError, ProvisioningError, requests.exceptions.RequestException) as e:
                if not pending:
                    raise ProvisioningError(
                        f"{self.name}: insert from {template.description} failed: {e}"
                    ) from e
                logger.error(
                    f"{self.name}: insert from {template.description} failed, "
                    f"keeping {len(pending)} provisioned worker(s): {e}"
                )
                break
            pending.append(worker)
            excess_workload -= template.num_executors
            capacity -= 1

        if capacity <= 0 and excess_workload > 0:
            logger.info(f"{self.name}: instance cap {self.instance_cap} reached")
        return pending

    def _insert(self, template: WorkerTemplate) -> PendingWorker:
        name = template.unique_name(self.rng)
        self.registry.reserve(name, self.fleet_id)
        record = WorkerRecord(
            name=name,
            fleet_id=self.fleet_id,
            template_description=template.description,
            zone=name_from_self_link(template.zone),
            num_executors=template.num_executors,
            preemptible=template.preemptible,
            one_shot=template.one_shot,
            create_snapshot=template.create_snapshot,
            retention_time_minutes=template.retention_time_minutes,
        )
        record.advance(WorkerState.INSERTING)

        labels = {LABEL_CONFIG_NAME: template.name_prefix, LABEL_CONTROLLER_ID: self.fleet_id}
        body = template.instance_body(name, labels)
        try:
            record.insert_operation = self.client.insert_instance(
                body, template.zone, template.source_instance_template or None
            )
        except BaseException:
            self.registry.release(name)
            raise

        logger.info(f"{self.name}: inserted {name} from {template.description}")
        record.advance(WorkerState.LAUNCHING)
        self.registry.publish(record)
        try:
            future = self.lifecycle.launch(self, record, template)
        except RuntimeError as e:
            # launch pool shut down
            self.lifecycle.terminate(self, record, TerminationReason.LAUNCH_FAILED)
            raise ProvisioningError(f"{self.name}: could not start launch of {name}: {e}") from e
        return PendingWorker(
            name=name,
            future=future,
            num_executors=template.num_executors,
            template_description=template.description,
        )

    def terminate_worker(
        self, name: str, reason: TerminationReason = TerminationReason.ADMINISTRATIVE
    ) -> bool:
        record = self.registry.get(name)
        if record is None or record.fleet_id != self.fleet_id:
            return False
        return self.lifecycle.terminate(self, record, reason)

    def workers(self) -> List[WorkerRecord]:
        return self.registry.records(self.fleet_id)
