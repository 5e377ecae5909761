"""
Periodic sweep that deletes fleet instances nothing locally knows about.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set

from models import name_from_self_link
from registry import FleetRegistry

logger = logging.getLogger(__name__)

DEFAULT_RECURRENCE_PERIOD_SECONDS = 60 * 60
KEEP_STATUSES = ("STOPPING", "TERMINATED")


@dataclass
class SweepResult:
    """Outcome of one reconciliation sweep."""

    checked: int = 0
    orphans: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "orphans": list(self.orphans),
            "deleted": list(self.deleted),
            "failed": list(self.failed),
        }


class PeriodicTask:
    """Something that runs every ``recurrence_period`` seconds."""

    def __init__(
        self,
        name: str,
        recurrence_period: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.recurrence_period = recurrence_period
        self.clock = clock
        self._last_run: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run(self):
        raise NotImplementedError

    def is_due(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return self._last_run is None or now - self._last_run >= self.recurrence_period

    def maybe_run(self, now: Optional[float] = None):
        """Run if due; returns the run's result or None."""
        now = self.clock() if now is None else now
        if not self.is_due(now):
            return None
        self._last_run = now
        return self.run()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.maybe_run()
            except Exception as e:
                logger.error(f"Periodic task {self.name} failed: {e}")
            self._stop.wait(min(self.recurrence_period, 60))


class OrphanReconciler(PeriodicTask):
    """Deletes running instances labeled with a fleet id but unknown locally.

    Remote instances are listed before local names are read, so an instance
    inserted during the sweep is either absent from the listing or already
    reserved in the registry.
    """

    def __init__(
        self,
        registry: FleetRegistry,
        recurrence_period: float = DEFAULT_RECURRENCE_PERIOD_SECONDS,
        dry_run: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("orphan-reconciler", recurrence_period, clock)
        self.registry = registry
        self.dry_run = dry_run

    def run(self, known_names: Optional[Iterable[str]] = None) -> SweepResult:
        """
        Sweep every registered controller.

        Args:
            known_names: Extra worker names to treat as local (e.g. nodes the
                CI server knows about when running out of process)

        Returns:
            SweepResult over all controllers
        """
        result = SweepResult()
        known = set(known_names or ())
        for controller in self.registry.controllers():
            try:
                self._sweep(controller, known, result)
            except Exception as e:
                logger.error(f"Orphan sweep of {controller.name} failed: {e}")
        if result.orphans:
            logger.info(
                f"Orphan sweep: {result.checked} checked, {len(result.orphans)} orphan(s), "
                f"{len(result.deleted)} deleted, {len(result.failed)} failed"
            )
        return result

    def _sweep(self, controller, known: Set[str], result: SweepResult) -> None:
        remote = controller.client.list_instances_by_label(controller.fleet_labels())
        local = self.registry.local_names(controller.fleet_id) | known

        for instance in remote:
            result.checked += 1
            name = instance.get("name", "")
            status = instance.get("status", "")
            if status in KEEP_STATUSES or name in local:
                continue

            result.orphans.append(name)
            if self.dry_run:
                logger.info(f"[DRY RUN] Would remove orphaned instance: {name}")
                continue
            logger.info(f"Removing orphaned instance: {name}")
            try:
                controller.client.terminate_instance_async(
                    name_from_self_link(instance.get("zone", "")), name
                )
                result.deleted.append(name)
            except Exception as e:
                logger.error(f"Error terminating orphaned instance {name}: {e}")
                result.failed.append(name)
