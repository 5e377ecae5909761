"""
Process-wide bookkeeping of fleet controllers and their workers.
"""

import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from models import WorkerRecord, WorkerState

if TYPE_CHECKING:
    from fleet import FleetController

logger = logging.getLogger(__name__)


class FleetRegistry:
    """Thread-safe store of controllers, worker records and name reservations.

    A reservation covers the window between choosing an instance name and
    publishing its record, so a sweep running concurrently with an insert
    still sees the name as local.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._controllers: Dict[str, "FleetController"] = {}
        self._records: Dict[str, WorkerRecord] = {}
        self._reservations: Dict[str, str] = {}

    # Controllers

    def add_controller(self, controller: "FleetController") -> None:
        with self._lock:
            self._controllers[controller.fleet_id] = controller

    def controllers(self) -> List["FleetController"]:
        with self._lock:
            return list(self._controllers.values())

    def get_controller(self, fleet_id: str) -> Optional["FleetController"]:
        with self._lock:
            return self._controllers.get(fleet_id)

    # Name reservations

    def reserve(self, name: str, fleet_id: str) -> None:
        with self._lock:
            self._reservations[name] = fleet_id

    def release(self, name: str) -> None:
        with self._lock:
            self._reservations.pop(name, None)

    # Records

    def publish(self, record: WorkerRecord) -> None:
        """Add a record and drop its reservation in one step."""
        with self._lock:
            self._records[record.name] = record
            self._reservations.pop(record.name, None)

    def remove(self, name: str) -> Optional[WorkerRecord]:
        with self._lock:
            return self._records.pop(name, None)

    def get(self, name: str) -> Optional[WorkerRecord]:
        with self._lock:
            return self._records.get(name)

    def records(
        self,
        fleet_id: Optional[str] = None,
        state: Optional[WorkerState] = None,
    ) -> List[WorkerRecord]:
        with self._lock:
            found = list(self._records.values())
        if fleet_id is not None:
            found = [r for r in found if r.fleet_id == fleet_id]
        if state is not None:
            found = [r for r in found if r.state == state]
        return found

    def local_names(self, fleet_id: str) -> Set[str]:
        """Names of records and reservations owned by a controller."""
        with self._lock:
            names = {n for n, r in self._records.items() if r.fleet_id == fleet_id}
            names.update(n for n, f in self._reservations.items() if f == fleet_id)
            return names

    def executors(self, fleet_id: Optional[str] = None, states=None) -> int:
        """Sum of executor slots for records in the given states."""
        return sum(
            r.num_executors
            for r in self.records(fleet_id)
            if states is None or r.state in states
        )

    def clear(self) -> None:
        with self._lock:
            self._controllers.clear()
            self._records.clear()
            self._reservations.clear()
