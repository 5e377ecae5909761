"""
Data models for the Compute Engine CI worker fleet.
"""

import random
import re
import string
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

DEFAULT_NUM_EXECUTORS = 1
DEFAULT_LAUNCH_TIMEOUT_SECONDS = 300
DEFAULT_RETENTION_TIME_MINUTES = (DEFAULT_LAUNCH_TIMEOUT_SECONDS // 60) + 1
DEFAULT_BOOT_DISK_SIZE_GB = 10
DEFAULT_RUN_AS_USER = "ci"
DEFAULT_REMOTE_FS = "./.ci-agent"
DEFAULT_JAVA_EXEC_PATH = "java"

METADATA_LINUX_STARTUP_SCRIPT_KEY = "startup-script"
METADATA_WINDOWS_STARTUP_SCRIPT_KEY = "windows-startup-script-ps1"
LINUX_STARTUP_SENTINEL = "/tmp/ci-fleet-startup-complete"
WINDOWS_STARTUP_SENTINEL = "C:\\ci-fleet-startup-complete"

NAT_TYPE = "ONE_TO_ONE_NAT"
NAT_NAME = "External NAT"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
MAX_NAME_PREFIX_LENGTH = 50


def int_or_default(value: Any, default: int) -> int:
    """Parse an integer, falling back to a default for empty or bad input."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def name_from_self_link(self_link: str) -> str:
    """Return the last path segment of a GCE self link (or a bare name)."""
    if not self_link:
        return ""
    return self_link.rstrip("/").split("/")[-1]


def strip_self_link_prefix(value: str) -> str:
    """Turn a full API URL into a partial 'projects/...' resource path."""
    if value and "https://www.googleapis.com" in value:
        return value[value.index("/projects/") + 1 :]
    return value


def parse_labels(label_string: str) -> FrozenSet[str]:
    """Split a whitespace separated label string into a set of atoms."""
    return frozenset((label_string or "").split())


class NodeMode(Enum):
    """How eagerly a template accepts work."""

    NORMAL = "NORMAL"  # any job, including unlabeled ones
    EXCLUSIVE = "EXCLUSIVE"  # only jobs whose label matches


class WorkerState(IntEnum):
    """Lifecycle states of a worker. Ordered; records only move forward."""

    REQUESTED = 0
    INSERTING = 1
    LAUNCHING = 2
    ONLINE = 3
    TERMINATING = 4
    SNAPSHOTTING = 5
    TERMINATED = 6


class TerminationReason(Enum):
    """Why a worker left the Online state."""

    PREEMPTED = "preempted"
    IDLE_TIMEOUT = "idle_timeout"
    ONE_SHOT_COMPLETE = "one_shot_complete"
    ADMINISTRATIVE = "administrative"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class AcceleratorConfig:
    """GPU attached to each worker."""

    gpu_type: str = ""
    gpu_count: int = 0

    def enabled(self) -> bool:
        return bool(self.gpu_type) and self.gpu_count > 0


@dataclass(frozen=True)
class NetworkConfig:
    """Network and subnetwork for the worker NIC.

    When ``project_id`` is set the subnetwork lives in a shared VPC host
    project rather than the fleet's own project.
    """

    network: str = "default"
    subnetwork: str = "default"
    project_id: str = ""
    region: str = ""

    def subnetwork_path(self) -> str:
        if not self.subnetwork or self.subnetwork == "default":
            return ""
        if self.project_id and "/" not in self.subnetwork:
            return (
                f"projects/{self.project_id}/regions/{self.region}"
                f"/subnetworks/{self.subnetwork}"
            )
        return strip_self_link_prefix(self.subnetwork)


@dataclass(frozen=True)
class WindowsConfig:
    """Credentials for Windows workers reached through OpenSSH."""

    username: str
    password: str = ""
    private_key: str = ""


@dataclass(frozen=True)
class WorkerTemplate:
    """A reusable worker specification: shape, image, labels and policy."""

    name_prefix: str
    description: str
    zone: str
    machine_type: str = "n1-standard-1"
    region: str = ""
    labels: str = ""
    mode: NodeMode = NodeMode.NORMAL
    num_executors: int = DEFAULT_NUM_EXECUTORS
    one_shot: bool = False
    retention_time_minutes: int = DEFAULT_RETENTION_TIME_MINUTES
    launch_timeout_seconds: int = DEFAULT_LAUNCH_TIMEOUT_SECONDS
    create_snapshot: bool = False
    preemptible: bool = False
    startup_script: str = ""
    wait_for_startup_script: bool = False
    min_cpu_platform: str = ""
    boot_disk_type: str = ""
    boot_disk_size_gb: int = DEFAULT_BOOT_DISK_SIZE_GB
    boot_disk_auto_delete: bool = True
    boot_disk_source_image: str = ""
    source_instance_template: str = ""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    external_address: bool = True
    use_internal_address: bool = False
    network_tags: str = ""
    service_account_email: str = ""
    accelerator: Optional[AcceleratorConfig] = None
    run_as_user: str = DEFAULT_RUN_AS_USER
    remote_fs: str = DEFAULT_REMOTE_FS
    java_exec_path: str = DEFAULT_JAVA_EXEC_PATH
    ssh_private_key: str = ""
    windows: Optional[WindowsConfig] = None
    cloud_labels: Dict[str, str] = field(default_factory=dict)

    @property
    def label_set(self) -> FrozenSet[str]:
        return parse_labels(self.labels)

    @property
    def is_windows(self) -> bool:
        return self.windows is not None

    def validate(self) -> None:
        """
        Validate fields that would otherwise fail at insert time.

        Raises:
            ValueError: If the template is malformed
        """
        if not self.name_prefix:
            raise ValueError("A name prefix is required")
        if not NAME_PATTERN.match(self.name_prefix):
            raise ValueError(f"Prefix must match regex {NAME_PATTERN.pattern}")
        if len(self.name_prefix) > MAX_NAME_PREFIX_LENGTH:
            raise ValueError(f"Maximum prefix length is {MAX_NAME_PREFIX_LENGTH}")
        if not self.description:
            raise ValueError("A description is required")
        if not self.zone:
            raise ValueError("A zone is required")
        for tag in self.network_tags.split():
            if not NAME_PATTERN.match(tag):
                raise ValueError(
                    "Tags must be space-delimited and each tag must match "
                    f"regex {NAME_PATTERN.pattern}"
                )
        if self.num_executors < 1:
            raise ValueError("A worker needs at least one executor")
        if self.windows and not (self.windows.password or self.windows.private_key):
            raise ValueError("Windows workers need a password or a private key")

    def unique_name(self, rng: Optional[random.Random] = None) -> str:
        """Generate an instance name: prefix, a dash, six random [a-z0-9]."""
        rng = rng or random.SystemRandom()
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(rng.choice(alphabet) for _ in range(6))
        prefix = self.name_prefix if self.name_prefix.endswith("-") else self.name_prefix + "-"
        return prefix + suffix

    def startup_sentinel(self) -> str:
        return WINDOWS_STARTUP_SENTINEL if self.is_windows else LINUX_STARTUP_SENTINEL

    def _metadata(self) -> Optional[Dict]:
        script = self.startup_script
        if self.wait_for_startup_script:
            if self.is_windows:
                touch = f"New-Item -ItemType File -Force -Path '{self.startup_sentinel()}'"
            else:
                touch = f"touch {self.startup_sentinel()}"
            script = f"{script.rstrip()}\n{touch}\n" if script else f"{touch}\n"
        if not script:
            return None
        key = (
            METADATA_WINDOWS_STARTUP_SCRIPT_KEY
            if self.is_windows
            else METADATA_LINUX_STARTUP_SCRIPT_KEY
        )
        return {"items": [{"key": key, "value": script}]}

    def _network_interfaces(self) -> List[Dict]:
        nic: Dict[str, Any] = {"accessConfigs": []}
        if self.external_address:
            nic["accessConfigs"].append({"type": NAT_TYPE, "name": NAT_NAME})
        subnetwork = self.network.subnetwork_path()
        if subnetwork:
            nic["subnetwork"] = subnetwork
        elif self.network.network and self.network.network != "default":
            nic["network"] = strip_self_link_prefix(self.network.network)
        return [nic]

    def instance_body(
        self, name: str, extra_labels: Optional[Dict[str, str]] = None
    ) -> Dict:
        """
        Build the Compute Engine instance resource for one worker.

        Args:
            name: Instance name (see unique_name)
            extra_labels: GCE labels to add, e.g. the fleet id

        Returns:
            Instance resource as a dictionary
        """
        zone = name_from_self_link(self.zone)
        labels = dict(self.cloud_labels)
        labels.update(extra_labels or {})

        body: Dict[str, Any] = {
            "name": name,
            "description": self.description,
            "zone": zone,
            "labels": labels,
        }
        if self.source_instance_template:
            # machine shape, disks and network come from the GCE template
            return body

        body["machineType"] = f"zones/{zone}/machineTypes/{name_from_self_link(self.machine_type)}"
        scheduling: Dict[str, Any] = {"preemptible": self.preemptible}
        if self.preemptible:
            scheduling["automaticRestart"] = False
        if self.accelerator and self.accelerator.enabled():
            body["guestAccelerators"] = [
                {
                    "acceleratorType": (
                        f"zones/{zone}/acceleratorTypes/"
                        f"{name_from_self_link(self.accelerator.gpu_type)}"
                    ),
                    "acceleratorCount": self.accelerator.gpu_count,
                }
            ]
            scheduling["onHostMaintenance"] = "TERMINATE"
        body["scheduling"] = scheduling

        init_params: Dict[str, Any] = {"diskSizeGb": str(self.boot_disk_size_gb)}
        if self.boot_disk_source_image:
            init_params["sourceImage"] = strip_self_link_prefix(
                self.boot_disk_source_image
            )
        if self.boot_disk_type:
            init_params["diskType"] = (
                f"zones/{zone}/diskTypes/{name_from_self_link(self.boot_disk_type)}"
            )
        body["disks"] = [
            {
                "boot": True,
                "autoDelete": self.boot_disk_auto_delete,
                "initializeParams": init_params,
            }
        ]
        body["networkInterfaces"] = self._network_interfaces()

        metadata = self._metadata()
        if metadata:
            body["metadata"] = metadata
        if self.network_tags.strip():
            body["tags"] = {"items": self.network_tags.split()}
        if self.service_account_email:
            body["serviceAccounts"] = [
                {"email": self.service_account_email, "scopes": [CLOUD_PLATFORM_SCOPE]}
            ]
        if self.min_cpu_platform:
            body["minCpuPlatform"] = self.min_cpu_platform
        return body

    @classmethod
    def from_dict(cls, data: Dict) -> "WorkerTemplate":
        """Build a template from a form / JSON representation."""
        values = dict(data)
        network = values.pop("network", None)
        accelerator = values.pop("accelerator", None)
        windows = values.pop("windows", None)
        mode = values.pop("mode", NodeMode.NORMAL.value)

        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown template fields: {', '.join(sorted(unknown))}")

        for key, default in (
            ("num_executors", DEFAULT_NUM_EXECUTORS),
            ("retention_time_minutes", DEFAULT_RETENTION_TIME_MINUTES),
            ("launch_timeout_seconds", DEFAULT_LAUNCH_TIMEOUT_SECONDS),
            ("boot_disk_size_gb", DEFAULT_BOOT_DISK_SIZE_GB),
        ):
            if key in values:
                values[key] = int_or_default(values[key], default)

        return cls(
            mode=NodeMode(str(mode).upper()) if not isinstance(mode, NodeMode) else mode,
            network=NetworkConfig(**network) if network else NetworkConfig(),
            accelerator=AcceleratorConfig(**accelerator) if accelerator else None,
            windows=WindowsConfig(**windows) if windows else None,
            **values,
        )

    def to_dict(self) -> Dict:
        """Form / JSON representation. Secrets are left out."""
        data = {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name not in ("network", "accelerator", "windows", "mode", "ssh_private_key")
        }
        data["mode"] = self.mode.value
        data["network"] = {
            "network": self.network.network,
            "subnetwork": self.network.subnetwork,
            "project_id": self.network.project_id,
            "region": self.network.region,
        }
        if self.accelerator:
            data["accelerator"] = {
                "gpu_type": self.accelerator.gpu_type,
                "gpu_count": self.accelerator.gpu_count,
            }
        if self.windows:
            data["windows"] = {"username": self.windows.username}
        data["cloud_labels"] = dict(self.cloud_labels)
        return data


@dataclass
class Task:
    """A unit of CI work as seen by the fleet. ``parent`` is the owner task."""

    task_id: str
    name: str = ""
    parent: Optional["Task"] = None

    def root(self) -> "Task":
        task = self
        while task.parent is not None and task.parent is not task:
            task = task.parent
        return task


@dataclass
class WorkerRecord:
    """Bookkeeping for one cloud instance bound as a CI worker."""

    name: str
    fleet_id: str
    template_description: str
    zone: str
    num_executors: int = DEFAULT_NUM_EXECUTORS
    preemptible: bool = False
    one_shot: bool = False
    create_snapshot: bool = False
    retention_time_minutes: int = DEFAULT_RETENTION_TIME_MINUTES
    created_at: float = field(default_factory=time.time)
    state: WorkerState = WorkerState.REQUESTED
    insert_operation: Optional[Dict] = None
    termination_reason: Optional[TerminationReason] = None
    preempted: bool = False
    accepting_tasks: bool = True
    running_tasks: int = 0
    failed_builds: int = 0
    completed_builds: int = 0
    idle_since: Optional[float] = None
    channel: Any = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def advance(self, new_state: WorkerState) -> bool:
        """Move to ``new_state`` if it is ahead of the current one."""
        with self._lock:
            if new_state <= self.state:
                return False
            self.state = new_state
            if new_state == WorkerState.ONLINE and self.idle_since is None:
                self.idle_since = time.time()
            return True

    def begin_termination(self, reason: TerminationReason) -> bool:
        """Enter TERMINATING once; returns False if already terminating."""
        with self._lock:
            if self.state >= WorkerState.TERMINATING:
                return False
            self.state = WorkerState.TERMINATING
            self.termination_reason = reason
            self.accepting_tasks = False
            return True

    def stop_accepting(self) -> None:
        with self._lock:
            self.accepting_tasks = False

    def mark_preempted(self) -> None:
        with self._lock:
            self.preempted = True

    def task_started(self) -> None:
        with self._lock:
            self.running_tasks += 1
            self.idle_since = None

    def task_finished(self, failed: bool, now: Optional[float] = None) -> None:
        with self._lock:
            self.running_tasks = max(0, self.running_tasks - 1)
            self.completed_builds += 1
            if failed:
                self.failed_builds += 1
            if self.running_tasks == 0:
                self.idle_since = now if now is not None else time.time()

    def is_idle(self) -> bool:
        with self._lock:
            return self.running_tasks == 0

    def idle_seconds(self, now: Optional[float] = None) -> float:
        with self._lock:
            if self.running_tasks or self.idle_since is None:
                return 0.0
            return (now if now is not None else time.time()) - self.idle_since

    @property
    def is_terminal(self) -> bool:
        return self.state >= WorkerState.TERMINATING


@dataclass
class ProvisioningRequest:
    """A job label plus the excess workload to cover this round."""

    label: Optional[str]
    excess_workload: int


@dataclass
class PendingWorker:
    """A worker whose launch is in flight.

    ``future`` resolves to the worker name once it is Online, or raises the
    launch error.
    """

    name: str
    future: Any
    num_executors: int
    template_description: str


@dataclass
class LoadSnapshot:
    """Scheduler counters for one label, taken at the start of a round."""

    queue_length: int
    available_executors: int = 0
    connecting_executors: int = 0
    planned_capacity: int = 0
    additional_planned_capacity: int = 0
    pending_launches: List[PendingWorker] = field(default_factory=list)

    @property
    def available_capacity(self) -> int:
        return (
            self.available_executors
            + self.connecting_executors
            + self.planned_capacity
            + self.additional_planned_capacity
        )

    def record_pending_launches(self, workers: List[PendingWorker]) -> None:
        self.pending_launches.extend(workers)
