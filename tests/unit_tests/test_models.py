"""
Unit tests for data models.
"""

import random
import re
import unittest

from models import (
    DEFAULT_RETENTION_TIME_MINUTES,
    LINUX_STARTUP_SENTINEL,
    AcceleratorConfig,
    LoadSnapshot,
    NetworkConfig,
    NodeMode,
    PendingWorker,
    Task,
    TerminationReason,
    WindowsConfig,
    WorkerRecord,
    WorkerState,
    WorkerTemplate,
    name_from_self_link,
    parse_labels,
    strip_self_link_prefix,
)


def make_template(**overrides):
    values = dict(name_prefix="ci-linux", description="Linux builders", zone="us-central1-a")
    values.update(overrides)
    return WorkerTemplate(**values)


class TestHelpers(unittest.TestCase):
    """Test parsing helpers."""

    def test_name_from_self_link(self):
        self.assertEqual(
            name_from_self_link("https://www.googleapis.com/compute/v1/projects/p/zones/us-east1-b"),
            "us-east1-b",
        )
        self.assertEqual(name_from_self_link("us-east1-b"), "us-east1-b")
        self.assertEqual(name_from_self_link(""), "")

    def test_strip_self_link_prefix(self):
        self.assertEqual(
            strip_self_link_prefix(
                "https://www.googleapis.com/compute/v1/projects/p/global/images/img"
            ),
            "projects/p/global/images/img",
        )
        self.assertEqual(strip_self_link_prefix("projects/p/x"), "projects/p/x")

    def test_parse_labels(self):
        self.assertEqual(parse_labels("  linux  docker "), frozenset({"linux", "docker"}))
        self.assertEqual(parse_labels(""), frozenset())


class TestWorkerTemplate(unittest.TestCase):
    """Test WorkerTemplate validation and instance bodies."""

    def test_defaults(self):
        """Test default values."""
        template = make_template()
        self.assertEqual(template.num_executors, 1)
        self.assertEqual(template.launch_timeout_seconds, 300)
        self.assertEqual(template.retention_time_minutes, DEFAULT_RETENTION_TIME_MINUTES)
        self.assertEqual(DEFAULT_RETENTION_TIME_MINUTES, 6)
        self.assertEqual(template.mode, NodeMode.NORMAL)

    def test_validate_rejects_bad_prefix(self):
        """Test invalid prefixes are rejected."""
        for prefix in ("", "Upper", "1starts-with-digit", "a" * 51):
            with self.assertRaises(ValueError):
                make_template(name_prefix=prefix).validate()

    def test_validate_rejects_bad_tags(self):
        """Test network tags must be valid names."""
        with self.assertRaises(ValueError):
            make_template(network_tags="ok Not_Ok").validate()
        make_template(network_tags="ok also-ok").validate()

    def test_validate_windows_needs_credentials(self):
        """Test a Windows template needs a password or a key."""
        with self.assertRaises(ValueError):
            make_template(windows=WindowsConfig(username="admin")).validate()
        make_template(windows=WindowsConfig(username="admin", password="pw")).validate()

    def test_unique_name(self):
        """Test names are prefix, dash and six [a-z0-9] characters."""
        template = make_template()
        rng = random.Random(7)
        names = {template.unique_name(rng) for _ in range(50)}
        self.assertEqual(len(names), 50)
        for name in names:
            self.assertRegex(name, r"^ci-linux-[a-z0-9]{6}$")

    def test_unique_name_prefix_with_trailing_dash(self):
        """Test a prefix ending with a dash is not doubled."""
        name = make_template(name_prefix="ci-").unique_name(random.Random(1))
        self.assertTrue(re.match(r"^ci-[a-z0-9]{6}$", name))

    def test_instance_body(self):
        """Test the instance resource for a typical template."""
        template = make_template(
            machine_type="n2-standard-4",
            preemptible=True,
            boot_disk_source_image="projects/debian-cloud/global/images/family/debian-12",
            boot_disk_type="pd-ssd",
            boot_disk_size_gb=50,
            network_tags="ci builders",
            service_account_email="ci@p.iam.gserviceaccount.com",
            accelerator=AcceleratorConfig(gpu_type="nvidia-tesla-t4", gpu_count=1),
            cloud_labels={"team": "infra"},
        )

        body = template.instance_body("ci-linux-abc123", {"fleet_controller_id": "f1"})

        self.assertEqual(body["name"], "ci-linux-abc123")
        self.assertEqual(body["machineType"], "zones/us-central1-a/machineTypes/n2-standard-4")
        self.assertEqual(body["labels"], {"team": "infra", "fleet_controller_id": "f1"})
        self.assertEqual(
            body["scheduling"],
            {"preemptible": True, "automaticRestart": False, "onHostMaintenance": "TERMINATE"},
        )
        disk = body["disks"][0]
        self.assertTrue(disk["boot"])
        self.assertEqual(disk["initializeParams"]["diskSizeGb"], "50")
        self.assertEqual(
            disk["initializeParams"]["diskType"], "zones/us-central1-a/diskTypes/pd-ssd"
        )
        self.assertEqual(body["tags"], {"items": ["ci", "builders"]})
        self.assertEqual(body["guestAccelerators"][0]["acceleratorCount"], 1)
        self.assertEqual(
            body["networkInterfaces"][0]["accessConfigs"],
            [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}],
        )
        self.assertEqual(body["serviceAccounts"][0]["email"], "ci@p.iam.gserviceaccount.com")

    def test_instance_body_no_external_address(self):
        """Test the NAT access config is omitted for internal-only workers."""
        body = make_template(external_address=False).instance_body("ci-linux-a")
        self.assertEqual(body["networkInterfaces"][0]["accessConfigs"], [])

    def test_instance_body_shared_vpc_subnetwork(self):
        """Test a subnetwork in a host project is fully qualified."""
        template = make_template(
            network=NetworkConfig(subnetwork="ci-subnet", project_id="host", region="us-central1")
        )
        nic = template.instance_body("ci-linux-a")["networkInterfaces"][0]
        self.assertEqual(
            nic["subnetwork"], "projects/host/regions/us-central1/subnetworks/ci-subnet"
        )

    def test_instance_body_from_source_template(self):
        """Test only identity fields are sent when a GCE template is used."""
        body = make_template(source_instance_template="global/instanceTemplates/t").instance_body(
            "ci-linux-a"
        )
        self.assertEqual(set(body), {"name", "description", "zone", "labels"})

    def test_startup_script_wait_appends_sentinel(self):
        """Test the startup script touches the sentinel when waiting for it."""
        body = make_template(
            startup_script="apt-get install -y openjdk-17-jre", wait_for_startup_script=True
        ).instance_body("ci-linux-a")
        item = body["metadata"]["items"][0]
        self.assertEqual(item["key"], "startup-script")
        self.assertTrue(item["value"].startswith("apt-get install"))
        self.assertIn(f"touch {LINUX_STARTUP_SENTINEL}", item["value"])

    def test_windows_startup_script_key(self):
        """Test Windows scripts use the PowerShell metadata key."""
        body = make_template(
            startup_script="Write-Host hi",
            windows=WindowsConfig(username="admin", password="pw"),
        ).instance_body("ci-win-a")
        self.assertEqual(body["metadata"]["items"][0]["key"], "windows-startup-script-ps1")

    def test_from_dict_and_to_dict(self):
        """Test the form representation, including nested configs."""
        template = WorkerTemplate.from_dict(
            {
                "name_prefix": "ci-gpu",
                "description": "GPU builders",
                "zone": "us-central1-a",
                "mode": "exclusive",
                "labels": "gpu cuda",
                "num_executors": "2",
                "retention_time_minutes": "",
                "accelerator": {"gpu_type": "nvidia-l4", "gpu_count": 1},
                "windows": {"username": "admin", "password": "secret"},
            }
        )

        self.assertEqual(template.mode, NodeMode.EXCLUSIVE)
        self.assertEqual(template.num_executors, 2)
        self.assertEqual(template.retention_time_minutes, DEFAULT_RETENTION_TIME_MINUTES)
        self.assertTrue(template.is_windows)

        data = template.to_dict()
        self.assertEqual(data["mode"], "EXCLUSIVE")
        self.assertEqual(data["windows"], {"username": "admin"})
        self.assertNotIn("ssh_private_key", data)

    def test_from_dict_rejects_unknown_fields(self):
        with self.assertRaises(ValueError):
            WorkerTemplate.from_dict(
                {"name_prefix": "a", "description": "d", "zone": "z", "colour": "red"}
            )


class TestWorkerRecord(unittest.TestCase):
    """Test WorkerRecord state transitions."""

    def setUp(self):
        self.record = WorkerRecord(
            name="ci-linux-abc123", fleet_id="f1", template_description="Linux", zone="z"
        )

    def test_states_only_move_forward(self):
        """Test advance() refuses to go backwards."""
        self.assertTrue(self.record.advance(WorkerState.INSERTING))
        self.assertTrue(self.record.advance(WorkerState.ONLINE))
        self.assertFalse(self.record.advance(WorkerState.LAUNCHING))
        self.assertFalse(self.record.advance(WorkerState.ONLINE))
        self.assertEqual(self.record.state, WorkerState.ONLINE)
        self.assertIsNotNone(self.record.idle_since)

    def test_begin_termination_once(self):
        """Test termination can only begin once."""
        self.assertTrue(self.record.begin_termination(TerminationReason.IDLE_TIMEOUT))
        self.assertFalse(self.record.begin_termination(TerminationReason.ADMINISTRATIVE))
        self.assertEqual(self.record.termination_reason, TerminationReason.IDLE_TIMEOUT)
        self.assertFalse(self.record.accepting_tasks)
        self.assertTrue(self.record.is_terminal)

    def test_stop_accepting(self):
        self.record.advance(WorkerState.ONLINE)
        self.record.stop_accepting()
        self.assertFalse(self.record.accepting_tasks)
        self.assertEqual(self.record.state, WorkerState.ONLINE)

    def test_task_accounting(self):
        """Test running counts, failures and idle time."""
        self.record.advance(WorkerState.ONLINE)
        self.record.task_started()
        self.assertFalse(self.record.is_idle())
        self.assertEqual(self.record.idle_seconds(now=10**10), 0.0)

        self.record.task_finished(failed=True, now=1000.0)

        self.assertTrue(self.record.is_idle())
        self.assertEqual(self.record.failed_builds, 1)
        self.assertEqual(self.record.completed_builds, 1)
        self.assertEqual(self.record.idle_seconds(now=1090.0), 90.0)


class TestTaskAndSnapshot(unittest.TestCase):
    """Test Task and LoadSnapshot."""

    def test_task_root(self):
        root = Task("build-42")
        child = Task("build-42/stage-1", parent=root)
        leaf = Task("build-42/stage-1/step", parent=child)
        self.assertIs(leaf.root(), root)
        self.assertIs(root.root(), root)

    def test_available_capacity(self):
        snapshot = LoadSnapshot(
            queue_length=10,
            available_executors=1,
            connecting_executors=2,
            planned_capacity=3,
            additional_planned_capacity=1,
        )
        self.assertEqual(snapshot.available_capacity, 7)

        snapshot.record_pending_launches([PendingWorker("w", None, 2, "T1")])
        self.assertEqual(len(snapshot.pending_launches), 1)


if __name__ == "__main__":
    unittest.main()
