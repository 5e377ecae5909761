"""
Unit tests for orphan reconciliation.
"""

import unittest
from unittest.mock import MagicMock

from models import WorkerRecord
from reconciler import OrphanReconciler, PeriodicTask
from registry import FleetRegistry

ZONE = "https://www.googleapis.com/compute/v1/projects/p/zones/us-central1-a"


def instance(name, status="RUNNING"):
    return {"name": name, "status": status, "zone": ZONE}


def make_controller(fleet_id, instances):
    controller = MagicMock()
    controller.name = f"gce-{fleet_id}"
    controller.fleet_id = fleet_id
    controller.fleet_labels.return_value = {"fleet_controller_id": fleet_id}
    controller.client.list_instances_by_label.return_value = instances
    return controller


class TestOrphanReconciler(unittest.TestCase):
    """Test orphan sweeps."""

    def setUp(self):
        self.registry = FleetRegistry()
        self.reconciler = OrphanReconciler(self.registry)

    def publish(self, name, fleet_id="f1"):
        self.registry.publish(
            WorkerRecord(name=name, fleet_id=fleet_id, template_description="T", zone="z")
        )

    def test_running_orphan_deleted_stopping_kept(self):
        """Test a RUNNING orphan is deleted and a STOPPING one is left alone."""
        controller = make_controller(
            "f1", [instance("ci-run001"), instance("ci-stop01", "STOPPING"),
                   instance("ci-term01", "TERMINATED")]
        )
        self.registry.add_controller(controller)

        result = self.reconciler.run()

        controller.client.terminate_instance_async.assert_called_once_with(
            "us-central1-a", "ci-run001"
        )
        self.assertEqual(result.checked, 3)
        self.assertEqual(result.orphans, ["ci-run001"])
        self.assertEqual(result.deleted, ["ci-run001"])

    def test_instance_with_local_record_never_deleted(self):
        controller = make_controller("f1", [instance("ci-known1"), instance("ci-pend01", "STAGING")])
        self.registry.add_controller(controller)
        self.publish("ci-known1")
        self.registry.reserve("ci-pend01", "f1")

        result = self.reconciler.run()

        controller.client.terminate_instance_async.assert_not_called()
        self.assertEqual(result.orphans, [])

    def test_insert_racing_with_sweep(self):
        """Test an instance inserted while listing is seen as local."""
        controller = make_controller("f1", [])

        def list_during_insert(labels):
            # the insert reserves its name, then the instance shows up remotely
            self.registry.reserve("ci-race01", "f1")
            return [instance("ci-race01", "PROVISIONING")]

        controller.client.list_instances_by_label.side_effect = list_during_insert
        self.registry.add_controller(controller)

        result = self.reconciler.run()

        controller.client.terminate_instance_async.assert_not_called()
        self.assertEqual(result.checked, 1)

    def test_insert_then_publish_racing_with_sweep(self):
        """Test a record published between listing and the local read is kept."""
        controller = make_controller("f1", [])

        def list_then_publish(labels):
            self.registry.reserve("ci-race02", "f1")
            self.publish("ci-race02")
            return [instance("ci-race02")]

        controller.client.list_instances_by_label.side_effect = list_then_publish
        self.registry.add_controller(controller)

        self.reconciler.run()

        controller.client.terminate_instance_async.assert_not_called()

    def test_record_of_other_fleet_does_not_protect(self):
        controller = make_controller("f1", [instance("ci-other1")])
        self.registry.add_controller(controller)
        self.publish("ci-other1", fleet_id="f2")

        result = self.reconciler.run()

        self.assertEqual(result.deleted, ["ci-other1"])

    def test_known_names_protect_instances(self):
        controller = make_controller("f1", [instance("ci-ext001")])
        self.registry.add_controller(controller)

        result = self.reconciler.run(known_names=["ci-ext001"])

        self.assertEqual(result.orphans, [])

    def test_dry_run_only_reports(self):
        controller = make_controller("f1", [instance("ci-run001")])
        self.registry.add_controller(controller)

        result = OrphanReconciler(self.registry, dry_run=True).run()

        controller.client.terminate_instance_async.assert_not_called()
        self.assertEqual(result.orphans, ["ci-run001"])
        self.assertEqual(result.deleted, [])

    def test_failures_isolated(self):
        """Test a failing controller or delete does not stop the sweep."""
        broken = make_controller("f1", [])
        broken.client.list_instances_by_label.side_effect = RuntimeError("api down")
        flaky = make_controller("f2", [instance("ci-a"), instance("ci-b")])
        flaky.client.terminate_instance_async.side_effect = [RuntimeError("boom"), {}]
        self.registry.add_controller(broken)
        self.registry.add_controller(flaky)

        result = self.reconciler.run()

        self.assertEqual(result.failed, ["ci-a"])
        self.assertEqual(result.deleted, ["ci-b"])

    def test_records_untouched(self):
        controller = make_controller("f1", [instance("ci-run001")])
        self.registry.add_controller(controller)
        self.publish("ci-local1")

        self.reconciler.run()

        self.assertIsNotNone(self.registry.get("ci-local1"))


class TestPeriodicTask(unittest.TestCase):
    """Test scheduling of periodic work."""

    def test_maybe_run_honours_period(self):
        task = PeriodicTask("t", recurrence_period=3600, clock=lambda: 0.0)
        task.run = MagicMock(return_value="ran")

        self.assertEqual(task.maybe_run(now=0.0), "ran")
        self.assertIsNone(task.maybe_run(now=1800.0))
        self.assertEqual(task.maybe_run(now=3600.0), "ran")
        self.assertEqual(task.run.call_count, 2)

    def test_default_period_is_hourly(self):
        self.assertEqual(OrphanReconciler(FleetRegistry()).recurrence_period, 3600)


if __name__ == "__main__":
    unittest.main()
