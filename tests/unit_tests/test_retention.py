"""
Unit tests for retention policies.
"""

import unittest
from unittest.mock import MagicMock

from models import Task, TerminationReason, WorkerRecord, WorkerState
from retention import (
    PREEMPTED_RESUBMIT_CAUSE,
    IdleTimeoutRetention,
    OneShotRetention,
    WorkerRetention,
    policy_for,
)


def online_record(**overrides):
    values = dict(
        name="ci-linux-abc123",
        fleet_id="f1",
        template_description="Linux",
        zone="z",
        retention_time_minutes=6,
    )
    values.update(overrides)
    record = WorkerRecord(**values)
    record.advance(WorkerState.ONLINE)
    record.idle_since = 0.0
    return record


class TestIdleTimeoutRetention(unittest.TestCase):
    """Test the idle timeout policy."""

    def test_terminates_after_timeout(self):
        policy = IdleTimeoutRetention(6)
        record = online_record()
        self.assertIsNone(policy.should_terminate(record, now=6 * 60))
        self.assertEqual(
            policy.should_terminate(record, now=6 * 60 + 1), TerminationReason.IDLE_TIMEOUT
        )

    def test_never_fires_while_task_runs(self):
        """Test a running task blocks the idle timeout however long it runs."""
        policy = IdleTimeoutRetention(6)
        record = online_record()
        record.task_started()
        self.assertIsNone(policy.should_terminate(record, now=10**9))

    def test_ignores_workers_not_online(self):
        policy = IdleTimeoutRetention(1)
        record = WorkerRecord(name="x", fleet_id="f", template_description="T", zone="z")
        record.idle_since = 0.0
        self.assertIsNone(policy.should_terminate(record, now=10**9))

    def test_policy_for(self):
        self.assertIsInstance(policy_for(True, 5), OneShotRetention)
        self.assertNotIsInstance(policy_for(False, 5), OneShotRetention)


class TestWorkerRetention(unittest.TestCase):
    """Test retention bound to a worker."""

    def setUp(self):
        self.terminate = MagicMock()
        self.job_queue = MagicMock()

    def bind(self, record, one_shot=False):
        policy = policy_for(one_shot, record.retention_time_minutes)
        return WorkerRetention(policy, record, self.job_queue, self.terminate)

    def test_one_shot_terminates_after_exactly_one_task(self):
        """Test a one-shot worker stops accepting work and terminates after one task."""
        record = online_record(one_shot=True)
        retention = self.bind(record, one_shot=True)
        task = Task("build-1")

        retention.task_accepted(task)
        self.assertFalse(record.accepting_tasks)
        self.terminate.assert_not_called()
        self.assertIsNone(retention.check(now=10**9))

        retention.task_completed(task, duration=12.0)
        self.terminate.assert_called_once_with(TerminationReason.ONE_SHOT_COMPLETE)

    def test_one_shot_counts_failed_builds(self):
        record = online_record(one_shot=True)
        retention = self.bind(record, one_shot=True)
        retention.task_accepted(Task("build-1"))
        retention.task_completed(Task("build-1"), problems=RuntimeError("tests failed"))
        self.assertEqual(record.failed_builds, 1)

    def test_idle_worker_keeps_running_between_tasks(self):
        record = online_record()
        retention = self.bind(record)
        retention.task_accepted(Task("build-1"))
        retention.task_completed(Task("build-1"))

        self.terminate.assert_not_called()
        self.assertTrue(record.accepting_tasks)

    def test_check_terminates_idle_worker(self):
        record = online_record()
        retention = self.bind(record)

        self.assertEqual(retention.check(now=7 * 60), TerminationReason.IDLE_TIMEOUT)
        self.terminate.assert_called_once_with(TerminationReason.IDLE_TIMEOUT)

    def test_check_skips_terminating_worker(self):
        record = online_record()
        record.begin_termination(TerminationReason.ADMINISTRATIVE)
        self.assertIsNone(self.bind(record).check(now=10**9))
        self.terminate.assert_not_called()

    def test_preempted_task_resubmits_root_once(self):
        """Test the root task is re-queued once with the preemption cause."""
        record = online_record(preemptible=True)
        record.mark_preempted()
        retention = self.bind(record)
        root = Task("build-7")
        step = Task("build-7/step", parent=root)

        retention.task_accepted(step)
        retention.task_completed(step)
        retention.task_completed(step)

        self.job_queue.schedule.assert_called_once_with(root, PREEMPTED_RESUBMIT_CAUSE)
        self.assertEqual(PREEMPTED_RESUBMIT_CAUSE, "Rebuilding preempted job")
        self.terminate.assert_called_with(TerminationReason.PREEMPTED)

    def test_not_preempted_no_resubmit(self):
        record = online_record(preemptible=True)
        retention = self.bind(record)
        retention.task_completed(Task("build-1"))
        self.job_queue.schedule.assert_not_called()

    def test_idle_preempted_worker_terminated_on_check(self):
        record = online_record(preemptible=True)
        record.mark_preempted()
        self.assertEqual(self.bind(record).check(now=1.0), TerminationReason.PREEMPTED)


if __name__ == "__main__":
    unittest.main()
