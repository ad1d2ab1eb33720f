"""
Unit tests for capacity admission control.
"""

import unittest
from unittest.mock import MagicMock

from capacity import GB, CapacityAdmissionController, build_report
from errors import CapacityError
from models import CopyTask, ResourceDescriptor, WorkflowRun


class TestBuildReport(unittest.TestCase):
    """Test capacity arithmetic."""

    def test_arithmetic_identity(self):
        """Test projected values follow from the inputs."""
        report = build_report(100 * GB, 40 * GB, 30 * GB, 10 * GB)

        self.assertEqual(report.projected_usage_bytes, 60 * GB)
        self.assertEqual(report.projected_free_bytes, 40 * GB)
        self.assertAlmostEqual(report.safety_threshold_bytes, 10 * GB, delta=1)
        self.assertEqual(
            report.projected_usage_bytes,
            report.current_usage_bytes
            + report.source_batch_bytes
            - report.destination_batch_bytes_to_free,
        )
        self.assertTrue(report.passed)
        self.assertEqual(report.reason, "")

    def test_full_pool_denied(self):
        """Test 100 GB pool, 85 used, 20 incoming, 5 reclaimed is denied."""
        report = build_report(100 * GB, 85 * GB, 20 * GB, 5 * GB)

        self.assertEqual(report.projected_free_bytes, 0)
        self.assertFalse(report.passed)
        self.assertIn("safety margin", report.reason)

    def test_overcommitted_pool_denied(self):
        report = build_report(100 * GB, 95 * GB, 20 * GB, 0)

        self.assertLess(report.projected_free_bytes, 0)
        self.assertFalse(report.passed)
        self.assertIn("exceeds pool maximum", report.reason)

    def test_exact_margin_passes(self):
        report = build_report(100 * GB, 80 * GB, 10 * GB, 0)

        self.assertEqual(report.projected_free_bytes, 10 * GB)
        self.assertTrue(report.passed)


class TestCapacityAdmissionController(unittest.TestCase):
    """Test measurement and admission decisions."""

    def setUp(self):
        self.api = MagicMock()
        self.controller = CapacityAdmissionController(self.api)
        self.pool = {"id": "/pool/1", "name": "pool-1", "properties": {"maxSizeBytes": 100 * GB}}

    def test_unmeasurable_counts_as_zero(self):
        self.api.get_database_size_bytes.return_value = None
        self.assertEqual(self.controller.measure("/db/new"), 0)
        self.assertEqual(self.controller.measure(""), 0)

    def test_evaluate_sums_pool_members_and_batch(self):
        """Test usage, incoming and reclaimed sizes feed the report."""
        sizes = {
            "/db/member-a": 50 * GB,
            "/db/member-b": 35 * GB,
            "/db/src-1": 20 * GB,
        }
        self.api.get_database_size_bytes.side_effect = lambda rid: sizes.get(rid)
        destination = [
            {"id": "/db/member-a", "name": "db-a", "properties": {"elasticPoolId": "/POOL/1"}},
            {"id": "/db/member-b", "name": "db-b", "properties": {"elasticPoolId": "/pool/1"}},
            {"id": "/db/other", "name": "db-c", "properties": {}},
        ]
        tasks = [
            CopyTask(
                source=ResourceDescriptor(name="src-1", resource_id="/db/src-1"),
                destination_name="db-b",
            )
        ]

        report = self.controller.evaluate(self.pool, tasks, destination)

        self.assertEqual(report.current_usage_bytes, 85 * GB)
        self.assertEqual(report.source_batch_bytes, 20 * GB)
        self.assertEqual(report.destination_batch_bytes_to_free, 35 * GB)
        self.assertEqual(report.projected_free_bytes, 30 * GB)
        self.assertTrue(report.passed)
        self.assertEqual(tasks[0].source.size_bytes, 20 * GB)

    def test_dry_run_records_failure_and_continues(self):
        run = WorkflowRun(dry_run=True)
        report = build_report(100 * GB, 85 * GB, 20 * GB, 5 * GB)

        self.assertFalse(self.controller.admit(report, run, label="pool-1"))
        self.assertEqual(len(run.failures), 1)
        self.assertIn("pool-1", run.failures[0])
        self.assertEqual(run.exit_code, 1)

    def test_execute_raises(self):
        run = WorkflowRun(dry_run=False)
        report = build_report(100 * GB, 85 * GB, 20 * GB, 5 * GB)

        with self.assertRaises(CapacityError) as ctx:
            self.controller.admit(report, run)

        self.assertIs(ctx.exception.report, report)
        self.assertEqual(run.failures, [])

    def test_passing_report_admitted(self):
        run = WorkflowRun(dry_run=False)
        self.assertTrue(self.controller.admit(build_report(100 * GB, 0, 0, 0), run))


if __name__ == "__main__":
    unittest.main()
