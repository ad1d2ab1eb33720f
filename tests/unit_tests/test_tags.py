"""
Unit tests for tag reconciliation.
"""

import unittest
from unittest.mock import MagicMock

from tags import (
    NAMESPACE_REQUIRED_TAGS,
    ROOT_REQUIRED_TAGS,
    TagReconciler,
    missing_tags,
    required_tags,
)

COMPLETE = {
    "Environment": "qa2",
    "Owner": "platform",
    "Service": "core",
    "Type": "Primary",
    "ClientName": "test",
}


class TestRequiredTags(unittest.TestCase):
    """Test the namespace-dependent required set."""

    def test_root_namespace(self):
        self.assertEqual(required_tags("manufacturo"), ROOT_REQUIRED_TAGS)
        self.assertNotIn("ClientName", required_tags("manufacturo"))

    def test_named_namespace_requires_client_name(self):
        self.assertEqual(required_tags("test"), NAMESPACE_REQUIRED_TAGS)
        self.assertIn("ClientName", required_tags("test"))

    def test_missing_tags(self):
        self.assertEqual(missing_tags({"Environment": "qa2", "Owner": ""}, "manufacturo"), ["Owner", "Service", "Type"])
        self.assertEqual(missing_tags(COMPLETE, "test"), [])


class TestTagReconciler(unittest.TestCase):
    """Test capture, selection and reconciliation."""

    def setUp(self):
        self.api = MagicMock()
        self.reconciler = TagReconciler(self.api)

    def test_select_drops_non_allow_listed(self):
        saved = dict(COMPLETE, CostCenter="42")
        chosen, dropped = self.reconciler.select(saved, "test")

        self.assertEqual(chosen, COMPLETE)
        self.assertEqual(dropped, ["CostCenter"])

    def test_select_fills_from_fallback(self):
        """Test fallback values only fill keys the saved set lacks."""
        saved = {"Environment": "qa2", "Owner": "platform"}
        fallback = {"Environment": "other", "Service": "core", "Type": "Primary", "ClientName": "test"}

        chosen, _ = self.reconciler.select(saved, "test", fallback)

        self.assertEqual(chosen["Environment"], "qa2")
        self.assertEqual(chosen["Service"], "core")
        self.assertEqual(chosen["ClientName"], "test")

    def test_extra_allowed_tags_kept(self):
        reconciler = TagReconciler(self.api, extra_allowed=["CostCenter"])
        chosen, dropped = reconciler.select({"CostCenter": "42"}, "manufacturo")

        self.assertEqual(chosen, {"CostCenter": "42"})
        self.assertEqual(dropped, [])

    def test_reconcile_complete_first_time(self):
        self.api.get_tags.return_value = COMPLETE

        outcome = self.reconciler.reconcile("/db/a", COMPLETE, "test")

        self.assertTrue(outcome.complete)
        self.assertFalse(outcome.reapplied)
        self.api.merge_tags.assert_called_once_with("/db/a", COMPLETE)

    def test_reconcile_reapplies_once(self):
        """Test one re-apply-and-reverify pass fixes a lagging write."""
        self.api.get_tags.side_effect = [{"Environment": "qa2"}, COMPLETE]

        outcome = self.reconciler.reconcile("/db/a", COMPLETE, "test")

        self.assertTrue(outcome.complete)
        self.assertTrue(outcome.reapplied)
        self.assertEqual(self.api.merge_tags.call_count, 2)

    def test_reconcile_reports_incomplete(self):
        """Test tags still missing after the second pass are reported, not raised."""
        self.api.get_tags.return_value = {"Environment": "qa2"}

        outcome = self.reconciler.reconcile("/db/a", {"Environment": "qa2"}, "manufacturo")

        self.assertFalse(outcome.complete)
        self.assertEqual(outcome.missing, ["Owner", "Service", "Type"])
        self.assertEqual(self.api.merge_tags.call_count, 2)
        self.assertEqual(self.api.get_tags.call_count, 2)


if __name__ == "__main__":
    unittest.main()
