"""
Unit tests for destination name derivation.
"""

import unittest

from models import NameDerivationRequest
from naming import (
    SEGMENT,
    SUBSTRING,
    derive_name,
    environment_segment,
    expected_pattern,
    infer_service,
    overlapping_tokens,
)


def make_request(**overrides):
    values = dict(
        source_name="db-acme-prod-core-qa2-eastus",
        product="acme",
        service="core",
        source_namespace="manufacturo",
        destination_namespace="test",
        source_environment="qa2",
        destination_environment="qa2",
        source_region="eastus",
        destination_region="eastus",
        source_tier="prod",
        destination_tier="prod",
    )
    values.update(overrides)
    return NameDerivationRequest(**values)


class TestDeriveName(unittest.TestCase):
    """Test derive_name in both modes."""

    def test_root_to_named_namespace(self):
        """Test the root namespace database maps into the named namespace."""
        req = make_request()
        self.assertEqual(derive_name(req), "db-acme-prod-core-test-qa2-eastus")
        self.assertEqual(derive_name(req, SEGMENT), "db-acme-prod-core-test-qa2-eastus")

    def test_named_to_named_namespace(self):
        req = make_request(
            source_name="db-acme-prod-core-test-qa2-eastus",
            source_namespace="test",
            destination_namespace="demo",
        )
        self.assertEqual(derive_name(req), "db-acme-prod-core-demo-qa2-eastus")

    def test_no_match_returns_none(self):
        """Test names outside the source pattern are skipped."""
        req = make_request(source_name="db-other-prod-core-qa2-eastus")
        self.assertIsNone(derive_name(req))
        self.assertIsNone(derive_name(req, SEGMENT))

    def test_named_namespace_database_not_matched_as_root(self):
        """Test a database already in a named namespace does not match a root source."""
        req = make_request(source_name="db-acme-prod-core-demo-qa2-eastus")
        self.assertIsNone(derive_name(req))

    def test_region_and_tier_substitution(self):
        req = make_request(destination_region="westus", destination_tier="dev")
        self.assertEqual(derive_name(req), "db-acme-dev-core-test-qa2-westus")
        self.assertEqual(derive_name(req, SEGMENT), "db-acme-dev-core-test-qa2-westus")

    def test_substring_mode_substitutes_every_occurrence(self):
        """Test substring mode rewrites tokens outside the matched window too."""
        req = make_request(
            source_name="db-acme-prod-core-qa2-eastus-qa2",
        )
        self.assertEqual(derive_name(req, SUBSTRING), "db-acme-prod-core-test-qa2-eastus-test-qa2")
        self.assertEqual(derive_name(req, SEGMENT), "db-acme-prod-core-test-qa2-eastus-qa2")

    def test_unknown_mode_rejected(self):
        with self.assertRaises(ValueError):
            derive_name(make_request(), "regex")

    def test_expected_pattern(self):
        self.assertEqual(expected_pattern(make_request()), "acme-prod-core-qa2-eastus")
        self.assertEqual(
            expected_pattern(make_request(source_namespace="test")),
            "acme-prod-core-test-qa2-eastus",
        )

    def test_environment_segment(self):
        self.assertEqual(environment_segment("manufacturo", "qa2"), "qa2")
        self.assertEqual(environment_segment("", "qa2"), "qa2")
        self.assertEqual(environment_segment("test", "qa2"), "test-qa2")


class TestHelpers(unittest.TestCase):
    """Test overlap detection and service inference."""

    def test_overlapping_tokens(self):
        """Test substring collisions between token values are reported."""
        req = make_request(source_environment="east", source_region="eastus")
        self.assertEqual(overlapping_tokens(req), [("environment", "region")])
        self.assertEqual(overlapping_tokens(make_request()), [])

    def test_infer_service(self):
        self.assertEqual(
            infer_service("db-acme-prod-core-qa2-eastus", "acme", "prod", "manufacturo", "qa2", "eastus"),
            "core",
        )
        self.assertEqual(
            infer_service("db-acme-prod-api-test-qa2-eastus", "acme", "prod", "test", "qa2", "eastus"),
            "api",
        )

    def test_infer_service_ignores_other_namespaces(self):
        """Test a named-namespace database yields no service for a root source."""
        self.assertIsNone(
            infer_service("db-acme-prod-core-test-qa2-eastus", "acme", "prod", "manufacturo", "qa2", "eastus")
        )


if __name__ == "__main__":
    unittest.main()
