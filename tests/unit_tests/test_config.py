"""
Unit tests for configuration.
"""

import unittest
from argparse import Namespace
from datetime import datetime, timezone

from config import (
    DEFAULT_CONTAINERS,
    ROOT_NAMESPACE,
    RefreshConfig,
)
from errors import ConfigurationError


def make_args(**overrides):
    values = dict(
        source="qa2",
        destination=None,
        source_namespace=None,
        destination_namespace=None,
        execute=False,
        max_wait_minutes=60,
        restore_datetime=None,
        timezone=None,
        instance_alias=None,
        instance_alias_to_remove=None,
        domain=None,
        cloud=None,
        max_parallel=5,
        poll_interval=30,
        fragments_dir=None,
        principal_id=None,
        derivation_mode="substring",
        log_file="environment-refresh.log",
        verbose=False,
        containers=None,
        services=None,
    )
    values.update(overrides)
    return Namespace(**values)


class TestRefreshConfig(unittest.TestCase):
    """Test RefreshConfig data model."""

    def test_config_defaults(self):
        """Test default configuration values."""
        config = RefreshConfig(source="qa2", destination="qa2")
        self.assertEqual(config.source_namespace, ROOT_NAMESPACE)
        self.assertEqual(config.destination_namespace, "test")
        self.assertTrue(config.dry_run)
        self.assertEqual(config.max_parallel, 5)
        self.assertEqual(config.max_wait_minutes, 60)
        self.assertEqual(config.poll_interval, 30)
        self.assertEqual(config.cloud, "AzureCloud")
        self.assertEqual(config.containers, DEFAULT_CONTAINERS)
        self.assertFalse(config.verbose)

    def test_config_from_args(self):
        """Test creating config from command-line arguments."""
        args = make_args(
            destination="qa2",
            destination_namespace="uat",
            execute=True,
            cloud="AzureUSGovernment",
            containers=["reports"],
            services=["core", "api"],
            verbose=True,
        )
        config = RefreshConfig.from_args(args, environ={})

        self.assertEqual(config.source, "qa2")
        self.assertEqual(config.destination, "qa2")
        self.assertEqual(config.destination_namespace, "uat")
        self.assertFalse(config.dry_run)
        self.assertEqual(config.cloud, "AzureUSGovernment")
        self.assertEqual(config.containers, ["reports"])
        self.assertEqual(config.services, ["core", "api"])
        self.assertTrue(config.verbose)

    def test_destination_defaults_to_source(self):
        """Test destination falls back to the source environment."""
        config = RefreshConfig.from_args(make_args(), environ={})
        self.assertEqual(config.destination, "qa2")

    def test_environment_variable_fallbacks(self):
        """Test environment variables fill in missing arguments."""
        environ = {
            "REFRESH_SOURCE": "prod",
            "REFRESH_DESTINATION_NAMESPACE": "demo",
            "AZURE_CLOUD": "AzureUSGovernment",
            "REFRESH_PRINCIPAL_ID": "principal-1",
            "REFRESH_FRAGMENTS_DIR": "/srv/sql",
        }
        config = RefreshConfig.from_args(make_args(source=None), environ=environ)

        self.assertEqual(config.source, "prod")
        self.assertEqual(config.destination, "prod")
        self.assertEqual(config.destination_namespace, "demo")
        self.assertEqual(config.cloud, "AzureUSGovernment")
        self.assertEqual(config.principal_id, "principal-1")
        self.assertEqual(config.fragments_dir, "/srv/sql")

    def test_command_line_wins_over_environment(self):
        """Test CLI values take priority over environment variables."""
        config = RefreshConfig.from_args(
            make_args(cloud="AzureCloud"), environ={"AZURE_CLOUD": "AzureUSGovernment"}
        )
        self.assertEqual(config.cloud, "AzureCloud")

    def test_validate_accepts_defaults(self):
        """Test a default configuration is valid."""
        RefreshConfig(source="qa2", destination="qa2").validate()

    def test_validate_rejects_equal_namespaces(self):
        """Test source and destination namespaces must differ."""
        config = RefreshConfig(
            source="qa2", destination="qa2", source_namespace="test", destination_namespace="test"
        )
        with self.assertRaises(ConfigurationError):
            config.validate()

    def test_validate_rejects_root_destination(self):
        """Test the root namespace can never be overwritten."""
        config = RefreshConfig(
            source="qa2",
            destination="qa2",
            source_namespace="test",
            destination_namespace=ROOT_NAMESPACE,
        )
        with self.assertRaises(ConfigurationError):
            config.validate()

    def test_validate_rejects_different_environments(self):
        """Test source and destination environments must match."""
        with self.assertRaises(ConfigurationError):
            RefreshConfig(source="qa2", destination="prod").validate()

    def test_validate_rejects_unknown_cloud(self):
        """Test unknown cloud names are rejected."""
        with self.assertRaises(ConfigurationError):
            RefreshConfig(source="qa2", destination="qa2", cloud="Mars").validate()

    def test_validate_rejects_bad_limits(self):
        """Test parallelism and wait must be positive."""
        with self.assertRaises(ConfigurationError):
            RefreshConfig(source="qa2", destination="qa2", max_parallel=0).validate()
        with self.assertRaises(ConfigurationError):
            RefreshConfig(source="qa2", destination="qa2", max_wait_minutes=0).validate()

    def test_default_restore_point_is_fifteen_minutes_ago(self):
        """Test the restore point defaults to now minus 15 minutes."""
        config = RefreshConfig(source="qa2", destination="qa2")
        now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

        self.assertEqual(
            config.resolve_restore_point(now=now),
            datetime(2024, 5, 1, 11, 45, 0, tzinfo=timezone.utc),
        )

    def test_restore_point_in_timezone(self):
        """Test an explicit restore time is converted from its zone to UTC."""
        config = RefreshConfig(
            source="qa2",
            destination="qa2",
            restore_datetime="2024-01-15 08:30:00",
            timezone="Europe/Warsaw",
        )
        self.assertEqual(
            config.resolve_restore_point(),
            datetime(2024, 1, 15, 7, 30, 0, tzinfo=timezone.utc),
        )

    def test_invalid_restore_datetime(self):
        """Test malformed datetimes fail validation."""
        config = RefreshConfig(source="qa2", destination="qa2", restore_datetime="yesterday")
        with self.assertRaises(ConfigurationError):
            config.validate()

    def test_unknown_timezone(self):
        """Test unknown zones fail validation."""
        config = RefreshConfig(source="qa2", destination="qa2", timezone="Nowhere/City")
        with self.assertRaises(ConfigurationError):
            config.validate()


if __name__ == "__main__":
    unittest.main()
