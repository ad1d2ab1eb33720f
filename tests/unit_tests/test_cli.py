"""
Unit tests for CLI module.
"""

import unittest
from unittest.mock import MagicMock, patch

from cli import build_parser, main
from errors import CopyTimeoutError, StageError


class TestCLI(unittest.TestCase):
    """Test CLI argument parsing and entry point."""

    def test_build_parser_defaults(self):
        """Test parser defaults to a dry run with standard limits."""
        parser = build_parser()

        args = parser.parse_args(["--source", "qa2"])

        self.assertEqual(args.source, "qa2")
        self.assertIsNone(args.destination)
        self.assertFalse(args.execute)
        self.assertEqual(args.max_parallel, 5)
        self.assertEqual(args.max_wait_minutes, 60)
        self.assertEqual(args.poll_interval, 30)
        self.assertEqual(args.derivation_mode, "substring")
        self.assertEqual(args.log_file, "environment-refresh.log")

    def test_parser_with_all_options(self):
        """Test parser handles all command-line options."""
        parser = build_parser()

        args = parser.parse_args(
            [
                "--source",
                "qa2",
                "--destination",
                "qa2",
                "--source-namespace",
                "manufacturo",
                "--destination-namespace",
                "test",
                "--cloud",
                "AzureUSGovernment",
                "--execute",
                "--restore-datetime",
                "2024-05-01 06:00:00",
                "--timezone",
                "Europe/Warsaw",
                "--instance-alias",
                "acme-test",
                "--instance-alias-to-remove",
                "acme",
                "--domain",
                "test.example.com",
                "--containers",
                "reports",
                "file-storage",
                "--services",
                "core",
                "--derivation-mode",
                "segment",
                "--fragments-dir",
                "/etc/refresh/sql",
                "--principal-id",
                "00000000-0000-0000-0000-000000000001",
                "--max-parallel",
                "3",
                "--max-wait-minutes",
                "90",
                "--poll-interval",
                "10",
                "--log-file",
                "custom.log",
                "--verbose",
            ]
        )

        self.assertEqual(args.cloud, "AzureUSGovernment")
        self.assertTrue(args.execute)
        self.assertEqual(args.restore_datetime, "2024-05-01 06:00:00")
        self.assertEqual(args.containers, ["reports", "file-storage"])
        self.assertEqual(args.services, ["core"])
        self.assertEqual(args.derivation_mode, "segment")
        self.assertEqual(args.max_parallel, 3)
        self.assertEqual(args.max_wait_minutes, 90)
        self.assertEqual(args.poll_interval, 10)
        self.assertTrue(args.verbose)

    def test_parser_rejects_unknown_cloud(self):
        """Test parser only accepts known clouds."""
        parser = build_parser()

        with self.assertRaises(SystemExit):
            parser.parse_args(["--source", "qa2", "--cloud", "AzureChinaCloud"])

    @patch("cli.WorkflowCoordinator")
    @patch("cli.setup_logging")
    def test_main_rejects_root_destination_before_any_azure_call(
        self, mock_setup_logging, mock_coordinator_class
    ):
        """Test boundary violations exit 1 without building the coordinator."""
        result = main(["--source", "qa2", "--destination-namespace", "manufacturo"])

        self.assertEqual(result, 1)
        mock_coordinator_class.assert_not_called()

    @patch("cli.WorkflowCoordinator")
    @patch("cli.setup_logging")
    def test_main_rejects_mismatched_environments(
        self, mock_setup_logging, mock_coordinator_class
    ):
        """Test source and destination environments must match."""
        result = main(["--source", "qa2", "--destination", "prod"])

        self.assertEqual(result, 1)
        mock_coordinator_class.assert_not_called()

    @patch("cli.WorkflowCoordinator")
    @patch("cli.setup_logging")
    def test_main_returns_run_exit_code(self, mock_setup_logging, mock_coordinator_class):
        """Test main returns the exit code of the completed run."""
        mock_run = MagicMock()
        mock_run.exit_code = 0
        mock_coordinator_class.return_value.run.return_value = mock_run

        result = main(["--source", "qa2"])

        self.assertEqual(result, 0)
        config = mock_coordinator_class.call_args[0][0]
        self.assertTrue(config.dry_run)
        self.assertEqual(config.destination, "qa2")
        self.assertEqual(config.destination_namespace, "test")

    @patch("cli.WorkflowCoordinator")
    @patch("cli.setup_logging")
    def test_main_returns_failure_on_stage_error(
        self, mock_setup_logging, mock_coordinator_class
    ):
        """Test an aborted execute run exits 1."""
        mock_coordinator_class.return_value.run.side_effect = StageError(
            "copy-databases", CopyTimeoutError("db1 not ready")
        )

        result = main(["--source", "qa2", "--execute"])

        self.assertEqual(result, 1)

    @patch("cli.WorkflowCoordinator")
    @patch("cli.setup_logging")
    def test_main_uses_log_file_argument(self, mock_setup_logging, mock_coordinator_class):
        """Test main passes the log file through to logging setup."""
        mock_coordinator_class.return_value.run.return_value = MagicMock(exit_code=0)

        main(["--source", "qa2", "--log-file", "refresh.log", "--verbose"])

        mock_setup_logging.assert_called_once_with(verbose=True, log_file="refresh.log")


if __name__ == "__main__":
    unittest.main()
