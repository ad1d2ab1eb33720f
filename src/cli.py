"""Console entry point for the Environment Refresh CLI."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List

from config import CLOUDS, RefreshConfig
from errors import ConfigurationError, RefreshError, StageError
from log_utils import setup_logging
from workflow import WorkflowCoordinator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Self-service environment refresh\n\n"
            "Copies databases, blob containers and access configuration from one\n"
            "namespace of an Azure environment into another. Dry run by default."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Preview a refresh of the 'test' namespace from the root namespace\n"
            "  python3 main.py --source qa2 --destination-namespace test\n\n"
            "  # Perform it, restoring from a specific local time\n"
            "  python3 main.py --source qa2 --destination-namespace test --execute \\\n"
            "      --restore-datetime '2024-05-01 06:00:00' --timezone Europe/Warsaw"
        ),
    )

    target = parser.add_argument_group("environments")
    target.add_argument(
        "--source", metavar="ENV", help="Source environment tag (env: REFRESH_SOURCE)"
    )
    target.add_argument(
        "--destination",
        metavar="ENV",
        help="Destination environment tag; defaults to the source (env: REFRESH_DESTINATION)",
    )
    target.add_argument(
        "--source-namespace",
        metavar="NAME",
        help="Source namespace (default: manufacturo)",
    )
    target.add_argument(
        "--destination-namespace",
        metavar="NAME",
        help="Destination namespace (default: test); may not be the root namespace",
    )
    target.add_argument(
        "--cloud",
        choices=sorted(CLOUDS),
        help="Azure cloud (default: AzureCloud, env: AZURE_CLOUD)",
    )

    mode = parser.add_argument_group("operation mode")
    mode.add_argument(
        "--execute",
        action="store_true",
        help="Perform the refresh. Without this flag nothing is changed.",
    )
    mode.add_argument(
        "--restore-datetime",
        metavar="'YYYY-MM-DD HH:MM:SS'",
        help="Point in time to restore from (default: 15 minutes ago)",
    )
    mode.add_argument(
        "--timezone",
        metavar="ZONE",
        help="IANA zone of --restore-datetime (default: local zone)",
    )
    mode.add_argument("--instance-alias", metavar="ALIAS", help="Instance alias to configure")
    mode.add_argument(
        "--instance-alias-to-remove", metavar="ALIAS", help="Instance alias to remove"
    )
    mode.add_argument("--domain", help="Application domain of the destination")
    mode.add_argument(
        "--containers",
        nargs="+",
        metavar="NAME",
        help="Blob containers to copy (default: the standard application containers)",
    )
    mode.add_argument(
        "--services",
        nargs="+",
        metavar="TOKEN",
        help="Service tokens used in database names (default: inferred)",
    )
    mode.add_argument(
        "--derivation-mode",
        choices=["substring", "segment"],
        default="substring",
        help="How destination names are derived (default: substring)",
    )
    mode.add_argument(
        "--fragments-dir",
        metavar="DIR",
        help="Directory with the SQL fragments (env: REFRESH_FRAGMENTS_DIR)",
    )
    mode.add_argument(
        "--principal-id",
        metavar="OBJECT_ID",
        help="Principal granted temporary access (env: REFRESH_PRINCIPAL_ID)",
    )

    control = parser.add_argument_group("safety and control")
    control.add_argument(
        "--max-parallel",
        type=int,
        default=5,
        metavar="N",
        help="Maximum number of concurrent copies (default: 5)",
    )
    control.add_argument(
        "--max-wait-minutes",
        type=int,
        default=60,
        metavar="MINUTES",
        help="Maximum wait for each copy or restore (default: 60)",
    )
    control.add_argument(
        "--poll-interval",
        type=int,
        default=30,
        metavar="SECONDS",
        help="Time between status checks (default: 30)",
    )

    logging_group = parser.add_argument_group("logging and output")
    logging_group.add_argument(
        "--log-file",
        default="environment-refresh.log",
        help="Append-only log file (default: environment-refresh.log)",
    )
    logging_group.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = RefreshConfig.from_args(args)
    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Invalid parameters: {e}")
        return 1

    try:
        run = WorkflowCoordinator(config).run()
    except StageError as e:
        logger.error(f"Refresh aborted at {e.stage}: {e.cause}")
        return 1
    except RefreshError as e:
        logger.error(f"Refresh failed: {e}")
        return 1
    return run.exit_code


def run() -> None:
    """console_scripts wrapper."""
    sys.exit(main())
