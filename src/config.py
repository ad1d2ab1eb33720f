"""
Configuration management for the environment refresh tool.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import ConfigurationError

ROOT_NAMESPACE = "manufacturo"
DEFAULT_DESTINATION_NAMESPACE = "test"
RESTORE_LOOKBACK_MINUTES = 15
RESTORE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Endpoints per sovereign cloud
CLOUDS: Dict[str, Dict[str, str]] = {
    "AzureCloud": {
        "arm": "https://management.azure.com",
        "authority": "login.microsoftonline.com",
        "sql_suffix": "database.windows.net",
        "sql_scope": "https://database.windows.net/.default",
    },
    "AzureUSGovernment": {
        "arm": "https://management.usgovcloudapi.net",
        "authority": "login.microsoftonline.us",
        "sql_suffix": "database.usgovcloudapi.net",
        "sql_scope": "https://database.usgovcloudapi.net/.default",
    },
}

DEFAULT_CONTAINERS = [
    "ewp-attachments",
    "core-attachments",
    "reports",
    "file-storage",
    "nc-attachments",
    "integrator-plus-site-files",
]

# Built-in role definitions granted to the refresh principal
DEFAULT_ROLE_DEFINITIONS = [
    "b24988ac-6180-42a0-ab88-20f7382dd24c",  # Contributor
    "ba92f5b4-2d11-453d-a403-e96b0029c9fe",  # Storage Blob Data Contributor
]


@dataclass
class RefreshConfig:
    """Configuration for one refresh run."""

    source: str
    destination: str
    source_namespace: str = ROOT_NAMESPACE
    destination_namespace: str = DEFAULT_DESTINATION_NAMESPACE
    dry_run: bool = True
    max_wait_minutes: int = 60
    restore_datetime: Optional[str] = None
    timezone: Optional[str] = None
    instance_alias: Optional[str] = None
    instance_alias_to_remove: Optional[str] = None
    domain: Optional[str] = None
    cloud: str = "AzureCloud"
    max_parallel: int = 5
    poll_interval: int = 30
    fragments_dir: str = "sql_fragments"
    principal_id: Optional[str] = None
    role_definition_ids: List[str] = field(
        default_factory=lambda: list(DEFAULT_ROLE_DEFINITIONS)
    )
    containers: List[str] = field(default_factory=lambda: list(DEFAULT_CONTAINERS))
    services: List[str] = field(default_factory=list)
    derivation_mode: str = "substring"
    restore_sku: str = "S3"
    log_file: str = "environment-refresh.log"
    verbose: bool = False

    @classmethod
    def from_args(cls, args, environ: Optional[Dict[str, str]] = None) -> "RefreshConfig":
        """
        Create configuration from command-line arguments.

        Priority: command line > environment variables > defaults.

        Args:
            args: Parsed argparse arguments
            environ: Environment mapping (defaults to os.environ)

        Returns:
            RefreshConfig instance
        """
        env = os.environ if environ is None else environ

        source = args.source or env.get("REFRESH_SOURCE", "")
        destination = args.destination or env.get("REFRESH_DESTINATION", "") or source

        config = cls(
            source=source,
            destination=destination,
            source_namespace=(
                args.source_namespace
                or env.get("REFRESH_SOURCE_NAMESPACE")
                or ROOT_NAMESPACE
            ),
            destination_namespace=(
                args.destination_namespace
                or env.get("REFRESH_DESTINATION_NAMESPACE")
                or DEFAULT_DESTINATION_NAMESPACE
            ),
            dry_run=not args.execute,
            max_wait_minutes=args.max_wait_minutes,
            restore_datetime=args.restore_datetime,
            timezone=args.timezone,
            instance_alias=args.instance_alias,
            instance_alias_to_remove=args.instance_alias_to_remove,
            domain=args.domain,
            cloud=args.cloud or env.get("AZURE_CLOUD", "AzureCloud"),
            max_parallel=args.max_parallel,
            poll_interval=args.poll_interval,
            fragments_dir=(
                args.fragments_dir or env.get("REFRESH_FRAGMENTS_DIR", "sql_fragments")
            ),
            principal_id=args.principal_id or env.get("REFRESH_PRINCIPAL_ID"),
            derivation_mode=args.derivation_mode,
            log_file=args.log_file,
            verbose=args.verbose,
        )
        if args.containers:
            config.containers = list(args.containers)
        if args.services:
            config.services = list(args.services)
        return config

    @property
    def endpoints(self) -> Dict[str, str]:
        return CLOUDS[self.cloud]

    def validate(self) -> None:
        """
        Enforce the boundary safety rules.

        Raises:
            ConfigurationError: On any violation
        """
        if not self.source:
            raise ConfigurationError("Source environment is required")
        if not self.destination:
            raise ConfigurationError("Destination environment is required")
        if self.source != self.destination:
            raise ConfigurationError(
                f"Source and destination environments must match "
                f"({self.source} != {self.destination}); only the namespace may differ"
            )
        if self.source_namespace == self.destination_namespace:
            raise ConfigurationError(
                f"Source and destination namespaces must differ "
                f"(both are '{self.source_namespace}')"
            )
        if self.destination_namespace == ROOT_NAMESPACE:
            raise ConfigurationError(
                f"Destination namespace cannot be the root namespace '{ROOT_NAMESPACE}'"
            )
        if self.cloud not in CLOUDS:
            raise ConfigurationError(
                f"Unknown cloud '{self.cloud}'. Valid: {', '.join(CLOUDS)}"
            )
        if self.max_parallel < 1:
            raise ConfigurationError("max_parallel must be at least 1")
        if self.max_wait_minutes < 1:
            raise ConfigurationError("max_wait_minutes must be at least 1")
        if self.derivation_mode not in ("substring", "segment"):
            raise ConfigurationError(
                f"Unknown derivation mode '{self.derivation_mode}'"
            )
        self.resolve_restore_point()

    def resolve_restore_point(self, now: Optional[datetime] = None) -> datetime:
        """
        Return the point-in-time to restore from, in UTC.

        Without an explicit value this is 15 minutes before now. A given
        value is interpreted in `timezone` (or the local zone).

        Raises:
            ConfigurationError: If the timezone or datetime cannot be parsed
        """
        tz = None
        if self.timezone:
            try:
                tz = ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ConfigurationError(f"Unknown timezone '{self.timezone}'") from e

        if not self.restore_datetime:
            current = now or datetime.now(timezone.utc)
            return (current - timedelta(minutes=RESTORE_LOOKBACK_MINUTES)).astimezone(
                timezone.utc
            )

        try:
            naive = datetime.strptime(self.restore_datetime, RESTORE_DATETIME_FORMAT)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid restore datetime '{self.restore_datetime}', "
                f"expected {RESTORE_DATETIME_FORMAT}"
            ) from e
        local = naive.replace(tzinfo=tz) if tz else naive.astimezone()
        return local.astimezone(timezone.utc)
