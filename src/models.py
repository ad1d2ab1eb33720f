"""
Data models for the environment refresh tool.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from errors import TopologyParseError

NAME_DELIMITER = "-"
MIN_NAME_SEGMENTS = 4


class ServerRole(Enum):
    """Value of the `Type` tag that marks a server's failover role."""

    PRIMARY = "Primary"
    SECONDARY = "Secondary"


class ResourceKind(Enum):
    """Resource types the topology resolver knows how to look up."""

    SQL_SERVER = "microsoft.sql/servers"
    STORAGE_ACCOUNT = "microsoft.storage/storageaccounts"


class ResourceState(Enum):
    """Readiness of a copyable unit."""

    UNKNOWN = "Unknown"
    CREATING = "Creating"
    ONLINE = "Online"
    FAILED = "Failed"

    @classmethod
    def from_provider(cls, status: Optional[str]) -> "ResourceState":
        """Map a provider status string onto the four-state model."""
        if not status:
            return cls.UNKNOWN
        value = str(status).strip().lower()
        if value == "online":
            return cls.ONLINE
        if value in {
            "creating",
            "copying",
            "restoring",
            "scaling",
            "recovering",
            "onlinechangingdwperformancetiers",
        }:
            return cls.CREATING
        if value in {"failed", "suspect", "offline", "offlinesecondary", "disabled"}:
            return cls.FAILED
        return cls.UNKNOWN


class CopyPhase(Enum):
    DELETION = "Deletion"
    INITIATION = "Initiation"
    POLLING = "Polling"
    TAG_RESTORE = "TagRestore"


class TaskStatus(Enum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class ExecutionMode(Enum):
    """How a batch of copy tasks is scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StageStatus(Enum):
    SUCCEEDED = "succeeded"
    PLANNED = "planned"  # dry run
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerTopology:
    """Identity of a discovered server or storage account."""

    name: str
    endpoint_address: str
    resource_group: str
    subscription_id: str
    region: str
    product_token: str
    tier_token: str
    environment_token: str
    resource_id: str = ""
    role: ServerRole = ServerRole.PRIMARY

    @classmethod
    def from_resource(
        cls, resource: Dict, endpoint_address: str, role: ServerRole
    ) -> "ServerTopology":
        """
        Build a topology from an inventory row.

        The resource name is split on the delimiter as
        `{kind}-{product}-{tier}-{environment}[-...]`.

        Raises:
            TopologyParseError: If the name has fewer than 4 segments
        """
        name = resource.get("name", "")
        segments = name.split(NAME_DELIMITER)
        if len(segments) < MIN_NAME_SEGMENTS:
            raise TopologyParseError(
                f"Cannot parse naming tokens from '{name}'",
                searched_for=(
                    f"at least {MIN_NAME_SEGMENTS} '{NAME_DELIMITER}'-delimited segments"
                ),
                found=[f"{len(segments)} segment(s)"],
                hint="Resource names must follow {kind}-{product}-{tier}-{environment}-...",
            )
        return cls(
            name=name,
            endpoint_address=endpoint_address,
            resource_group=resource.get("resourceGroup", ""),
            subscription_id=resource.get("subscriptionId", ""),
            region=resource.get("location", ""),
            product_token=segments[1],
            tier_token=segments[2],
            environment_token=segments[3],
            resource_id=resource.get("id", ""),
            role=role,
        )


@dataclass
class ResourceDescriptor:
    """A single copyable unit (database or blob container)."""

    name: str
    tags: Dict[str, str] = field(default_factory=dict)
    size_bytes: int = 0
    state: ResourceState = ResourceState.UNKNOWN
    resource_id: str = ""


@dataclass
class NameDerivationRequest:
    """Inputs for deriving a destination name from a source name."""

    source_name: str
    product: str
    service: str
    source_namespace: str
    destination_namespace: str
    source_environment: str
    destination_environment: str
    source_region: str
    destination_region: str
    source_tier: str
    destination_tier: str


@dataclass
class CopyTask:
    """One source object being copied to a destination name."""

    source: ResourceDescriptor
    destination_name: str
    saved_tags: Dict[str, str] = field(default_factory=dict)
    fallback_tags: Dict[str, str] = field(default_factory=dict)
    phase: Optional[CopyPhase] = None
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None
    elapsed_minutes: float = 0.0
    attempts: int = 0
    destination_existed: bool = False
    tag_warning: List[str] = field(default_factory=list)
    started: bool = False


@dataclass
class CapacityReport:
    """Outcome of a capacity admission check for one batch."""

    pool_max_bytes: int
    current_usage_bytes: int
    source_batch_bytes: int
    destination_batch_bytes_to_free: int
    projected_usage_bytes: int
    projected_free_bytes: int
    safety_threshold_bytes: int
    passed: bool
    reason: str = ""


@dataclass
class StageResult:
    """Result of a single workflow stage."""

    name: str
    status: StageStatus
    detail: str = ""


@dataclass
class OrphanedObject:
    """Destination object whose copy outcome could not be confirmed."""

    name: str
    phase: str
    error: str


@dataclass
class WorkflowRun:
    """
    Top-level aggregate for one refresh invocation.

    Passed explicitly through every stage; nothing is kept in module state.
    """

    dry_run: bool
    stages: List[StageResult] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    orphans: List[OrphanedObject] = field(default_factory=list)
    tag_warnings: Dict[str, List[str]] = field(default_factory=dict)
    failover_registration_failures: int = 0
    restored_databases: List[str] = field(default_factory=list)
    copied_databases: List[str] = field(default_factory=list)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def record(self, name: str, status: StageStatus, detail: str = "") -> StageResult:
        result = StageResult(name=name, status=status, detail=detail)
        self.stages.append(result)
        return result

    def fail(self, reason: str) -> None:
        """Accumulate a failure reason (dry-run semantics)."""
        self.failures.append(reason)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def plan(self) -> List[tuple]:
        """Comparable view of the stage sequence."""
        return [(s.name, s.status.value, s.detail) for s in self.stages]

    @property
    def exit_code(self) -> int:
        if self.failures:
            return 1
        if any(s.status == StageStatus.FAILED for s in self.stages):
            return 1
        return 0
