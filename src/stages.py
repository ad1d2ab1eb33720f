"""
Refresh stages.

Each stage is a method taking the shared RefreshContext and returning a
short, deterministic detail string for the run plan. A stage that does not
apply raises SkipStage; any other failure is raised typed to the
coordinator.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from capacity import CapacityAdmissionController
from clients import METRIC_ALERT_API_VERSION, WEBTEST_API_VERSION
from config import RefreshConfig
from copier import (
    CopyOrchestrator,
    CopyTarget,
    DatabaseCopyBackend,
    RetryPolicy,
    is_system_object,
)
from errors import CopyTimeoutError, RefreshError
from models import (
    CopyTask,
    ExecutionMode,
    NameDerivationRequest,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    ServerRole,
    ServerTopology,
    WorkflowRun,
)
from naming import SUBSTRING, derive_name, infer_service, is_root_namespace, overlapping_tokens
from sql_fragments import (
    ADJUST_DESTINATION_RESOURCES,
    CLEAN_DESTINATION_CONFIG,
    RECONFIGURE_DESTINATION_ACCESS,
    REVERT_SOURCE_ACCESS,
    SqlFragmentRunner,
)
from storage import ContainerCopyBackend, StorageFirewall
from tags import TagReconciler, required_tags
from topology import TopologyResolver, tag_value

logger = logging.getLogger(__name__)

RESTORED_SUFFIX = "-restored"

MONITOR_QUERY = (
    "Resources | where type in~ ('microsoft.insights/metricalerts', 'microsoft.insights/webtests') "
    "| project id, name, type, tags, properties"
)
# resource type -> (api version, name of the enabled flag)
MONITOR_TYPES = {
    "microsoft.insights/metricalerts": (METRIC_ALERT_API_VERSION, "enabled"),
    "microsoft.insights/webtests": (WEBTEST_API_VERSION, "Enabled"),
}


class SkipStage(Exception):
    """Raised by a stage that does not apply to this run."""


@dataclass
class RefreshContext:
    """State handed from stage to stage within one run."""

    config: RefreshConfig
    run: WorkflowRun
    restore_point: datetime
    source_server: Optional[ServerTopology] = None
    destination_server: Optional[ServerTopology] = None
    secondary_server: Optional[ServerTopology] = None
    source_storage: Optional[ServerTopology] = None
    destination_storage: Optional[ServerTopology] = None
    elastic_pool: Optional[Dict] = None
    failover_group: Optional[Dict] = None
    database_tasks: List[CopyTask] = field(default_factory=list)
    monitors: List[Tuple[str, str, str]] = field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.run.dry_run


def original_name(task: CopyTask) -> str:
    """Name of the source database a restored copy was taken from."""
    name = task.source.name
    if name.endswith(RESTORED_SUFFIX):
        return name[: -len(RESTORED_SUFFIX)]
    return name


def fragment_params(config: RefreshConfig) -> Dict[str, Optional[str]]:
    return {
        "Source": config.source,
        "Destination": config.destination,
        "SourceNamespace": config.source_namespace,
        "DestinationNamespace": config.destination_namespace,
        "InstanceAlias": config.instance_alias,
        "InstanceAliasToRemove": config.instance_alias_to_remove,
        "Domain": config.domain,
    }


class RefreshStages:
    """Concrete actions behind each step of the refresh pipeline."""

    def __init__(
        self,
        config: RefreshConfig,
        api,
        resolver: Optional[TopologyResolver] = None,
        fragments: Optional[SqlFragmentRunner] = None,
        container_backend: Optional[ContainerCopyBackend] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.api = api
        self.resolver = resolver or TopologyResolver(api)
        self.fragments = fragments or SqlFragmentRunner(
            config.fragments_dir,
            credential=getattr(api, "credential", None),
            sql_scope=config.endpoints["sql_scope"],
        )
        self.capacity = CapacityAdmissionController(api)
        self.firewall = StorageFirewall(api, sleep=sleep)
        self.databases = CopyOrchestrator(
            DatabaseCopyBackend(api),
            tag_reconciler=TagReconciler(api),
            retry_policy=RetryPolicy(),
            poll_interval=config.poll_interval,
            max_parallel=config.max_parallel,
            api=api,
            sleep=sleep,
            clock=clock,
        )
        self.containers = CopyOrchestrator(
            container_backend or ContainerCopyBackend(),
            retry_policy=RetryPolicy(),
            poll_interval=config.poll_interval,
            max_parallel=config.max_parallel,
            sleep=sleep,
            clock=clock,
        )

    def pipeline(self) -> List[Tuple[str, Callable[[RefreshContext], str]]]:
        """Ordered stages, excluding grant and revoke which the coordinator owns."""
        return [
            ("restore-to-point-in-time", self.restore),
            ("stop-destination", self.stop_destination),
            ("copy-blob-storage", self.copy_blob_storage),
            ("copy-databases", self.copy_databases),
            ("clean-destination-config", self.clean_destination_config),
            ("revert-source-access", self.revert_source_access),
            ("adjust-destination-resources", self.adjust_destination_resources),
            ("rebuild-replicas", self.rebuild_replicas),
            ("reconfigure-destination-access", self.reconfigure_destination_access),
            ("start-destination", self.start_destination),
            ("delete-scratch-objects", self.delete_scratch_objects),
        ]

    # Discovery

    def discover(self, ctx: RefreshContext) -> str:
        cfg = self.config
        ctx.source_server = self.resolver.resolve(cfg.source, ServerRole.PRIMARY)
        ctx.destination_server = self.resolver.resolve(cfg.destination, ServerRole.PRIMARY)
        ctx.secondary_server = self.resolver.resolve(cfg.destination, ServerRole.SECONDARY)
        ctx.source_storage = self.resolver.resolve(
            cfg.source, ServerRole.PRIMARY, ResourceKind.STORAGE_ACCOUNT, cfg.source_namespace
        )
        ctx.destination_storage = self.resolver.resolve(
            cfg.destination,
            ServerRole.PRIMARY,
            ResourceKind.STORAGE_ACCOUNT,
            cfg.destination_namespace,
        )
        ctx.elastic_pool = self.resolver.find_elastic_pool(ctx.destination_server)
        ctx.failover_group = self.resolver.find_failover_group(
            ctx.destination_server, ctx.secondary_server
        )
        ctx.database_tasks = self.plan_databases(ctx)
        secondary = ctx.secondary_server.name if ctx.secondary_server else "none"
        return (
            f"source={ctx.source_server.name} destination={ctx.destination_server.name} "
            f"secondary={secondary} databases={len(ctx.database_tasks)}"
        )

    def derive(self, ctx: RefreshContext, name: str) -> Optional[str]:
        """Destination name for a source database, or None when it is not ours."""
        cfg = self.config
        src, dst = ctx.source_server, ctx.destination_server
        services = cfg.services or [
            infer_service(
                name,
                src.product_token,
                src.tier_token,
                cfg.source_namespace,
                src.environment_token,
                src.region,
            )
        ]
        for service in services:
            if not service:
                continue
            req = NameDerivationRequest(
                source_name=name,
                product=src.product_token,
                service=service,
                source_namespace=cfg.source_namespace,
                destination_namespace=cfg.destination_namespace,
                source_environment=src.environment_token,
                destination_environment=dst.environment_token,
                source_region=src.region,
                destination_region=dst.region,
                source_tier=src.tier_token,
                destination_tier=dst.tier_token,
            )
            derived = derive_name(req, cfg.derivation_mode)
            if derived is None:
                continue
            overlaps = overlapping_tokens(req)
            if overlaps and cfg.derivation_mode == SUBSTRING:
                logger.warning(
                    f"Overlapping name tokens {overlaps} for {name}; "
                    f"consider --derivation-mode segment"
                )
            return derived
        logger.debug(f"Skipping {name}: does not match the source naming pattern")
        return None

    def fallback_tags(self, source_tags: Dict[str, str]) -> Dict[str, str]:
        """Required tags seeded from the source, with destination overrides."""
        namespace = self.config.destination_namespace
        fallback = {k: v for k, v in source_tags.items() if k in required_tags(namespace)}
        fallback["Environment"] = self.config.destination
        if not is_root_namespace(namespace):
            fallback["ClientName"] = namespace
        return fallback

    def plan_databases(self, ctx: RefreshContext) -> List[CopyTask]:
        tasks = []
        databases = sorted(
            self.api.list_databases(ctx.source_server), key=lambda d: d.get("name", "")
        )
        for db in databases:
            name = db.get("name", "")
            if is_system_object(name):
                continue
            destination_name = self.derive(ctx, name)
            if destination_name is None:
                continue
            if destination_name == name:
                ctx.run.warn(f"Derived name for {name} equals the source name; skipped")
                continue
            restored = f"{name}{RESTORED_SUFFIX}"
            tags = dict(db.get("tags") or {})
            tasks.append(
                CopyTask(
                    source=ResourceDescriptor(
                        name=restored,
                        tags=tags,
                        resource_id="/" + self.api.database_path(ctx.source_server, restored),
                    ),
                    destination_name=destination_name,
                    fallback_tags=self.fallback_tags(tags),
                )
            )
            logger.info(f"Planned: {name} -> {destination_name}")
        return tasks

    # Stages

    def restore(self, ctx: RefreshContext) -> str:
        server = ctx.source_server
        logger.info(f"Restore point: {ctx.restore_point:%Y-%m-%d %H:%M:%S} UTC")
        pending = []
        for task in ctx.database_tasks:
            restored = task.source.name
            if self.api.get_database(server, restored) is not None:
                logger.info(f"{restored} already exists, skipping restore")
                continue
            pending.append(restored)
            if ctx.dry_run:
                logger.info(f"DRY RUN: Would restore {original_name(task)} as {restored}")
                continue
            self.api.restore_database(
                server, original_name(task), restored, ctx.restore_point, sku=self.config.restore_sku
            )
            logger.info(f"Started restore of {original_name(task)} as {restored}")

        if not ctx.dry_run:
            start = self.databases.clock()
            for restored in pending:
                ready, state, elapsed = self.databases.wait_until_ready(
                    lambda name=restored: self._database_state(server, name),
                    restored,
                    self.config.max_wait_minutes,
                    start=start,
                )
                if not ready:
                    raise CopyTimeoutError(
                        f"{restored} not Online after {elapsed:.1f} min (state={state.value})"
                    )
        ctx.run.restored_databases = [t.source.name for t in ctx.database_tasks]
        return f"{len(pending)} restore(s), {len(ctx.database_tasks) - len(pending)} already present"

    def _database_state(self, server: ServerTopology, name: str) -> ResourceState:
        db = self.api.get_database(server, name)
        if db is None:
            return ResourceState.UNKNOWN
        return ResourceState.from_provider((db.get("properties") or {}).get("status"))

    def find_monitors(self) -> List[Tuple[str, str, str]]:
        """Enabled alerts and web tests of the destination environment."""
        namespace = self.config.destination_namespace
        found = []
        for resource in self.api.query_resources(MONITOR_QUERY):
            if tag_value(resource, "Environment").casefold() != self.config.destination.casefold():
                continue
            client = tag_value(resource, "ClientName")
            if client and client.casefold() != namespace.casefold():
                continue
            kind = (resource.get("type") or "").lower()
            if kind not in MONITOR_TYPES:
                continue
            api_version, key = MONITOR_TYPES[kind]
            properties = resource.get("properties") or {}
            if not properties.get(key, False):
                continue
            found.append((resource.get("id", ""), api_version, key))
        return sorted(found)

    def stop_destination(self, ctx: RefreshContext) -> str:
        ctx.monitors = self.find_monitors()
        for resource_id, api_version, key in ctx.monitors:
            if ctx.dry_run:
                logger.info(f"DRY RUN: Would disable {resource_id}")
                continue
            self.api.set_monitor_enabled(resource_id, api_version, False, key=key)
            logger.info(f"Disabled {resource_id}")
        return f"{len(ctx.monitors)} monitor(s) disabled"

    def start_destination(self, ctx: RefreshContext) -> str:
        for resource_id, api_version, key in ctx.monitors:
            if ctx.dry_run:
                logger.info(f"DRY RUN: Would re-enable {resource_id}")
                continue
            self.api.set_monitor_enabled(resource_id, api_version, True, key=key)
            logger.info(f"Re-enabled {resource_id}")
        return f"{len(ctx.monitors)} monitor(s) re-enabled"

    def copy_blob_storage(self, ctx: RefreshContext) -> str:
        source, destination = ctx.source_storage, ctx.destination_storage
        if source.name == destination.name:
            raise SkipStage(f"source and destination share storage account {source.name}")

        tasks = [
            CopyTask(source=ResourceDescriptor(name=c), destination_name=c)
            for c in self.config.containers
        ]
        target = CopyTarget(
            source=source,
            destination=destination,
            namespace=self.config.destination_namespace,
            max_wait_minutes=self.config.max_wait_minutes,
        )

        if ctx.dry_run:
            logger.info(f"DRY RUN: Would open firewalls on {source.name} and {destination.name}")
            self.containers.run_batch(tasks, target, ExecutionMode.PARALLEL, ctx.run)
            return f"{len(tasks)} container(s) planned"

        previous = self.firewall.open([source, destination])
        try:
            result = self.containers.run_batch(tasks, target, ExecutionMode.PARALLEL, ctx.run)
        finally:
            self.firewall.restore(previous)
        result.raise_for_failures()
        return f"{len(result.succeeded)} container(s) copied"

    def copy_databases(self, ctx: RefreshContext) -> str:
        tasks = ctx.database_tasks
        if not tasks:
            raise SkipStage("no databases matched the source naming pattern")

        target = CopyTarget(
            source=ctx.source_server,
            destination=ctx.destination_server,
            namespace=self.config.destination_namespace,
            max_wait_minutes=self.config.max_wait_minutes,
            elastic_pool_id=(ctx.elastic_pool or {}).get("id"),
            failover_group_id=(ctx.failover_group or {}).get("id"),
        )

        if ctx.elastic_pool:
            for task in tasks:
                if not task.source.size_bytes:
                    original_id = "/" + self.api.database_path(
                        ctx.source_server, original_name(task)
                    )
                    task.source.size_bytes = self.capacity.measure(original_id)
            report = self.capacity.evaluate(
                ctx.elastic_pool, tasks, self.api.list_databases(ctx.destination_server)
            )
            self.capacity.admit(report, ctx.run, label=ctx.elastic_pool.get("name"))
        else:
            logger.warning(f"No elastic pool on {ctx.destination_server.name}; capacity not checked")

        result = self.databases.run_batch(tasks, target, ExecutionMode.PARALLEL, ctx.run)
        if ctx.dry_run:
            if target.failover_group_id:
                logger.info(f"DRY RUN: Would register {len(tasks)} database(s) in the failover group")
            ctx.run.copied_databases = [t.destination_name for t in tasks]
            return f"{len(tasks)} database(s) planned"

        result.raise_for_failures()
        ctx.run.copied_databases = [t.destination_name for t in result.succeeded]
        detail = f"{len(result.succeeded)} database(s) copied"
        if result.registration_failures:
            detail += f", {result.registration_failures} failover registration failure(s)"
        return detail

    def _apply_fragment(self, ctx: RefreshContext, fragment: str) -> str:
        names = [t.destination_name for t in ctx.database_tasks]
        if not names:
            raise SkipStage("no copied databases")
        params = fragment_params(self.config)
        for name in names:
            self.fragments.apply(
                fragment, ctx.destination_server, name, params, dry_run=ctx.dry_run
            )
        return f"{fragment} applied to {len(names)} database(s)"

    def clean_destination_config(self, ctx: RefreshContext) -> str:
        return self._apply_fragment(ctx, CLEAN_DESTINATION_CONFIG)

    def revert_source_access(self, ctx: RefreshContext) -> str:
        return self._apply_fragment(ctx, REVERT_SOURCE_ACCESS)

    def adjust_destination_resources(self, ctx: RefreshContext) -> str:
        return self._apply_fragment(ctx, ADJUST_DESTINATION_RESOURCES)

    def reconfigure_destination_access(self, ctx: RefreshContext) -> str:
        return self._apply_fragment(ctx, RECONFIGURE_DESTINATION_ACCESS)

    def rebuild_replicas(self, ctx: RefreshContext) -> str:
        """
        Remove stale standalone copies on the secondary and re-register primaries.

        A database left on the secondary without a `secondaryType` is no longer
        a geo-replica and blocks the failover group from seeding a new one.
        """
        secondary = ctx.secondary_server
        if secondary is None:
            raise SkipStage("no secondary server")
        if not ctx.failover_group:
            raise SkipStage(f"no failover group pairs with {secondary.name}")

        removed = 0
        registered = 0
        for task in ctx.database_tasks:
            name = task.destination_name
            if is_system_object(name):
                continue
            replica = self.api.get_database(secondary, name)
            stale = replica is not None and not (replica.get("properties") or {}).get("secondaryType")
            if ctx.dry_run:
                if stale:
                    logger.info(f"DRY RUN: Would delete stale replica {secondary.name}/{name}")
                logger.info(f"DRY RUN: Would register {name} in the failover group")
                removed += int(stale)
                registered += 1
                continue
            if stale:
                self.api.delete_database(secondary, name)
                removed += 1
                logger.info(f"Deleted stale replica {secondary.name}/{name}")
            database_id = "/" + self.api.database_path(ctx.destination_server, name)
            self.api.add_to_failover_group(ctx.failover_group["id"], database_id)
            registered += 1
        return f"{removed} stale replica(s) removed, {registered} database(s) registered"

    def delete_scratch_objects(self, ctx: RefreshContext) -> str:
        deleted = 0
        for task in ctx.database_tasks:
            restored = task.source.name
            if ctx.dry_run:
                logger.info(f"DRY RUN: Would delete {restored}")
                deleted += 1
                continue
            try:
                if self.api.delete_database(ctx.source_server, restored):
                    deleted += 1
                    logger.info(f"Deleted {restored}")
            except RefreshError as e:
                ctx.run.warn(f"Could not delete scratch database {restored}: {e}")
                logger.error(f"Could not delete scratch database {restored}: {e}")
        return f"{deleted} scratch database(s) deleted"
