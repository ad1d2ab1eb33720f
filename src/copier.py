"""
Copy orchestration for batches of databases or blob containers.

Each task moves through Deletion -> Initiation -> Polling -> TagRestore and
ends Succeeded or Failed. Batches run sequentially or on a bounded thread
pool; in execute mode the first failure stops any task that has not started.
"""

import logging
import threading
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from errors import (
    ArmRequestError,
    CopyInitiationError,
    CopyTimeoutError,
    RefreshError,
    TagIncompleteWarning,
)
from models import (
    CopyPhase,
    CopyTask,
    ExecutionMode,
    OrphanedObject,
    ResourceState,
    ServerTopology,
    TaskStatus,
    WorkflowRun,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30
LARGE_OBJECT_BYTES = 250 * 1024**3
LARGE_OBJECT_OVERHEAD_MINUTES = 30
SYSTEM_SUFFIXES = ("-restored", "-backup")


def is_system_object(name: str) -> bool:
    """Scratch/system objects are never copied or registered for failover."""
    if "master" in name or "Copy" in name:
        return True
    return name.endswith(SYSTEM_SUFFIXES)


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff."""

    max_attempts: int = 3
    initial_delay: float = 5.0
    multiplier: float = 2.0

    def delay_before(self, attempt: int) -> float:
        """Backoff slept before `attempt` (1-based); the first attempt has none."""
        if attempt <= 1:
            return 0.0
        return self.initial_delay * (self.multiplier ** (attempt - 2))

    def call(
        self,
        operation: Callable,
        description: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Tuple[object, int]:
        """
        Run `operation` until it succeeds or attempts are exhausted.

        Returns:
            (result, attempts_used)

        Raises:
            CopyInitiationError: When every attempt failed
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            delay = self.delay_before(attempt)
            if delay:
                logger.info(f"Retrying {description} in {delay:.0f}s (attempt {attempt}/{self.max_attempts})")
                sleep(delay)
            try:
                return operation(), attempt
            except (RefreshError, OSError) as e:
                last_error = e
                logger.warning(
                    f"{description} failed on attempt {attempt}/{self.max_attempts}: {e}"
                )
        raise CopyInitiationError(
            f"{description} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error


@dataclass
class CopyTarget:
    """Everything a worker needs about where a batch is going."""

    source: ServerTopology
    destination: ServerTopology
    namespace: str
    max_wait_minutes: int
    elastic_pool_id: Optional[str] = None
    failover_group_id: Optional[str] = None


@dataclass
class BatchResult:
    """Merged outcome of one batch."""

    tasks: List[CopyTask] = field(default_factory=list)
    orphans: List[OrphanedObject] = field(default_factory=list)
    registration_failures: int = 0
    registered: int = 0

    @property
    def succeeded(self) -> List[CopyTask]:
        return [t for t in self.tasks if t.status == TaskStatus.SUCCEEDED]

    @property
    def failed(self) -> List[CopyTask]:
        return [t for t in self.tasks if t.status == TaskStatus.FAILED]

    @property
    def not_started(self) -> List[CopyTask]:
        return [t for t in self.tasks if not t.started]

    def raise_for_failures(self) -> None:
        """Raise the typed error of the first failed task, if any."""
        if not self.failed:
            return
        first = self.failed[0]
        message = f"{first.destination_name} failed at {first.phase.value}: {first.error}"
        if first.phase == CopyPhase.POLLING:
            raise CopyTimeoutError(message)
        raise CopyInitiationError(message)


class DatabaseCopyBackend:
    """Copies databases with ARM "create as copy"."""

    supports_tags = True
    kind = "database"

    def __init__(self, api):
        self.api = api

    def destination_id(self, task: CopyTask, target: CopyTarget) -> str:
        return "/" + self.api.database_path(target.destination, task.destination_name)

    def exists(self, task: CopyTask, target: CopyTarget) -> bool:
        return self.api.get_database(target.destination, task.destination_name) is not None

    def delete(self, task: CopyTask, target: CopyTarget) -> bool:
        return self.api.delete_database(target.destination, task.destination_name)

    def cancel(self, task: CopyTask, target: CopyTarget) -> bool:
        """Server-side copies cannot be withdrawn; orphan detection reports them."""
        return False

    def start_copy(self, task: CopyTask, target: CopyTarget):
        return self.api.copy_database(
            task.source.resource_id,
            target.destination,
            task.destination_name,
            elastic_pool_id=target.elastic_pool_id,
        )

    def state(self, task: CopyTask, target: CopyTarget) -> ResourceState:
        db = self.api.get_database(target.destination, task.destination_name)
        if db is None:
            return ResourceState.UNKNOWN
        return ResourceState.from_provider((db.get("properties") or {}).get("status"))


class CopyOrchestrator:
    """Runs copy tasks through delete, copy, poll and tag restore."""

    def __init__(
        self,
        backend,
        tag_reconciler=None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
        max_parallel: int = 5,
        api=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            backend: Copy backend (database or container)
            tag_reconciler: TagReconciler, used when the backend supports tags
            retry_policy: Policy for copy initiation
            poll_interval: Seconds between readiness checks
            max_parallel: Worker ceiling for parallel batches
            api: AzureRestClient used for failover group registration
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self.backend = backend
        self.tags = tag_reconciler
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.max_parallel = max_parallel
        self.api = api
        self.sleep = sleep
        self.clock = clock
        # Set once any task of the current batch fails
        self.abort = threading.Event()

    @staticmethod
    def wait_budget(task: CopyTask, max_wait_minutes: int) -> float:
        """Maximum wait for a task, with extra allowance for large objects."""
        if task.source.size_bytes >= LARGE_OBJECT_BYTES:
            return max_wait_minutes + LARGE_OBJECT_OVERHEAD_MINUTES
        return float(max_wait_minutes)

    def run_batch(
        self,
        tasks: List[CopyTask],
        target: CopyTarget,
        mode: ExecutionMode,
        run: WorkflowRun,
    ) -> BatchResult:
        """
        Execute a batch of copy tasks.

        Args:
            tasks: Tasks to run (mutated in place)
            target: Source/destination context shared by the batch
            mode: Sequential or bounded-parallel scheduling
            run: Workflow run context

        Returns:
            BatchResult with merged task outcomes
        """
        abort = self.abort = threading.Event()
        logger.info(
            f"Copy batch: {len(tasks)} {self.backend.kind}(s) "
            f"{target.source.name} -> {target.destination.name} ({mode.value})"
        )

        if mode == ExecutionMode.SEQUENTIAL or self.max_parallel <= 1:
            finished = [self._execute(task, target, run.dry_run, abort) for task in tasks]
        else:
            with ThreadPoolExecutor(max_workers=self.max_parallel) as pool:
                futures = [
                    pool.submit(self._execute, task, target, run.dry_run, abort)
                    for task in tasks
                ]
                finished = [f.result() for f in futures]

        result = BatchResult(tasks=finished)
        if run.dry_run:
            return result

        for task in result.tasks:
            if task.tag_warning:
                run.tag_warnings[task.destination_name] = list(task.tag_warning)

        if result.failed:
            result.orphans = self.detect_orphans(result.failed, target)
            run.orphans.extend(result.orphans)
            for task in result.not_started:
                logger.warning(f"Not started due to earlier failure: {task.destination_name}")
        elif target.failover_group_id:
            self.register_failover(result, target, run)

        return result

    def _execute(
        self, task: CopyTask, target: CopyTarget, dry_run: bool, abort: threading.Event
    ) -> CopyTask:
        if abort.is_set() and not dry_run:
            return task
        task.started = True
        name = task.destination_name

        if dry_run:
            try:
                existed = self.backend.exists(task, target)
            except RefreshError as e:
                logger.warning(f"DRY RUN: cannot check {name}: {e}")
                existed = False
            if existed:
                logger.info(f"DRY RUN: Would delete existing {self.backend.kind} {name}")
            logger.info(
                f"DRY RUN: Would copy {task.source.name} -> {target.destination.name}/{name}"
            )
            return task

        start = self.clock()
        try:
            self._delete_phase(task, target)
            self._initiate_phase(task, target)
            self._poll_phase(task, target, start)
            self._tag_phase(task, target)
            task.status = TaskStatus.SUCCEEDED
            logger.info(f"✓ Copy COMPLETED for {name} in {task.elapsed_minutes:.1f} min")
        except (CopyInitiationError, CopyTimeoutError) as e:
            self._mark_failed(task, str(e), start)
        except Exception as e:
            logger.exception(f"Unexpected error copying {name} at {task.phase}")
            self._mark_failed(task, f"Unexpected error: {e}", start)

        if task.status == TaskStatus.FAILED:
            abort.set()
        return task

    def _mark_failed(self, task: CopyTask, error: str, start: float) -> None:
        task.status = TaskStatus.FAILED
        task.error = error
        task.elapsed_minutes = (self.clock() - start) / 60
        phase = task.phase.value if task.phase else "Pending"
        logger.error(
            f"Copy FAILED for {task.destination_name} (phase={phase}, "
            f"elapsed={task.elapsed_minutes:.1f} min): {error}"
        )

    def _delete_phase(self, task: CopyTask, target: CopyTarget) -> None:
        task.phase = CopyPhase.DELETION
        name = task.destination_name
        if self.backend.supports_tags and self.tags:
            try:
                task.saved_tags = self.tags.capture(self.backend.destination_id(task, target))
            except ArmRequestError as e:
                logger.warning(f"Could not capture tags of {name}: {e}")
        try:
            task.destination_existed = self.backend.delete(task, target)
        except RefreshError as e:
            # Best effort: a failed delete surfaces as a copy conflict
            logger.warning(f"Delete of existing {name} failed: {e}")
            return
        if task.destination_existed:
            logger.info(f"Deleted existing {self.backend.kind} {name}")
        else:
            logger.debug(f"No existing {self.backend.kind} {name} to delete")

    def _initiate_phase(self, task: CopyTask, target: CopyTarget) -> None:
        task.phase = CopyPhase.INITIATION
        _, task.attempts = self.retry_policy.call(
            lambda: self.backend.start_copy(task, target),
            f"Copy of {task.source.name} to {task.destination_name}",
            sleep=self.sleep,
        )
        logger.info(f"Started copy: {task.source.name} -> {task.destination_name}")

    def _poll_phase(self, task: CopyTask, target: CopyTarget, start: float) -> None:
        task.phase = CopyPhase.POLLING
        budget = self.wait_budget(task, target.max_wait_minutes)
        ready, state, elapsed = self.wait_until_ready(
            lambda: self.backend.state(task, target),
            task.destination_name,
            budget,
            start=start,
        )
        task.elapsed_minutes = elapsed
        if ready:
            return
        if state == ResourceState.FAILED:
            raise CopyTimeoutError(f"Provider reported {state.value} after {elapsed:.1f} min")
        self.backend.cancel(task, target)
        raise CopyTimeoutError(f"Not ready after {elapsed:.1f} min (limit {budget:.0f} min)")

    def wait_until_ready(
        self,
        check: Callable[[], ResourceState],
        label: str,
        max_wait_minutes: float,
        start: Optional[float] = None,
    ) -> Tuple[bool, ResourceState, float]:
        """
        Poll `check` until Online, Failed or the wait is exhausted.

        Returns:
            (ready, last_state, elapsed_minutes)
        """
        start = self.clock() if start is None else start
        state = ResourceState.UNKNOWN
        while True:
            try:
                state = check()
            except RefreshError as e:
                logger.warning(f"Status check for {label} failed, retrying: {e}")
            elapsed = (self.clock() - start) / 60
            if state == ResourceState.ONLINE:
                return True, state, elapsed
            if state == ResourceState.FAILED:
                return False, state, elapsed
            if elapsed >= max_wait_minutes:
                logger.error(
                    f"Timeout waiting for {label} after {elapsed:.1f} min (state={state.value})"
                )
                return False, state, elapsed
            logger.info(f"  {label}: state={state.value} ({elapsed:.1f} min elapsed)")
            self.sleep(self.poll_interval)

    def _tag_phase(self, task: CopyTask, target: CopyTarget) -> None:
        if not (self.backend.supports_tags and self.tags):
            return
        task.phase = CopyPhase.TAG_RESTORE
        resource_id = self.backend.destination_id(task, target)
        try:
            outcome = self.tags.reconcile(
                resource_id, task.saved_tags, target.namespace, task.fallback_tags
            )
        except RefreshError as e:
            logger.error(f"Tag reconciliation failed for {task.destination_name}: {e}")
            task.tag_warning = [f"reconciliation error: {e}"]
            return
        if not outcome.complete:
            task.tag_warning = list(outcome.missing)
            incomplete = TagIncompleteWarning(task.destination_name, outcome.missing)
            logger.warning(str(incomplete))
            warnings.warn(incomplete, stacklevel=2)

    def detect_orphans(
        self, failed: List[CopyTask], target: CopyTarget
    ) -> List[OrphanedObject]:
        """
        Re-query failed destinations that may still complete provider-side.

        Returns:
            Destinations that exist even though their copy was declared failed
        """
        orphans: List[OrphanedObject] = []
        for task in failed:
            if task.phase not in (CopyPhase.INITIATION, CopyPhase.POLLING):
                continue
            try:
                present = self.backend.exists(task, target)
            except RefreshError as e:
                logger.error(f"Cannot verify existence of {task.destination_name}: {e}")
                present = True
            if present:
                logger.error(
                    f"ORPHANED: {task.destination_name} exists after a failed copy; "
                    "manual reconciliation required"
                )
                orphans.append(
                    OrphanedObject(
                        name=task.destination_name,
                        phase=task.phase.value,
                        error=task.error or "",
                    )
                )
        return orphans

    def register_failover(
        self, result: BatchResult, target: CopyTarget, run: WorkflowRun
    ) -> None:
        """Add every successfully copied non-system database to the failover group."""
        for task in result.succeeded:
            if is_system_object(task.destination_name):
                continue
            database_id = self.backend.destination_id(task, target)
            try:
                self.api.add_to_failover_group(target.failover_group_id, database_id)
                result.registered += 1
                logger.info(f"Registered {task.destination_name} in failover group")
            except RefreshError as e:
                result.registration_failures += 1
                logger.error(
                    f"Failed to register {task.destination_name} in failover group: {e}"
                )
        if result.registration_failures:
            run.failover_registration_failures += result.registration_failures
            run.warn(
                f"{result.registration_failures} database(s) could not be added to the failover group"
            )
