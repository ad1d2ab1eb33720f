"""
Capacity admission control for copy batches targeting an elastic pool.

The check is a point-in-time snapshot; concurrent external activity on the
same pool can still race with it.
"""

import logging
from typing import Dict, Iterable, List, Optional

from errors import CapacityError
from models import CapacityReport, CopyTask, WorkflowRun

logger = logging.getLogger(__name__)

SAFETY_MARGIN_RATIO = 0.10
GB = 1024**3


def format_bytes(value: int) -> str:
    return f"{value / GB:.2f} GB"


def build_report(
    pool_max_bytes: int,
    current_usage_bytes: int,
    incoming_bytes: int,
    reclaimed_bytes: int,
    safety_ratio: float = SAFETY_MARGIN_RATIO,
) -> CapacityReport:
    """
    Project pool usage after a batch and decide admission.

    Args:
        pool_max_bytes: Pool storage limit
        current_usage_bytes: Sum of current member sizes
        incoming_bytes: Sum of source object sizes
        reclaimed_bytes: Sum of destination object sizes deleted before copy
        safety_ratio: Fraction of the pool that must remain free

    Returns:
        CapacityReport
    """
    net_change = incoming_bytes - reclaimed_bytes
    projected_usage = current_usage_bytes + net_change
    projected_free = pool_max_bytes - projected_usage
    threshold = int(pool_max_bytes * safety_ratio)

    reason = ""
    if projected_free < 0:
        reason = (
            f"projected usage {format_bytes(projected_usage)} exceeds pool maximum "
            f"{format_bytes(pool_max_bytes)}"
        )
    elif projected_free < threshold:
        reason = (
            f"projected free space {format_bytes(projected_free)} is below the "
            f"{safety_ratio:.0%} safety margin ({format_bytes(threshold)})"
        )

    return CapacityReport(
        pool_max_bytes=pool_max_bytes,
        current_usage_bytes=current_usage_bytes,
        source_batch_bytes=incoming_bytes,
        destination_batch_bytes_to_free=reclaimed_bytes,
        projected_usage_bytes=projected_usage,
        projected_free_bytes=projected_free,
        safety_threshold_bytes=threshold,
        passed=projected_free >= 0 and projected_free >= threshold,
        reason=reason,
    )


class CapacityAdmissionController:
    """Gates copy batches on the free space of a shared elastic pool."""

    def __init__(self, api, safety_ratio: float = SAFETY_MARGIN_RATIO):
        self.api = api
        self.safety_ratio = safety_ratio

    def measure(self, resource_id: str) -> int:
        """Size of one object; unmeasurable objects count as zero."""
        if not resource_id:
            return 0
        size = self.api.get_database_size_bytes(resource_id)
        if size is None:
            logger.debug(f"Size of {resource_id} not measurable yet, counting as 0")
            return 0
        return size

    def pool_usage(self, pool_id: str, databases: Iterable[Dict]) -> int:
        """Sum the sizes of every database that is a member of the pool."""
        total = 0
        for db in databases:
            member_pool = (db.get("properties") or {}).get("elasticPoolId") or ""
            if member_pool.lower() != pool_id.lower():
                continue
            total += self.measure(db.get("id", ""))
        return total

    def evaluate(
        self,
        pool: Dict,
        tasks: List[CopyTask],
        destination_databases: List[Dict],
    ) -> CapacityReport:
        """
        Build the capacity report for a batch.

        Args:
            pool: Elastic pool resource (needs `id` and `properties.maxSizeBytes`)
            tasks: Pending copy tasks; source sizes are measured when unset
            destination_databases: All databases on the destination server

        Returns:
            CapacityReport
        """
        pool_id = pool.get("id", "")
        pool_max = int((pool.get("properties") or {}).get("maxSizeBytes") or 0)

        by_name = {db.get("name"): db for db in destination_databases}

        incoming = 0
        reclaimed = 0
        for task in tasks:
            if not task.source.size_bytes:
                task.source.size_bytes = self.measure(task.source.resource_id)
            incoming += task.source.size_bytes
            existing = by_name.get(task.destination_name)
            if existing:
                reclaimed += self.measure(existing.get("id", ""))

        current = self.pool_usage(pool_id, destination_databases)
        report = build_report(pool_max, current, incoming, reclaimed, self.safety_ratio)
        self.log_report(pool.get("name", pool_id), report)
        return report

    def log_report(self, pool_name: str, report: CapacityReport) -> None:
        logger.info(f"Capacity check for pool {pool_name}:")
        logger.info(f"  Pool maximum:       {format_bytes(report.pool_max_bytes)}")
        logger.info(f"  Current usage:      {format_bytes(report.current_usage_bytes)}")
        logger.info(f"  Incoming (source):  {format_bytes(report.source_batch_bytes)}")
        logger.info(
            f"  Reclaimed (dest):   {format_bytes(report.destination_batch_bytes_to_free)}"
        )
        logger.info(f"  Projected usage:    {format_bytes(report.projected_usage_bytes)}")
        logger.info(f"  Projected free:     {format_bytes(report.projected_free_bytes)}")
        logger.info(f"  Safety threshold:   {format_bytes(report.safety_threshold_bytes)}")
        if report.passed:
            logger.info("  Result:             PASSED")
        else:
            logger.error(f"  Result:             FAILED - {report.reason}")

    def admit(
        self, report: CapacityReport, run: WorkflowRun, label: Optional[str] = None
    ) -> bool:
        """
        Apply the admission decision.

        In dry run a failure is recorded on the run and simulation continues.
        In execute mode it raises before any destructive action.

        Raises:
            CapacityError: In execute mode when the report did not pass
        """
        if report.passed:
            return True
        message = f"Capacity check failed{f' for {label}' if label else ''}: {report.reason}"
        if run.dry_run:
            logger.warning(f"DRY RUN: {message}")
            run.fail(message)
            return False
        raise CapacityError(message, report=report)
