"""
Workflow coordinator for a self-service environment refresh.

Runs discovery, grants elevated access, walks the ordered stage pipeline and
always revokes access at the end. Dry run records every problem and keeps
going; execute mode stops at the first failed stage with no rollback.
"""

import json
import logging
import os
import time
from datetime import datetime
from typing import Callable, Optional

from clients import AzureRestClient
from config import RefreshConfig
from errors import DiscoveryError, ElevatedAccessError, RefreshError, StageError
from models import StageStatus, WorkflowRun
from permissions import ElevatedAccess
from stages import RefreshContext, RefreshStages, SkipStage

logger = logging.getLogger(__name__)

DISCOVER_STAGE = "discover-topology"
GRANT_STAGE = "grant-elevated-access"
REVOKE_STAGE = "revoke-elevated-access"


class WorkflowCoordinator:
    """Sequences the refresh stages with uniform dry-run handling."""

    def __init__(
        self,
        config: RefreshConfig,
        api=None,
        stages: Optional[RefreshStages] = None,
        access: Optional[ElevatedAccess] = None,
        report_dir: Optional[str] = ".",
    ):
        """
        Args:
            config: Validated refresh configuration
            api: AzureRestClient; created for the configured cloud if omitted
            stages: Stage implementations
            access: Elevated access manager
            report_dir: Where to write the JSON run report (None disables it)
        """
        self.config = config
        self.api = api or AzureRestClient(cloud=config.cloud)
        self.stages = stages or RefreshStages(config, self.api)
        self.access = access or ElevatedAccess(
            self.api, config.principal_id, config.role_definition_ids
        )
        self.report_dir = report_dir

    def run(self) -> WorkflowRun:
        """
        Run the full refresh.

        Returns:
            The completed WorkflowRun

        Raises:
            StageError: In execute mode, for the first stage that failed
        """
        cfg = self.config
        run = WorkflowRun(dry_run=cfg.dry_run)
        run.start_time = time.time()
        ctx = RefreshContext(config=cfg, run=run, restore_point=cfg.resolve_restore_point())

        logger.info("=" * 70)
        logger.info(
            f"Environment refresh ({'DRY RUN' if cfg.dry_run else 'EXECUTE'}): "
            f"{cfg.source}/{cfg.source_namespace} -> {cfg.destination}/{cfg.destination_namespace}"
        )
        logger.info("=" * 70)

        try:
            if not self._run_stage(ctx, DISCOVER_STAGE, self.stages.discover):
                for name, _ in self.stages.pipeline():
                    run.record(name, StageStatus.SKIPPED, "discovery failed")
                return run
            self._grant(ctx)
            for name, stage in self.stages.pipeline():
                self._run_stage(ctx, name, stage)
        finally:
            self._revoke(ctx)
            run.end_time = time.time()
            self._print_report(run)
            if self.report_dir is not None:
                self._export_results_json(run)
        return run

    def _run_stage(
        self, ctx: RefreshContext, name: str, stage: Callable[[RefreshContext], str]
    ) -> bool:
        """
        Run one stage and record its result.

        Returns:
            False when the stage failed in dry run

        Raises:
            StageError: When the stage failed in execute mode
        """
        logger.info("")
        logger.info(f"--- {name} ---")
        try:
            detail = stage(ctx)
        except SkipStage as e:
            logger.info(f"Skipping {name}: {e}")
            ctx.run.record(name, StageStatus.SKIPPED, str(e))
            return True
        except RefreshError as e:
            ctx.run.record(name, StageStatus.FAILED, str(e))
            message = e.diagnosis() if isinstance(e, DiscoveryError) else str(e)
            if ctx.dry_run:
                logger.error(f"DRY RUN: {name} would fail: {message}")
                ctx.run.fail(f"{name}: {e}")
                return False
            logger.error(f"Stage {name} FAILED: {message}")
            raise StageError(name, e) from e

        status = StageStatus.PLANNED if ctx.dry_run else StageStatus.SUCCEEDED
        ctx.run.record(name, status, detail)
        logger.info(f"{name}: {detail}")
        return True

    def _grant(self, ctx: RefreshContext) -> None:
        if not self.config.principal_id:
            message = "no principal configured; using the caller's own permissions"
            logger.warning(message)
            ctx.run.warn(message)
            ctx.run.record(GRANT_STAGE, StageStatus.SKIPPED, message)
            return
        scopes = ElevatedAccess.scopes(
            [
                ctx.source_server,
                ctx.destination_server,
                ctx.secondary_server,
                ctx.source_storage,
                ctx.destination_storage,
            ]
        )
        self._run_stage(
            ctx,
            GRANT_STAGE,
            lambda c: f"{self.access.grant(scopes, c.dry_run)} role assignment(s) on {len(scopes)} scope(s)",
        )

    def _revoke(self, ctx: RefreshContext) -> None:
        """Revoke whatever was granted; never raises so the original outcome survives."""
        if not self.config.principal_id:
            ctx.run.record(REVOKE_STAGE, StageStatus.SKIPPED, "no principal configured")
            return
        logger.info("")
        logger.info(f"--- {REVOKE_STAGE} ---")
        try:
            removed = self.access.revoke()
        except ElevatedAccessError as e:
            logger.error(f"Stage {REVOKE_STAGE} FAILED: {e}")
            ctx.run.record(REVOKE_STAGE, StageStatus.FAILED, str(e))
            if ctx.dry_run:
                ctx.run.fail(f"{REVOKE_STAGE}: {e}")
            return
        status = StageStatus.PLANNED if ctx.dry_run else StageStatus.SUCCEEDED
        ctx.run.record(REVOKE_STAGE, status, f"{removed} role assignment(s) revoked")

    @staticmethod
    def _format_duration(seconds: float) -> str:
        if seconds < 60:
            return f"{seconds:.1f}s"
        if seconds < 3600:
            return f"{seconds / 60:.1f}m"
        return f"{seconds / 3600:.1f}h"

    def _print_report(self, run: WorkflowRun) -> None:
        """Print the stage table and every surfaced problem."""
        duration = (run.end_time or time.time()) - (run.start_time or time.time())

        logger.info("")
        logger.info("=" * 70)
        logger.info(f"REFRESH REPORT{' (DRY RUN)' if run.dry_run else ''}")
        logger.info("=" * 70)
        logger.info(f"Total duration:  {self._format_duration(duration)}")

        logger.info("")
        logger.info("STAGES")
        logger.info("-" * 40)
        for stage in run.stages:
            logger.info(f"{stage.name:<32} {stage.status.value:<10} {stage.detail}")

        if run.failures:
            logger.info("")
            logger.warning(f"DRY RUN FOUND {len(run.failures)} PROBLEM(S)")
            logger.warning("-" * 40)
            for failure in run.failures:
                logger.warning(f"  {failure}")

        if run.warnings:
            logger.info("")
            logger.warning("WARNINGS")
            logger.warning("-" * 40)
            for warning in run.warnings:
                logger.warning(f"  {warning}")

        if run.orphans:
            logger.info("")
            logger.error("ORPHANED OBJECTS (manual reconciliation required)")
            logger.error("-" * 40)
            for orphan in run.orphans:
                logger.error(f"  {orphan.name} (failed at {orphan.phase}): {orphan.error}")

        if run.tag_warnings:
            logger.info("")
            logger.warning("INCOMPLETE TAGS")
            logger.warning("-" * 40)
            for name, missing in sorted(run.tag_warnings.items()):
                logger.warning(f"  {name}: missing {', '.join(missing)}")

        if run.failover_registration_failures:
            logger.warning(
                f"Failover group registration failures: {run.failover_registration_failures}"
            )

        logger.info("")
        logger.info(f"Result: {'FAILED' if run.exit_code else 'OK'}")
        logger.info("=" * 70)

    def _export_results_json(self, run: WorkflowRun) -> str:
        """Export the run to a JSON file for further processing."""
        cfg = self.config
        report = {
            "source": cfg.source,
            "destination": cfg.destination,
            "source_namespace": cfg.source_namespace,
            "destination_namespace": cfg.destination_namespace,
            "dry_run": run.dry_run,
            "start_time": datetime.fromtimestamp(run.start_time).isoformat() if run.start_time else None,
            "end_time": datetime.fromtimestamp(run.end_time).isoformat() if run.end_time else None,
            "exit_code": run.exit_code,
            "stages": [
                {"name": s.name, "status": s.status.value, "detail": s.detail}
                for s in run.stages
            ],
            "failures": run.failures,
            "warnings": run.warnings,
            "orphans": [
                {"name": o.name, "phase": o.phase, "error": o.error} for o in run.orphans
            ],
            "tag_warnings": run.tag_warnings,
            "failover_registration_failures": run.failover_registration_failures,
            "restored_databases": run.restored_databases,
            "copied_databases": run.copied_databases,
        }

        filename = os.path.join(
            self.report_dir, f"refresh-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json"
        )
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
        return filename
