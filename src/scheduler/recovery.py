"""
Recovery Manager for the automation hub.

- Seals runs left open by a crash or forced shutdown
- Prunes expired dedup keys, deliveries and run history (retention)

Nothing else needs repair after a crash: per-item commits are atomic, so an
interrupted item simply never happened and the next run picks it up from the
watermark. An escalation record opened without a task link is completed by
the next escalation of the same key.

Recovery is idempotent: running multiple times produces same result.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from .entities import RunOutcome, utc_now
from .persistence import StateStore


logger = logging.getLogger(__name__)

INTERRUPTED_SUMMARY = "Interrupted by restart before the run was sealed"


@dataclass(frozen=True)
class RetentionPolicy:
    """How long the store keeps replay-protection keys and history."""

    dedup_days: int = 30
    delivery_days: int = 7
    runs_per_workflow: int = 200
    run_days: int = 90


class RecoveryManager:
    """
    Handles crash recovery on startup and periodic retention pruning.
    """

    def __init__(self, store: StateStore, retention: RetentionPolicy = RetentionPolicy()):
        """
        Initialize RecoveryManager.

        Args:
            store: StateStore to repair and prune
            retention: Retention windows
        """
        self.store = store
        self.retention = retention

    def recover_on_startup(self) -> dict:
        """
        Perform full recovery on hub startup.

        1. Seal unsealed runs as `error`
        2. Prune expired state

        Returns:
            Recovery statistics
        """
        stats = {
            "runs_sealed": 0,
            "dedup_keys_pruned": 0,
            "deliveries_pruned": 0,
            "runs_pruned": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        try:
            stats["runs_sealed"] = self._seal_interrupted_runs()
        except Exception as e:
            logger.error(f"Error sealing interrupted runs: {e}")
            stats["errors"].append(f"Runs: {e}")

        pruned = self.prune_expired()
        stats["errors"].extend(pruned.pop("errors"))
        stats.update(pruned)

        logger.info(
            f"Recovery complete: "
            f"{stats['runs_sealed']} interrupted runs sealed, "
            f"{stats['dedup_keys_pruned']} dedup keys, "
            f"{stats['deliveries_pruned']} deliveries and "
            f"{stats['runs_pruned']} runs pruned"
        )

        return stats

    def _seal_interrupted_runs(self) -> int:
        """
        Seal every run that has no outcome.

        Only called before the scheduler starts, so no unsealed run can
        still be executing.
        """
        sealed = 0
        for run in self.store.list_unsealed_runs():
            logger.info(f"Sealing interrupted run {run.run_id} (workflow '{run.workflow_id}')")
            run.outcome = RunOutcome.ERROR
            run.error_summary = INTERRUPTED_SUMMARY
            self.store.seal_run(run)
            sealed += 1
        return sealed

    def prune_expired(self) -> dict:
        """
        Apply retention windows.

        Also run periodically by the Scheduler's maintenance hook.

        Returns:
            Pruning statistics
        """
        now = utc_now()
        stats = {
            "dedup_keys_pruned": 0,
            "deliveries_pruned": 0,
            "runs_pruned": 0,
            "errors": [],
        }

        try:
            stats["dedup_keys_pruned"] = self.store.prune_dedup_keys(
                now - timedelta(days=self.retention.dedup_days)
            )
        except Exception as e:
            logger.error(f"Error pruning dedup keys: {e}")
            stats["errors"].append(f"Dedup keys: {e}")

        try:
            stats["deliveries_pruned"] = self.store.prune_deliveries(
                now - timedelta(days=self.retention.delivery_days)
            )
        except Exception as e:
            logger.error(f"Error pruning deliveries: {e}")
            stats["errors"].append(f"Deliveries: {e}")

        try:
            stats["runs_pruned"] = self.store.prune_runs(
                keep_per_workflow=self.retention.runs_per_workflow,
                older_than=now - timedelta(days=self.retention.run_days),
            )
        except Exception as e:
            logger.error(f"Error pruning runs: {e}")
            stats["errors"].append(f"Runs: {e}")

        if any(stats[key] for key in ("dedup_keys_pruned", "deliveries_pruned", "runs_pruned")):
            logger.info(
                f"Retention: pruned {stats['dedup_keys_pruned']} dedup keys, "
                f"{stats['deliveries_pruned']} deliveries, {stats['runs_pruned']} runs"
            )

        return stats
