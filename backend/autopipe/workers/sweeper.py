"""Background sweep of runs that no client is polling anymore.

Runs only move when someone calls advance(). If every client walks away, a
run could sit in a stage forever; the sweeper advances each idle run so it
still completes, fails on a stale job, or re-kicks after a dead kickoff.

Only one worker sweeps at a time, enforced by a named scheduler lock.
"""

import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

from autopipe.orchestrator.errors import RunNotFound
from autopipe.orchestrator.service import Orchestrator

logger = logging.getLogger(__name__)

SWEEPER_LOCK_KEY = "stale-run-sweeper"


class SweepReport(BaseModel):
    acquired: bool
    examined: int = 0
    actions: dict[str, int] = {}
    errors: int = 0


async def sweep_stale_runs(
    orchestrator: Orchestrator,
    idle_seconds: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> SweepReport:
    """Advance every non-terminal run idle for longer than idle_seconds.

    Args:
        orchestrator: Orchestrator to advance runs through
        idle_seconds: Minimum age of the run's last write
        batch_size: Maximum runs examined per sweep

    Returns:
        Counts of advance actions taken; acquired=False if another worker
        holds the sweep lock
    """
    cfg = orchestrator.config
    idle_seconds = cfg.sweep_idle_seconds if idle_seconds is None else idle_seconds
    batch_size = cfg.sweep_batch_size if batch_size is None else batch_size
    locks = orchestrator.locks

    if not await locks.acquire_named(SWEEPER_LOCK_KEY, cfg.sweep_lock_seconds):
        logger.info("Sweep skipped, another worker holds %s", SWEEPER_LOCK_KEY)
        return SweepReport(acquired=False)

    report = SweepReport(acquired=True)
    try:
        idle_before = locks.clock() - timedelta(seconds=idle_seconds)
        runs = await orchestrator.store.list_idle(idle_before, batch_size)
        report.examined = len(runs)
        for run in runs:
            try:
                result = await orchestrator.advance(run.id)
            except RunNotFound:
                continue
            except Exception as e:
                # One broken run must not stall the rest of the sweep
                logger.error("Sweep advance of run %s failed: %s", run.id, e, exc_info=True)
                report.errors += 1
                continue
            report.actions[result.action] = report.actions.get(result.action, 0) + 1
    finally:
        await locks.release_named(SWEEPER_LOCK_KEY)

    if report.examined:
        logger.info("Swept %d idle runs: %s", report.examined, report.actions)
    return report
