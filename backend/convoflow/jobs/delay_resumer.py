# /convoflow/jobs/delay_resumer.py

"""
Delayed execution resumer.

DELAY steps never sleep inside a runner: the engine checkpoints a resume_at
timestamp and returns. This job scans for RUNNING executions whose resume_at
has passed and re-invokes the engine for each one. Because the timestamp is
durable, a restart during a delay only postpones the resumption to the next
scan.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from convoflow.workflows.errors import (
    ConcurrentExecutionError,
    StepExecutionError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


async def resume_due_executions(engine, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
    """
    Resume every execution whose delay has elapsed.

    Args:
        engine: The ExecutionEngine to drive
        now: Reference time (defaults to the current UTC time)
        limit: Maximum executions picked up per scan

    Returns:
        Counts of resumed, busy (held by another runner) and failed executions
    """
    now = now or datetime.now(timezone.utc)
    summary = {"resumed": 0, "busy": 0, "failed": 0}

    execution_ids = await engine.store.find_due_executions(now, limit)
    if not execution_ids:
        logger.debug("No delayed executions are due.")
        return summary

    logger.info(f"Found {len(execution_ids)} delayed executions to resume.")

    for execution_id in execution_ids:
        try:
            result = await engine.execute_flow(execution_id)
            summary["resumed"] += 1
            logger.info(f"Resumed execution {execution_id}, status: {result.status.value}")
        except ConcurrentExecutionError:
            summary["busy"] += 1
            logger.info(f"Execution {execution_id} is already being run, skipping.")
        except StepExecutionError as e:
            summary["failed"] += 1
            logger.warning(f"Resumed execution {execution_id} failed at step {e.step_id}: {e.cause}")
        except WorkflowError as e:
            summary["failed"] += 1
            logger.error(f"Failed to resume execution {execution_id}: {e}", exc_info=True)
        except Exception as e:
            # Count it and move on to the executions queued behind it
            summary["failed"] += 1
            logger.error(f"Unexpected error resuming execution {execution_id}: {e}", exc_info=True)

    return summary
