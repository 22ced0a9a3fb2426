#!/usr/bin/env python3
"""
task_queue.py - Pending optimization tasks and their execution

A planned opportunity is either executed on the spot (auto-approve on AND
risk level "low") or parked in DaemonState.optimizations for manual review.

Executing a task, automatically or via `execute <n>`, always records the
outcome in history and removes the task from the pending list, whether the
command succeeded or not: a task is consumed exactly once.
"""

import logging
import subprocess
from typing import List, Optional

from command_executor import CommandExecutor, ExecResult, SpawnError, wrap_privileged
from opportunity_detector import OptimizationOpportunity
from state_store import (
    DaemonState,
    OptimizationTask,
    Plan,
    STATUS_EXECUTED,
    StateStore,
)

logger = logging.getLogger(__name__)


class TaskNotFoundError(LookupError):
    """No pending task at the requested position."""


def ensure_sudo_credentials() -> bool:
    """Prompt for the sudo password in the foreground so `sudo -n` can succeed."""
    try:
        return subprocess.run(["sudo", "-v"]).returncode == 0
    except OSError as e:
        logger.warning(f"sudo unavailable: {e}")
        return False


class TaskQueue:
    def __init__(
        self,
        store: StateStore,
        executor: CommandExecutor,
        command_timeout: Optional[float] = None
    ):
        self.store = store
        self.executor = executor
        self.command_timeout = command_timeout

    # -------------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------------

    def submit(
        self,
        state: DaemonState,
        opportunity: OptimizationOpportunity,
        plan: Plan
    ) -> Optional[ExecResult]:
        """Auto-execute a low-risk plan or enqueue it. Returns the result if executed."""
        task = OptimizationTask(
            type=opportunity.type,
            severity=opportunity.severity,
            description=opportunity.description,
            suggestion=opportunity.suggestion,
            plan=plan,
        )
        if state.auto_approve and plan.risk_level == "low":
            logger.info(f"Auto-approved low-risk optimization: {task.description}")
            return self.execute_task(state, task)

        state.optimizations.append(task)
        logger.warning(f"Optimization requires manual approval: {task.description}")
        self.store.save(state)
        return None

    def pending(self, state: DaemonState) -> List[OptimizationTask]:
        return state.pending_tasks()

    def clear(self, state: DaemonState) -> int:
        count = len(state.pending_tasks())
        state.optimizations = []
        self.store.save(state)
        logger.info(f"Cleared {count} pending optimizations")
        return count

    def set_auto_approve(self, state: DaemonState, enabled: bool) -> None:
        state.auto_approve = enabled
        self.store.save(state)
        logger.info(f"Auto-approve {'enabled' if enabled else 'disabled'}")

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_pending(self, state: DaemonState, index: int, interactive: bool = False) -> ExecResult:
        """Execute the index-th (1-based) task of the current pending list."""
        pending = self.pending(state)
        if not 1 <= index <= len(pending):
            raise TaskNotFoundError(f"No pending optimization #{index} (have {len(pending)})")
        task = pending[index - 1]
        if interactive and task.plan and task.plan.requires_sudo:
            logger.info("This command requires sudo privileges")
            ensure_sudo_credentials()
        return self.execute_task(state, task)

    def execute_task(self, state: DaemonState, task: OptimizationTask) -> ExecResult:
        command = task.plan.command if task.plan else ""
        try:
            if not command:
                result = SpawnError("task has no planned command")
            else:
                to_run = wrap_privileged(command) if task.plan.requires_sudo else command
                logger.info(f"Executing: {task.description}")
                result = self.executor.execute(to_run, timeout=self.command_timeout)
            state.store_optimization_memory(task.type, command, result.to_outcome())
        finally:
            task.status = STATUS_EXECUTED
            state.optimizations = [t for t in state.optimizations if t.task_id != task.task_id]
            self.store.save(state)
        return result
