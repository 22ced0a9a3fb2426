#!/usr/bin/env python3
"""
maintenance_daemon.py - Host maintenance daemon

Periodically profiles the machine, detects optimization opportunities, asks
the remote planning service for a command per opportunity, and queues the
plans for review (or runs low-risk ones when auto-approve is on).

Usage:
    hostkeeper start                 Run forever (one cycle now, then hourly)
    hostkeeper check                 Run a single maintenance cycle
    hostkeeper review                List pending optimizations
    hostkeeper execute <n>           Execute pending optimization n
    hostkeeper auto-approve on|off   Auto-run low-risk plans
    hostkeeper clear                 Drop all pending optimizations
    hostkeeper status                Collect and print the system profile
    hostkeeper history               Show recent execution outcomes
    hostkeeper stop                  Ask a running daemon to exit

Safety:
    - Only risk level "low" is ever auto-executed
    - Commands have a hard timeout; the whole process group is killed on expiry
    - Files under /etc/ referenced by a command are backed up first
    - A type whose recent commands keep failing is skipped (circuit breaker)
    - Kill switch: touch ~/.hostkeeper/daemon.kill to stop

Logs: ~/.hostkeeper/daemon.log    State: ~/.hostkeeper/state.json
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from circuit_breaker import should_skip
from command_executor import CommandExecutor
from daemon_config import DaemonConfig, load_config
from opportunity_detector import detect
from planner_gateway import PlannerGateway
from safety_net import SafetyNet
from state_store import DaemonState, StateStore
from task_queue import TaskNotFoundError, TaskQueue
from telemetry import TelemetryCollector

LOG_FORMAT = "[%(asctime)s][%(levelname)s] %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(log_file: Path, verbose: bool = False) -> None:
    """File gets everything (DEBUG when verbose); stdout only INFO and above."""
    stream = logging.StreamHandler(sys.stdout)
    stream.setLevel(logging.INFO)
    handlers: List[logging.Handler] = [stream]
    file_error = None
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        handlers.append(file_handler)
    except OSError as e:
        file_error = e

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
    # Keep HTTP client chatter out of the daemon log
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    if file_error:
        logger.warning(f"Cannot write log file {log_file}: {file_error}; logging to stdout only")


# =============================================================================
# MAINTENANCE CYCLE
# =============================================================================

@dataclass
class CycleReport:
    opportunities: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    unplanned: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class MaintenanceCycle:
    """Collect -> detect -> circuit breaker -> plan -> execute/enqueue -> persist."""

    def __init__(
        self,
        state: DaemonState,
        store: StateStore,
        collector: TelemetryCollector,
        gateway: PlannerGateway,
        queue: TaskQueue,
        enabled_optimizations: Optional[dict] = None
    ):
        self.state = state
        self.store = store
        self.collector = collector
        self.gateway = gateway
        self.queue = queue
        self.enabled_optimizations = enabled_optimizations
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def run(self) -> Optional[CycleReport]:
        """Run one full cycle. Never raises; returns None if skipped or aborted."""
        if self._in_progress:
            logger.warning("Previous maintenance cycle still running, skipping this one")
            return None
        self._in_progress = True
        try:
            return self._run()
        except Exception as e:
            logger.exception(f"Error in maintenance cycle: {e}")
            return None
        finally:
            self._in_progress = False

    def _run(self) -> CycleReport:
        logger.info("Starting maintenance cycle...")
        report = CycleReport()

        profile = self.collector.collect(self.state)
        used = profile.memory_used_ratio
        free_pct = (1 - used) * 100 if used is not None else 0.0
        logger.info(
            f"System: {profile.hostname} | Uptime: {profile.uptime / 3600:.1f}h | "
            f"Mem: {free_pct:.1f}% free | Disk: {profile.disk_usage}"
        )

        opportunities = detect(profile, self.enabled_optimizations)
        if not opportunities:
            logger.info("System is running optimally, no actions needed")
            self.store.save(self.state)
            return report
        logger.info(f"Found {len(opportunities)} optimization opportunities")

        for opp in opportunities:
            report.opportunities.append(opp.type)
            try:
                logger.info(f"Opportunity: {opp.description} ({opp.severity})")
                if should_skip(self.state.optimization_history, opp.type):
                    report.skipped.append(opp.type)
                    continue

                plan = self.gateway.plan(opp, profile)
                if plan is None:
                    report.unplanned.append(opp.type)
                    continue

                result = self.queue.submit(self.state, opp, plan)
                if result is None:
                    report.queued.append(opp.type)
                else:
                    report.executed.append(opp.type)
            except Exception as e:
                logger.exception(f"Failed to handle {opp.type} opportunity: {e}")
                report.errors.append(opp.type)

        self.store.save(self.state)
        if report.queued:
            logger.info(f"{len(report.queued)} optimizations queued for review")
            logger.info("Review with: hostkeeper review")
        return report


# =============================================================================
# DAEMON LOOP
# =============================================================================

def check_kill_switch(kill_file: Path) -> bool:
    return kill_file.exists()


def clear_kill_switch(kill_file: Path) -> None:
    if kill_file.exists():
        kill_file.unlink()


def run_forever(
    cycle: MaintenanceCycle,
    interval: float,
    kill_file: Path,
    stop_event: Optional[threading.Event] = None,
    poll_interval: float = 5.0
) -> None:
    """Run a cycle now and then every `interval` seconds until stopped.

    Ticks missed while a cycle overran are dropped, never run back-to-back.
    """
    if interval <= 0:
        raise ValueError(f"Check interval must be positive, got {interval!r}")
    stop = stop_event or threading.Event()
    next_run = time.monotonic()

    while not stop.is_set():
        if check_kill_switch(kill_file):
            logger.warning("Kill switch activated, stopping daemon")
            clear_kill_switch(kill_file)
            return

        now = time.monotonic()
        if now >= next_run:
            cycle.run()
            next_run += interval
            finished = time.monotonic()
            if finished >= next_run:
                missed = int((finished - next_run) // interval) + 1
                logger.warning(f"Maintenance cycle overran its interval, skipping {missed} tick(s)")
                next_run += missed * interval
            continue

        stop.wait(min(poll_interval, next_run - now))

    logger.info("Daemon stopped")


# =============================================================================
# WIRING
# =============================================================================

@dataclass
class Daemon:
    config: DaemonConfig
    store: StateStore
    state: DaemonState
    executor: CommandExecutor
    queue: TaskQueue
    collector: TelemetryCollector
    gateway: PlannerGateway

    def cycle(self) -> MaintenanceCycle:
        return MaintenanceCycle(
            state=self.state,
            store=self.store,
            collector=self.collector,
            gateway=self.gateway,
            queue=self.queue,
            enabled_optimizations=self.config.daemon.enabled_optimizations,
        )


def build_daemon(config: DaemonConfig) -> Daemon:
    store = StateStore(
        config.paths.state_path,
        defaults=DaemonState(auto_approve=config.daemon.auto_approve)
    )
    state = store.load()

    executor = CommandExecutor(shell=config.execution.shell, default_timeout=config.execution.command_timeout)
    if config.safety.backup_before_modification:
        executor.add_hook(SafetyNet(config.safety.protected_prefixes).before_execute)

    return Daemon(
        config=config,
        store=store,
        state=state,
        executor=executor,
        queue=TaskQueue(store, executor, config.execution.command_timeout),
        collector=TelemetryCollector(executor, store, config.execution.probe_timeout),
        gateway=PlannerGateway.from_config(config),
    )


# =============================================================================
# CLI
# =============================================================================

def print_review(daemon: Daemon) -> None:
    pending = daemon.queue.pending(daemon.state)
    if not pending:
        print("\nNo pending optimizations\n")
        return

    print(f"\n{len(pending)} Pending Optimizations:\n")
    for i, opt in enumerate(pending, 1):
        print(f"{i}. [{opt.severity.upper()}] {opt.description}")
        print(f"   Type: {opt.type}")
        print(f"   Suggestion: {opt.suggestion}")
        if opt.plan:
            print(f"   Command: {opt.plan.command[:80]}")
            print(f"   Risk: {opt.plan.risk_level} | Sudo: {opt.plan.requires_sudo}")
            if opt.plan.script and opt.plan.script.path:
                print(f"   Script: {opt.plan.script.path}")
        print("")

    print("To execute an optimization:")
    print("  hostkeeper execute <number>")
    print("\nTo enable auto-approve for low-risk plans (use with caution):")
    print("  hostkeeper auto-approve on\n")


def print_history(daemon: Daemon, limit: int) -> None:
    entries = daemon.state.optimization_history[-limit:]
    if not entries:
        print("No optimization history")
        return
    for entry in entries:
        mark = "OK  " if entry.outcome.success else "FAIL"
        print(f"{entry.timestamp} {mark} [{entry.type}] {entry.command[:80]}")
        if not entry.outcome.success and entry.outcome.error:
            print(f"    {entry.outcome.error[:160]}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostkeeper",
        description="Host maintenance daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.hostkeeper/config.yaml)")
    parser.add_argument("--state-file", type=Path, help="State file override")
    parser.add_argument("--verbose", "-v", action="store_true", help="Write DEBUG records to the log file")

    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.add_parser("start", help="Run the daemon continuously")
    sub.add_parser("check", help="Run a single maintenance cycle")
    sub.add_parser("review", help="Review pending optimizations")
    execute = sub.add_parser("execute", help="Execute a pending optimization")
    execute.add_argument("number", type=int, help="Position in the review list (1-based)")
    auto = sub.add_parser("auto-approve", help="Toggle auto-approval of low-risk plans")
    auto.add_argument("mode", choices=["on", "off"])
    sub.add_parser("clear", help="Drop all pending optimizations")
    sub.add_parser("status", help="Show current system status")
    history = sub.add_parser("history", help="Show recent execution outcomes")
    history.add_argument("--limit", type=int, default=10)
    sub.add_parser("stop", help="Signal a running daemon to exit")
    return parser


def dispatch(args: argparse.Namespace, config: DaemonConfig) -> int:
    daemon = build_daemon(config)

    if args.command == "start":
        logger.info("Maintenance daemon starting...")
        clear_kill_switch(config.paths.kill_path)
        stop = threading.Event()

        def _handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            stop.set()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)
        logger.info(f"Daemon running (checking every {config.daemon.check_interval / 60:g} minutes)")
        logger.info(f"Logs: tail -f {config.paths.log_path}")
        run_forever(daemon.cycle(), config.daemon.check_interval, config.paths.kill_path, stop)
        return 0

    if args.command == "check":
        daemon.cycle().run()
        return 0

    if args.command == "review":
        print_review(daemon)
        return 0

    if args.command == "execute":
        try:
            result = daemon.queue.execute_pending(daemon.state, args.number, interactive=True)
        except TaskNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if result.success:
            print(f"\nOptimization succeeded:\n{result.output}")
        else:
            print(f"\nOptimization failed:\n{result}")
        return 0

    if args.command == "auto-approve":
        daemon.queue.set_auto_approve(daemon.state, args.mode == "on")
        print(f"Auto-approve {'enabled' if daemon.state.auto_approve else 'disabled'}")
        return 0

    if args.command == "clear":
        count = daemon.queue.clear(daemon.state)
        print(f"Cleared {count} pending optimizations")
        return 0

    if args.command == "status":
        profile = daemon.collector.collect(daemon.state)
        print(json.dumps(profile.to_dict(), indent=2))
        return 0

    if args.command == "history":
        print_history(daemon, args.limit)
        return 0

    if args.command == "stop":
        kill_file = config.paths.kill_path
        kill_file.parent.mkdir(parents=True, exist_ok=True)
        kill_file.touch()
        print(f"Kill switch set: {kill_file}")
        return 0

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config)
        if args.state_file:
            config.paths.state_file = str(args.state_file)
        verbose = args.verbose or config.logging.verbose
        setup_logging(config.paths.log_path, verbose)
        return dispatch(args, config)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
