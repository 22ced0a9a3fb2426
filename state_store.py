#!/usr/bin/env python3
"""
state_store.py - Crash-safe persistence of daemon state

Holds the data model shared by every component (system profile, pending
optimization tasks, outcome history, settings) and the StateStore that
reads it from and writes it to a single JSON document.

Writes are atomic: the state is serialized to a temp file in the same
directory and renamed over the canonical path, so a reader (or a crash)
never sees a half-written file.

Usage:
    from state_store import StateStore
    store = StateStore(Path("~/.hostkeeper/state.json").expanduser())
    state = store.load()
    state.auto_approve = True
    store.save(state)
"""

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
STATUS_PENDING = "pending"
STATUS_EXECUTED = "executed"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pick(data: Dict[str, Any], key: str, default, expected_type):
    """Return data[key] when it has the expected type, else the default."""
    value = data.get(key, default)
    if value is None:
        return default
    if expected_type is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if expected_type is int and isinstance(value, bool):
        return default
    if not isinstance(value, expected_type):
        logger.warning(f"Ignoring state field {key!r}: expected {expected_type.__name__}, got {type(value).__name__}")
        return default
    return value


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass
class SystemProfile:
    """Point-in-time snapshot of the host. Replaced wholesale on each collection."""

    hostname: str = ""
    platform: str = ""
    arch: str = ""
    release: str = ""
    uptime: float = 0.0
    total_mem: int = 0
    free_mem: int = 0
    cpus: int = 0
    load_avg: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    # Raw probe output; "unavailable" when a probe failed
    disk_usage: str = ""
    upgradable_packages: str = ""
    docker_status: str = ""
    kernel_version: str = ""
    node_version: str = ""
    python_version: str = ""
    collected_at: Optional[str] = None

    @property
    def memory_used_ratio(self) -> Optional[float]:
        if self.total_mem <= 0:
            return None
        return (self.total_mem - self.free_mem) / self.total_mem

    @property
    def disk_percent(self) -> Optional[int]:
        text = self.disk_usage.strip().rstrip("%")
        try:
            return int(text)
        except ValueError:
            return None

    @property
    def docker_active(self) -> bool:
        lines = self.docker_status.strip().splitlines()
        return bool(lines) and lines[0].strip() == "active"

    @property
    def upgradable_count(self) -> Optional[int]:
        try:
            return int(self.upgradable_packages.strip())
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemProfile":
        default = cls()
        load_avg = data.get("load_avg")
        if not (isinstance(load_avg, list) and all(isinstance(v, (int, float)) for v in load_avg)):
            load_avg = default.load_avg
        return cls(
            hostname=_pick(data, "hostname", default.hostname, str),
            platform=_pick(data, "platform", default.platform, str),
            arch=_pick(data, "arch", default.arch, str),
            release=_pick(data, "release", default.release, str),
            uptime=_pick(data, "uptime", default.uptime, float),
            total_mem=_pick(data, "total_mem", default.total_mem, int),
            free_mem=_pick(data, "free_mem", default.free_mem, int),
            cpus=_pick(data, "cpus", default.cpus, int),
            load_avg=[float(v) for v in load_avg],
            disk_usage=_pick(data, "disk_usage", default.disk_usage, str),
            upgradable_packages=_pick(data, "upgradable_packages", default.upgradable_packages, str),
            docker_status=_pick(data, "docker_status", default.docker_status, str),
            kernel_version=_pick(data, "kernel_version", default.kernel_version, str),
            node_version=_pick(data, "node_version", default.node_version, str),
            python_version=_pick(data, "python_version", default.python_version, str),
            collected_at=_pick(data, "collected_at", None, str),
        )


@dataclass
class GeneratedScript:
    """Auxiliary remediation script attached to a plan. Never executed directly."""

    filename: str
    code: str
    explanation: str = ""
    path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeneratedScript":
        return cls(
            filename=_pick(data, "filename", "", str),
            code=_pick(data, "code", "", str),
            explanation=_pick(data, "explanation", "", str),
            path=_pick(data, "path", None, str),
        )


@dataclass
class Plan:
    """Concrete remediation for an opportunity, as returned by the planner."""

    command: str
    reasoning: str = ""
    risk_level: str = "unknown"
    requires_sudo: bool = False
    search_insights: Optional[str] = None
    script: Optional[GeneratedScript] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        script = data.get("script")
        return cls(
            command=_pick(data, "command", "", str),
            reasoning=_pick(data, "reasoning", "", str),
            risk_level=_pick(data, "risk_level", "unknown", str),
            requires_sudo=_pick(data, "requires_sudo", False, bool),
            search_insights=_pick(data, "search_insights", None, str),
            script=GeneratedScript.from_dict(script) if isinstance(script, dict) else None,
        )


@dataclass
class OptimizationTask:
    type: str
    severity: str
    description: str
    suggestion: str
    plan: Optional[Plan] = None
    status: str = STATUS_PENDING
    created_at: str = field(default_factory=utc_now)
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizationTask":
        plan = data.get("plan")
        task = cls(
            type=_pick(data, "type", "unknown", str),
            severity=_pick(data, "severity", "low", str),
            description=_pick(data, "description", "", str),
            suggestion=_pick(data, "suggestion", "", str),
            plan=Plan.from_dict(plan) if isinstance(plan, dict) else None,
            status=_pick(data, "status", STATUS_PENDING, str),
            created_at=_pick(data, "created_at", utc_now(), str),
        )
        task_id = data.get("task_id")
        if isinstance(task_id, str) and task_id:
            task.task_id = task_id
        return task


@dataclass
class ExecutionOutcome:
    """Result of one execution attempt, folded into a history entry."""

    success: bool
    output: str = ""
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionOutcome":
        return cls(
            success=_pick(data, "success", False, bool),
            output=_pick(data, "output", "", str),
            error=_pick(data, "error", None, str),
        )


@dataclass
class OptimizationHistoryEntry:
    type: str
    command: str
    outcome: ExecutionOutcome
    timestamp: str = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizationHistoryEntry":
        outcome = data.get("outcome")
        return cls(
            type=_pick(data, "type", "unknown", str),
            command=_pick(data, "command", "", str),
            outcome=ExecutionOutcome.from_dict(outcome if isinstance(outcome, dict) else {}),
            timestamp=_pick(data, "timestamp", utc_now(), str),
        )


@dataclass
class DaemonState:
    """Aggregate root persisted as one JSON document.

    Invariants: ``optimizations`` only holds pending tasks, and
    ``optimization_history`` never grows past HISTORY_LIMIT entries.
    """

    system_profile: Optional[SystemProfile] = None
    optimizations: List[OptimizationTask] = field(default_factory=list)
    optimization_history: List[OptimizationHistoryEntry] = field(default_factory=list)
    auto_approve: bool = False
    last_check: Optional[str] = None

    def pending_tasks(self) -> List[OptimizationTask]:
        return [t for t in self.optimizations if t.status == STATUS_PENDING]

    def store_optimization_memory(
        self,
        opt_type: str,
        command: str,
        outcome: ExecutionOutcome
    ) -> OptimizationHistoryEntry:
        """Append an outcome to history, evicting the oldest beyond the limit."""
        entry = OptimizationHistoryEntry(type=opt_type, command=command, outcome=outcome)
        self.optimization_history.append(entry)
        if len(self.optimization_history) > HISTORY_LIMIT:
            del self.optimization_history[:-HISTORY_LIMIT]
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system_profile": self.system_profile.to_dict() if self.system_profile else None,
            "optimizations": [t.to_dict() for t in self.optimizations],
            "optimization_history": [asdict(h) for h in self.optimization_history],
            "auto_approve": self.auto_approve,
            "last_check": self.last_check,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: Optional["DaemonState"] = None) -> "DaemonState":
        """Build state from persisted data, backfilling absent fields from defaults."""
        base = defaults or cls()
        profile = data.get("system_profile")
        tasks = data.get("optimizations")
        history = data.get("optimization_history")

        state = cls(
            system_profile=SystemProfile.from_dict(profile) if isinstance(profile, dict) else base.system_profile,
            optimizations=list(base.optimizations),
            optimization_history=list(base.optimization_history),
            auto_approve=_pick(data, "auto_approve", base.auto_approve, bool),
            last_check=_pick(data, "last_check", base.last_check, str),
        )
        if isinstance(tasks, list):
            state.optimizations = [
                OptimizationTask.from_dict(t) for t in tasks if isinstance(t, dict)
            ]
            state.optimizations = [t for t in state.optimizations if t.status == STATUS_PENDING]
        if isinstance(history, list):
            entries = [OptimizationHistoryEntry.from_dict(h) for h in history if isinstance(h, dict)]
            state.optimization_history = entries[-HISTORY_LIMIT:]
        return state


# =============================================================================
# STATE STORE
# =============================================================================

class StateStore:
    """Loads and atomically saves DaemonState as JSON."""

    def __init__(self, state_file: Path, defaults: Optional[DaemonState] = None):
        self.state_file = Path(state_file)
        self.defaults = defaults

    def _fresh(self) -> DaemonState:
        if self.defaults is None:
            return DaemonState()
        return DaemonState.from_dict({}, defaults=self.defaults)

    def load(self) -> DaemonState:
        """Load state from disk. Never raises: falls back to defaults."""
        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.warning(f"No previous state at {self.state_file}, starting fresh")
            return self._fresh()
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning(f"Failed to load state from {self.state_file}: {e}, starting fresh")
            return self._fresh()

        if not isinstance(data, dict):
            logger.warning(f"State file {self.state_file} is not a JSON object, starting fresh")
            return self._fresh()

        state = DaemonState.from_dict(data, defaults=self.defaults)
        logger.debug(f"State loaded from {self.state_file}")
        return state

    def save(self, state: DaemonState) -> bool:
        """Atomically replace the state file. Returns False (and logs) on failure."""
        tmp_path = None
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.state_file.name}.",
                suffix=".tmp",
                dir=str(self.state_file.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file)
            tmp_path = None
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state to {self.state_file}: {e}")
            return False
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
